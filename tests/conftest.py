import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ADMIN_TOKEN"] = "test-token"
os.environ.pop("LOGFIRE_TOKEN", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from stewardship.database import get_db, init_db, make_engine
from stewardship.main import app

TOKEN = "test-token"


@pytest.fixture
def db_session():
    engine = make_engine("sqlite://", echo=False)
    init_db(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app, headers={"Authorization": f"Bearer {TOKEN}"}) as test_client:
        yield test_client
    app.dependency_overrides.clear()
