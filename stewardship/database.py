"""Database engine and sessions for the stewardship service.

Production runs on PostgreSQL; tests and local scripts may point
DATABASE_URL at SQLite, including a shared in-memory database.
"""

from collections.abc import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .settings import DATABASE_ECHO, DATABASE_URL

Base = declarative_base()


def make_engine(url: str = DATABASE_URL, echo: bool = DATABASE_ECHO) -> Engine:
    """Engine with the options each backend needs.

    SQLite connections are shared across the request threads FastAPI uses,
    and an in-memory URL keeps a single connection so every session sees
    the same tables.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    options = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        options["poolclass"] = StaticPool
    return create_engine(url, echo=echo, **options)


engine = make_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = engine) -> None:
    """Create every stewardship table that does not exist yet."""
    # Tables register on Base when the models module is imported
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind)
