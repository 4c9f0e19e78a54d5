from sqlalchemy import inspect
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stewardship.database import init_db, make_engine
from stewardship.models import Municipality


def test_in_memory_sqlite_is_shared_between_sessions():
    engine = make_engine("sqlite://", echo=False)
    assert isinstance(engine.pool, StaticPool)
    init_db(bind=engine)
    Session = sessionmaker(bind=engine)

    with Session() as first:
        first.add(Municipality(name="Ashford", name_key="ashford", population=45_000))
        first.commit()
    with Session() as second:
        assert second.query(Municipality).count() == 1

    assert "municipalities" in inspect(engine).get_table_names()
    engine.dispose()


def test_file_sqlite_keeps_a_regular_pool(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'stewardship.db'}", echo=False)
    assert not isinstance(engine.pool, StaticPool)
    init_db(bind=engine)
    assert "collection_sites" in inspect(engine).get_table_names()
    engine.dispose()
