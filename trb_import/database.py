from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from trb_import.config import settings


class Base(DeclarativeBase):
    pass


def enable_sqlite_savepoints(engine) -> None:
    """Let pysqlite honour SAVEPOINT inside an ORM transaction.

    pysqlite starts transactions lazily and would otherwise let a RELEASE
    commit the outer transaction. The driver's own BEGIN handling is turned
    off and SQLAlchemy emits BEGIN itself.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_conn, _):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str):
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False})
        enable_sqlite_savepoints(engine)
        return engine
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
