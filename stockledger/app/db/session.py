from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from stockledger.app.core.config import get_settings

# guards must be registered before any session flushes
from stockledger.app.db.models import immutability  # noqa: F401


def make_engine(url: str, *, echo: bool = False) -> Engine:
    """
    Engine factory shared by the app, alembic and the tests.

    For SQLite, pysqlite's own transaction handling is switched off so that
    SAVEPOINT works and BEGIN is emitted by SQLAlchemy. Transactions start
    IMMEDIATE: one writer at a time, and a transaction never reads a
    snapshot older than the last commit it waited for.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    settings = get_settings()
    engine = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": settings.sqlite_busy_timeout},
    )

    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@lru_cache
def get_engine() -> Engine:
    settings = get_settings()
    return make_engine(settings.database_url, echo=settings.sql_echo)


SessionLocal = sessionmaker(autoflush=False, autocommit=False)
