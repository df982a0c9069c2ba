import os
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from stockledger.app.db.base import Base
from stockledger.app.db.session import SessionLocal, make_engine
from stockledger.app.db.models import models_v1  # noqa: F401
from stockledger.services import inventory

REPO_ROOT = Path(__file__).resolve().parents[2]

# Tables are migrated and truncated between tests: point this at a throwaway database
PG_URL = os.getenv("STOCKLEDGER_TEST_DATABASE_URL", "")

TABLES = ("stock_movements", "orders", "product_variants", "products")


@pytest.fixture(scope="session")
def pg_engine():
    """PostgreSQL schema built by the real migrations (trigger included)."""
    if not PG_URL.startswith("postgresql"):
        pytest.skip("STOCKLEDGER_TEST_DATABASE_URL is not a PostgreSQL URL")

    cfg = Config()
    cfg.set_main_option("script_location", str(REPO_ROOT / "stockledger" / "alembic"))
    cfg.set_main_option("sqlalchemy.url", PG_URL.replace("%", "%%"))
    command.upgrade(cfg, "head")

    eng = make_engine(PG_URL)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture(scope="function", params=["sqlite", "postgresql"])
def engine(request, tmp_path):
    """
    Every test that touches the database runs on both backends.

    sqlite: a file per test; several sessions (threads) can share it.
    postgresql: shared migrated schema, emptied after each test.
    Markers: sqlite_only (process-lock internals), postgresql_only (trigger).
    """
    backend = request.param
    if backend == "postgresql" and request.node.get_closest_marker("sqlite_only"):
        pytest.skip("exercises the in-process lock used on SQLite")
    if backend == "sqlite" and request.node.get_closest_marker("postgresql_only"):
        pytest.skip("needs PostgreSQL")

    if backend == "postgresql":
        eng = request.getfixturevalue("pg_engine")
        try:
            yield eng
        finally:
            with eng.begin() as conn:
                conn.execute(text(f"TRUNCATE {', '.join(TABLES)} RESTART IDENTITY CASCADE"))
    else:
        eng = make_engine(f"sqlite:///{tmp_path / 'stockledger.db'}")
        Base.metadata.create_all(bind=eng)
        try:
            yield eng
        finally:
            eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture(scope="function")
def db_session(engine) -> Session:
    """
    Isolated DB session per test.

    Uses an enclosing transaction + SAVEPOINT.
    EVERYTHING is rolled back at the end of the test, even after commit().
    """
    connection = engine.connect()
    transaction = connection.begin()

    session = SessionLocal(bind=connection, join_transaction_mode="create_savepoint")

    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture
def make_variant(db_session):
    """Product + variant with an opening balance (through the ledger)."""
    counter = {"n": 0}

    def _make(opening_stock: int = 10, sku: str | None = None):
        counter["n"] += 1
        product = inventory.create_product(db_session, name=f"TEST-PROD-{counter['n']}")
        return inventory.create_variant(
            db_session,
            product_id=product.id,
            sku=sku or f"TEST-SKU-{counter['n']}",
            opening_stock=opening_stock,
        )

    return _make
