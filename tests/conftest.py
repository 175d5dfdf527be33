"""Pytest configuration and fixtures."""
import asyncio
import os

# Settings and the module-level engine are built at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./hemobank-test.db"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["DEBUG"] = "true"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from hemobank import models  # noqa: F401
from hemobank.database import Base, init_db, make_session_factory
from hemobank.services.audit_service import audit_service
from hemobank.services.realtime import notification_hub


def make_test_engine(path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{path}",
        connect_args={"timeout": 15},
        poolclass=NullPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "hemobank.db"


@pytest.fixture
def run_db(db_path):
    """
    Run an async scenario against a fresh database.

    The scenario receives a session factory; pending audit writes are
    flushed before the engine is disposed.
    """

    def run(scenario):
        async def main():
            engine = make_test_engine(db_path)
            try:
                await init_db(engine)
                result = await scenario(make_session_factory(engine))
                await audit_service.flush()
                return result
            finally:
                await engine.dispose()

        return asyncio.run(main())

    return run


@pytest.fixture(autouse=True)
def clean_hub():
    """The notification hub is process-global; isolate subscribers per test."""
    notification_hub._channels.clear()
    yield
    notification_hub._channels.clear()


@pytest.fixture(scope="session")
def require_postgres():
    """Skip tests that need a real PostgreSQL database when TEST_POSTGRES_URL is not set."""
    url = os.getenv("TEST_POSTGRES_URL")
    if not url:
        pytest.skip("TEST_POSTGRES_URL not set; skipping integration test")
    return url


@pytest.fixture
def run_pg(require_postgres):
    """
    Like run_db, against the PostgreSQL database named by TEST_POSTGRES_URL.

    The schema is dropped and recreated for every test, so point it at a
    scratch database.
    """
    url = require_postgres
    if url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://"):]

    def run(scenario):
        async def main():
            engine = create_async_engine(url, poolclass=NullPool)
            try:
                async with engine.begin() as conn:
                    await conn.run_sync(Base.metadata.drop_all)
                await init_db(engine)
                result = await scenario(make_session_factory(engine))
                await audit_service.flush()
                return result
            finally:
                await engine.dispose()

        return asyncio.run(main())

    return run
