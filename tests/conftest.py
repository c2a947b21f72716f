"""
Pytest Configuration and Fixtures.

Tests run against a throwaway SQLite database (aiosqlite) and a local
bucket under a temp directory. The environment is set before any
neurobridge module is imported because settings are read at import time.
"""
import os
import tempfile
import uuid
from pathlib import Path

_TMP = Path(tempfile.mkdtemp(prefix="neurobridge-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP / 'test.db'}"
os.environ["JWT_SECRET"] = "test-secret-with-enough-entropy-0123456789"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["STORAGE_LOCAL_ROOT"] = str(_TMP / "uploads")
os.environ.pop("WORKFLOW_ENGINE_URL", None)
os.environ.pop("ADMIN_EMAIL", None)
os.environ.pop("ADMIN_PASSWORD", None)

import pytest
import pytest_asyncio
from sqlalchemy import event

from neurobridge import models  # noqa: F401
from neurobridge.background import drain
from neurobridge.database import Base, async_session_maker, engine
from neurobridge.models import User
from neurobridge.request_context import RequestData, set_request_data
from neurobridge.storage import LocalBucket, set_bucket
from neurobridge.workflow_engine import set_workflow_engine
from tests.fakes import FakeWorkflowEngine


# pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN.
@event.listens_for(engine.sync_engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine.sync_engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "api: Tests that go through the HTTP app")


@pytest_asyncio.fixture(autouse=True)
async def database():
    """Fresh schema per test; pooled connections are closed with the test's loop."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await drain()
    await engine.dispose()


@pytest.fixture
def session_maker():
    return async_session_maker


@pytest.fixture
def bucket(tmp_path):
    b = LocalBucket(tmp_path / "blobs", "/static/uploads")
    set_bucket(b)
    yield b
    set_bucket(None)


@pytest.fixture
def workflow_engine():
    fake = FakeWorkflowEngine()
    set_workflow_engine(fake)
    yield fake
    set_workflow_engine(None)


async def make_user(email=None) -> User:
    user = User(
        id=uuid.uuid4(),
        email=email or f"{uuid.uuid4().hex[:10]}@example.com",
        hashed_password="not-a-real-hash",
        is_active=True,
        is_superuser=False,
        is_verified=True,
    )
    async with async_session_maker() as db:
        db.add(user)
        await db.commit()
    return user


@pytest_asyncio.fixture
async def user():
    return await make_user()


@pytest_asyncio.fixture
async def other_user():
    return await make_user()


@pytest.fixture
def as_user():
    """Put a user on the request context for owner-scoped service calls.

    Each test runs in its own task, so the identity never leaks between tests.
    """

    def _set(user_id, session_id=None):
        rd = RequestData(user_id=user_id, session_id=session_id or uuid.uuid4(),
                         access_token="test-access", refresh_token="test-refresh")
        set_request_data(rd)
        return rd

    return _set
