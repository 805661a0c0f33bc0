"""
Shared fixtures.

The suite runs against a throwaway SQLite database (aiosqlite) unless
TEST_DATABASE_URL points at PostgreSQL. Environment is configured before
appdrop is imported so the module-level engine and settings pick it up.
"""

import os
import tempfile
from pathlib import Path

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="appdrop-tests-"))

os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_ROOT / 'appdrop_test.db'}"
)
os.environ["UPLOAD_DIR"] = str(_TEST_ROOT / "uploads")
os.environ["AUTH_ENABLED"] = "false"
os.environ["WEBHOOK_MAX_RETRIES"] = "0"
os.environ["WEBHOOK_RETRY_BACKOFF"] = "0"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from appdrop.config import get_settings
from appdrop.db.database import AsyncSessionLocal, Base, engine
from appdrop.db import models  # noqa: F401
from appdrop.services import webhooks
from appdrop.services.package_info import _load_parser

from tests.factories import RecordingTransport


@pytest_asyncio.fixture(autouse=True)
async def _database():
    """Fresh schema for every test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def _settings_cache(tmp_path, monkeypatch):
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    get_settings.cache_clear()
    _load_parser.cache_clear()
    yield
    get_settings.cache_clear()
    _load_parser.cache_clear()


@pytest.fixture
def session_factory():
    return AsyncSessionLocal


@pytest_asyncio.fixture
async def db_session():
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def webhook_transport():
    return RecordingTransport()


@pytest_asyncio.fixture(autouse=True)
async def notifier(webhook_transport):
    """Process-wide notifier that never leaves the test process."""
    instance = webhooks.WebhookNotifier(
        session_factory=AsyncSessionLocal,
        transport=webhook_transport,
        max_retries=0,
        retry_backoff=0,
    )
    webhooks.set_notifier(instance)
    yield instance
    await instance.drain()
    webhooks.set_notifier(None)


@pytest_asyncio.fixture
async def client():
    from appdrop.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
