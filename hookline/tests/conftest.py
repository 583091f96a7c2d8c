from __future__ import annotations

import os
import tempfile

# Point settings at an isolated SQLite file before any hookline module builds its engine.
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"hookline-test-{os.getpid()}.db")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_PATH}")
os.environ.setdefault("KEYRING_MASTER_KEY", "hookline-test-master-key")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

import pytest

from hookline.core.config import get_settings
from hookline.domain.models import Base
from hookline.persistence.db import engine
from hookline.services.webhooks import cache as cache_module
from hookline.services.webhooks import dispatcher as dispatcher_module
from hookline.services.webhooks import scheduler as scheduler_module
from hookline.tests.utils.fakes import EnqueueRecorder, FakeRedis


@pytest.fixture(autouse=True)
async def reset_schema() -> None:
    # Fresh tables per test; dispose afterwards so no connection outlives its event loop.
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)
        await connection.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def fake_cache_redis(monkeypatch) -> FakeRedis:
    # Keep the active-destination cache in memory so tests never need a Redis server.
    redis = FakeRedis()

    async def _stub_redis():
        return redis

    monkeypatch.setattr(cache_module, "get_cache_redis", _stub_redis)
    return redis


@pytest.fixture(autouse=True)
def enqueued(monkeypatch) -> EnqueueRecorder:
    # Capture queue publishes instead of talking to an ARQ broker.
    recorder = EnqueueRecorder()
    monkeypatch.setattr(dispatcher_module, "enqueue_webhook_delivery", recorder)
    monkeypatch.setattr(scheduler_module, "enqueue_webhook_delivery", recorder)
    return recorder


@pytest.fixture
def settings():
    return get_settings()
