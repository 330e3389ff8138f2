"""Shared test fixtures for all test groups."""

import fakeredis.aioredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from launchpad.bus.event_bus import RedisStreamBus
from launchpad.core.config import BuildSettings, Settings
from launchpad.db.base import build_session_factory, create_event_tables
from launchpad.services.event_store import SqlEventStore
from launchpad.services.registry import DeploymentRegistry

from fakes import InMemoryArtifactStore


@pytest_asyncio.fixture
async def redis():
    """In-process fake Redis with Stream and consumer group support."""
    r = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield r
    await r.aclose()


@pytest_asyncio.fixture
async def bus(redis):
    """Connected RedisStreamBus sharing the fake client."""
    stream_bus = RedisStreamBus(client=redis)
    await stream_bus.connect()
    yield stream_bus
    await stream_bus.close()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """File-backed SQLite event store schema, one database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'events.db'}", echo=False)
    await create_event_tables(engine)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def event_store(session_factory):
    return SqlEventStore(session_factory)


@pytest.fixture
def registry(redis):
    return DeploymentRegistry(redis)


@pytest.fixture
def artifact_store():
    return InMemoryArtifactStore()


@pytest.fixture
def settings():
    """App settings tuned for fast polling in tests."""
    return Settings(
        _env_file=None,
        log_topic="test-container-logs",
        consumer_block_ms=20,
        consumer_heartbeat_seconds=0.05,
        consumer_held_batch_backoff_seconds=0.05,
        status_poll_timeout_seconds=0.2,
        status_poll_interval_seconds=0.01,
        artifact_base_url="http://bucket.test/__outputs",
    )


@pytest.fixture
def make_build_settings(tmp_path):
    """Factory for BuildSettings rooted in a fresh project directory."""

    def _make(**overrides) -> BuildSettings:
        root = tmp_path / overrides.pop("project_dir", "project")
        root.mkdir(parents=True, exist_ok=True)
        values = {
            "project_uri": "demo123",
            "deployment_id": "dep-001",
            "install_command": "echo install",
            "build_command": "echo build",
            "root_dir": str(root),
            "output_dir": "dist",
            "build_timeout_seconds": 20.0,
            "shutdown_grace_seconds": 1.0,
        }
        values.update(overrides)
        return BuildSettings(**values)

    return _make
