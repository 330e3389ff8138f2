"""FastAPI dependencies for the deployment API."""

from fastapi import Depends
from redis.asyncio import Redis

from launchpad.core.config import get_settings
from launchpad.db.base import get_session_factory
from launchpad.db.redis import get_redis
from launchpad.services.event_store import EventStore, SqlEventStore
from launchpad.services.registry import DeploymentRegistry
from launchpad.services.status_updater import StatusUpdater


def get_event_store() -> EventStore:
    return SqlEventStore(get_session_factory())


def get_registry(redis: Redis = Depends(get_redis)) -> DeploymentRegistry:
    return DeploymentRegistry(redis)


def get_status_updater(
    event_store: EventStore = Depends(get_event_store),
    registry: DeploymentRegistry = Depends(get_registry),
) -> StatusUpdater:
    settings = get_settings()
    return StatusUpdater(
        event_store,
        registry,
        poll_timeout=settings.status_poll_timeout_seconds,
        poll_interval=settings.status_poll_interval_seconds,
    )
