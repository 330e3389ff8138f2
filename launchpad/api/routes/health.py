"""Liveness and readiness for the deployment API.

/health answers whether the load balancer should keep routing here; it
flips to 503 "draining" once SIGTERM has been seen. /ready additionally
touches the event store and the registry's Redis.
"""

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from launchpad import __version__
from launchpad.db.base import get_session_factory
from launchpad.db.redis import get_redis

logger = structlog.get_logger(__name__)

router = APIRouter()

SERVICE = "launchpad-api"


def _draining(request: Request) -> bool:
    return getattr(request.app.state, "shutting_down", False)


async def _event_store_reachable() -> bool:
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
    except (RuntimeError, SQLAlchemyError, OSError) as exc:
        logger.warning("readiness_event_store_unreachable", error=str(exc))
        return False
    return True


async def _registry_reachable() -> bool:
    try:
        await get_redis().ping()
    except (RuntimeError, RedisError, OSError) as exc:
        logger.warning("readiness_registry_unreachable", error=str(exc))
        return False
    return True


@router.get("/health")
async def health_check(request: Request):
    if _draining(request):
        return JSONResponse(status_code=503, content={"service": SERVICE, "status": "draining"})
    return {"service": SERVICE, "status": "ok", "version": __version__}


@router.get("/ready")
async def readiness_check(request: Request):
    """200 only when both backends answer and the process is not draining."""
    checks = {
        "event_store": await _event_store_reachable(),
        "registry": await _registry_reachable(),
    }
    if _draining(request):
        status = "draining"
    elif all(checks.values()):
        status = "ready"
    else:
        status = "unavailable"
    return JSONResponse(
        status_code=200 if status == "ready" else 503,
        content={"service": SERVICE, "status": status, "checks": checks},
    )
