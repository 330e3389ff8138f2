"""Launchpad deployment API: build log queries, status polling, visit analytics."""

import signal
from contextlib import asynccontextmanager

# configure_structlog runs before the remaining imports: structlog caches the
# processor chain the first time a module-level logger is used.
from launchpad.core.config import get_settings
from launchpad.core.logging import configure_structlog

_settings = get_settings()
configure_structlog(
    log_level="DEBUG" if _settings.debug else "INFO",
    json_logs=not _settings.debug,
)

import structlog  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402

from launchpad import __version__  # noqa: E402
from launchpad.api.errors import install_exception_handlers  # noqa: E402
from launchpad.api.routes import api_router  # noqa: E402
from launchpad.db import close_db, close_redis, init_db, init_redis  # noqa: E402
from launchpad.middleware.correlation import setup_correlation_middleware  # noqa: E402

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the event store and the registry's Redis pool for the app's lifetime."""
    settings = get_settings()
    app.state.shutting_down = False

    def _drain_on_sigterm(signum, frame):
        # /api/health answers 503 from here on so the load balancer stops routing
        app.state.shutting_down = True
        logger.info("sigterm_received", action="draining")

    signal.signal(signal.SIGTERM, _drain_on_sigterm)

    await init_db(settings.database_url)
    await init_redis(settings.redis_url)
    logger.info("api_started", app_name=settings.app_name, debug=settings.debug)

    yield

    await close_redis()
    await close_db()
    logger.info("api_stopped")


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Build logs, deployment status and visit analytics",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    setup_correlation_middleware(app)
    install_exception_handlers(app)
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("launchpad.main:app", host="0.0.0.0", port=8080, reload=_settings.debug)
