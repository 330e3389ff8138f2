"""Event store database: declarative base and the per-process engine.

The API, the proxy and the build worker each open one engine at startup with
init_db() and dispose of it with close_db(). The schema is two append-only
tables (log_events, page_visits), created on first connect.
"""

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from launchpad.core.config import get_settings

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Records are read back after commit by the event store
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_event_tables(engine: AsyncEngine) -> None:
    """Create log_events and page_visits where missing; existing tables are kept."""
    import launchpad.db.models  # noqa: F401  registers both tables on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """Open the event store engine for this process and return its session factory.

    A second call returns the factory that is already open.
    """
    global _engine, _session_factory

    if _session_factory is not None:
        return _session_factory

    settings = get_settings()
    engine = create_async_engine(url or settings.database_url, echo=settings.debug, pool_pre_ping=True)
    try:
        await create_event_tables(engine)
    except Exception:
        await engine.dispose()
        raise

    _engine = engine
    _session_factory = build_session_factory(engine)
    logger.info("event_store_opened", dialect=engine.dialect.name)
    return _session_factory


async def close_db() -> None:
    global _engine, _session_factory

    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()
        logger.info("event_store_closed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("event store is not open in this process; call init_db() at startup")
    return _session_factory
