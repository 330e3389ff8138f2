"""EventStore: append-only storage for build log lines and page visits.

SqlEventStore binds it to async SQLAlchemy. Records are never updated or
deleted here; retention is handled outside the platform core.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from launchpad.core.exceptions import EventStoreError
from launchpad.db.models import LogEvent, PageVisit
from launchpad.schemas.deployments import DailyVisits, LogRecord

logger = structlog.get_logger(__name__)


class EventStore(ABC):
    @abstractmethod
    async def append_log(self, event_id: str, deployment_id: str, log: str) -> LogRecord: ...

    @abstractmethod
    async def fetch_logs(self, deployment_id: str) -> list[LogRecord]: ...

    @abstractmethod
    async def record_page_visit(self, page_url: str, event_id: str | None = None) -> str: ...

    @abstractmethod
    async def daily_visits(self, page_url: str) -> list[DailyVisits]: ...


class SqlEventStore(EventStore):
    """Event store on the async SQLAlchemy session factory from launchpad.db."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append_log(self, event_id: str, deployment_id: str, log: str) -> LogRecord:
        """Persist one log line. The timestamp is assigned here, at ingestion."""
        row = LogEvent(
            event_id=event_id,
            deployment_id=deployment_id,
            log=log,
            timestamp=datetime.now(UTC),
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as exc:
            raise EventStoreError(f"failed to persist log for deployment {deployment_id}: {exc}") from exc
        return LogRecord.model_validate(row)

    async def fetch_logs(self, deployment_id: str) -> list[LogRecord]:
        """All persisted lines for one deployment, ordered by ingestion time."""
        stmt = (
            select(LogEvent)
            .where(LogEvent.deployment_id == deployment_id)
            .order_by(LogEvent.timestamp.asc(), LogEvent.id.asc())
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise EventStoreError(f"failed to fetch logs for deployment {deployment_id}: {exc}") from exc
        return [LogRecord.model_validate(row) for row in rows]

    async def record_page_visit(self, page_url: str, event_id: str | None = None) -> str:
        event_id = event_id or str(uuid.uuid4())
        try:
            async with self._session_factory() as session:
                session.add(PageVisit(event_id=event_id, page_url=page_url, timestamp=datetime.now(UTC)))
                await session.commit()
        except SQLAlchemyError as exc:
            raise EventStoreError(f"failed to record visit for {page_url}: {exc}") from exc
        return event_id

    async def daily_visits(self, page_url: str) -> list[DailyVisits]:
        """Visit counts grouped by calendar day, newest day first."""
        day = func.date(PageVisit.timestamp)
        stmt = (
            select(day.label("day"), func.count(PageVisit.id).label("total"))
            .where(PageVisit.page_url == page_url)
            .group_by(day)
            .order_by(day.desc())
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise EventStoreError(f"failed to aggregate visits for {page_url}: {exc}") from exc
        return [DailyVisits(date=str(row.day), total_visits=int(row.total)) for row in rows]
