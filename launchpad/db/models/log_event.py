"""LogEvent model: append-only build log lines."""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text

from launchpad.db.base import Base


class LogEvent(Base):
    __tablename__ = "log_events"

    # BigInteger on Postgres, plain INTEGER elsewhere so SQLite keeps rowid autoincrement
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    event_id = Column(String(64), nullable=False, index=True)  # one per worker run, shared by its lines
    deployment_id = Column(String(255), nullable=False, index=True)
    log = Column(Text, nullable=False)

    # Assigned at persist time, not publish time
    timestamp = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
    # NO updated_at -- log lines are immutable once persisted
