"""PageVisit model: one row per proxied request."""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, Integer, String

from launchpad.db.base import Base


class PageVisit(Base):
    __tablename__ = "page_visits"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    event_id = Column(String(64), nullable=False, unique=True)
    page_url = Column(String(255), nullable=False, index=True)  # subdomain label
    timestamp = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
