"""Re-export all models so Base.metadata sees them."""

from launchpad.db.models.log_event import LogEvent
from launchpad.db.models.page_visit import PageVisit

__all__ = [
    "LogEvent",
    "PageVisit",
]
