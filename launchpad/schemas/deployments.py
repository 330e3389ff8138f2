"""Pydantic schemas for deployment status, build logs and visit analytics."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class DeploymentStatus(str, Enum):
    """Deployment lifecycle states. READY and FAILED are terminal."""

    IN_PROGRESS = "IN_PROGRESS"
    READY = "READY"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.READY, DeploymentStatus.FAILED)


class LogRecord(BaseModel):
    """A persisted build log line."""

    model_config = ConfigDict(from_attributes=True)

    event_id: str
    deployment_id: str
    log: str
    timestamp: datetime


class DeploymentLogsResponse(BaseModel):
    """Logs for one deployment, oldest first, plus its current status.

    logs defaults to empty array, never null.
    """

    deployment_id: str
    logs: list[LogRecord] = Field(default_factory=list)
    deployment_status: DeploymentStatus


class DeploymentStatusResponse(BaseModel):
    deployment_id: str
    deployment_status: DeploymentStatus


class DailyVisits(BaseModel):
    date: str
    total_visits: int


class VisitMetadata(BaseModel):
    start_date: str | None = None
    end_date: str | None = None


class VisitAnalyticsResponse(BaseModel):
    """Visit counts per day for a subdomain, newest day first."""

    project_url: str
    total_visits: int = 0
    daily_visits: list[DailyVisits] = Field(default_factory=list)
    metadata: VisitMetadata = Field(default_factory=VisitMetadata)
