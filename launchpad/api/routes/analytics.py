"""Visit analytics for proxied subdomains."""

from fastapi import APIRouter, Depends, HTTPException

from launchpad.api.deps import get_event_store
from launchpad.core.exceptions import EventStoreError
from launchpad.schemas.deployments import VisitAnalyticsResponse, VisitMetadata
from launchpad.services.event_store import EventStore

router = APIRouter()


@router.get("/{subdomain}/analytics", response_model=VisitAnalyticsResponse)
async def get_visit_analytics(
    subdomain: str,
    event_store: EventStore = Depends(get_event_store),
):
    """Daily visit counts (newest first) and the overall total for a subdomain."""
    try:
        daily = await event_store.daily_visits(subdomain)
    except EventStoreError:
        raise HTTPException(status_code=500, detail="Failed to fetch visit statistics")

    return VisitAnalyticsResponse(
        project_url=subdomain,
        total_visits=sum(day.total_visits for day in daily),
        daily_visits=daily,
        metadata=VisitMetadata(
            start_date=daily[-1].date if daily else None,
            end_date=daily[0].date if daily else None,
        ),
    )
