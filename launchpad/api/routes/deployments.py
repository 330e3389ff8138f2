"""Build log query and status polling routes for the deployment app."""

import structlog
from fastapi import APIRouter, Depends, HTTPException

from launchpad.api.deps import get_event_store, get_status_updater
from launchpad.core.exceptions import DeploymentNotFoundError, EventStoreError
from launchpad.schemas.deployments import DeploymentLogsResponse, DeploymentStatusResponse
from launchpad.services.event_store import EventStore
from launchpad.services.status_updater import StatusUpdater

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/{deployment_id}/logs", response_model=DeploymentLogsResponse)
async def get_deployment_logs(
    deployment_id: str,
    event_store: EventStore = Depends(get_event_store),
    status_updater: StatusUpdater = Depends(get_status_updater),
):
    """Return every persisted log line for a deployment, oldest first.

    When the deployment is not yet READY or FAILED, the log rule is evaluated
    over the fetched lines first, so the returned status reflects them.

    Raises:
        HTTPException(404): Unknown deployment
        HTTPException(500): Event store unavailable
    """
    try:
        await status_updater.current_status(deployment_id)
    except DeploymentNotFoundError:
        raise HTTPException(status_code=404, detail="Deployment not found")

    try:
        logs = await event_store.fetch_logs(deployment_id)
    except EventStoreError as exc:
        logger.error("deployment_logs_fetch_failed", deployment_id=deployment_id, error=str(exc))
        raise HTTPException(status_code=500, detail="Failed to fetch deployment logs")

    status = await status_updater.evaluate(deployment_id, logs=logs)
    return DeploymentLogsResponse(deployment_id=deployment_id, logs=logs, deployment_status=status)


@router.post("/{deployment_id}/wait", response_model=DeploymentStatusResponse)
async def wait_for_deployment(
    deployment_id: str,
    status_updater: StatusUpdater = Depends(get_status_updater),
):
    """Poll the logs until the deployment is terminal.

    Gives up after the configured window (60s by default) and marks the
    deployment FAILED.
    """
    try:
        status = await status_updater.poll_until_terminal(deployment_id)
    except DeploymentNotFoundError:
        raise HTTPException(status_code=404, detail="Deployment not found")
    return DeploymentStatusResponse(deployment_id=deployment_id, deployment_status=status)
