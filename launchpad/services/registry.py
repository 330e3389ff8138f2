"""Deployment registry binding: status records for deployment runs.

The registry itself belongs to the external deployment app; the core only
reads a run's status and signals IN_PROGRESS -> READY | FAILED. This binding
keeps one Redis hash per run (deployment:{id}) and publishes accepted
transitions on deployment:{id}:events.
"""

import json
from datetime import UTC, datetime

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from launchpad.schemas.deployments import DeploymentStatus

logger = structlog.get_logger(__name__)

_MAX_WATCH_RETRIES = 5


def _key(deployment_id: str) -> str:
    return f"deployment:{deployment_id}"


class DeploymentRegistry:
    """Monotonic status store for deployment runs."""

    # Valid state transitions
    TRANSITIONS = {
        DeploymentStatus.IN_PROGRESS: [DeploymentStatus.READY, DeploymentStatus.FAILED],
        DeploymentStatus.READY: [],  # Terminal state
        DeploymentStatus.FAILED: [],  # Terminal state
    }

    def __init__(self, redis: Redis):
        self.redis = redis

    async def register(
        self,
        deployment_id: str,
        project_uri: str,
        now: datetime | None = None,
    ) -> bool:
        """Record a new run as IN_PROGRESS. Returns False if it already exists.

        Called by the deployment app when it triggers a build.
        """
        now = now or datetime.now(UTC)
        created = await self.redis.hsetnx(_key(deployment_id), "status", DeploymentStatus.IN_PROGRESS.value)
        if not created:
            return False
        await self.redis.hset(
            _key(deployment_id),
            mapping={
                "project_uri": project_uri,
                "created_at": now.isoformat(),
                "updated_at": now.isoformat(),
            },
        )
        return True

    async def transition(
        self,
        deployment_id: str,
        new_status: DeploymentStatus,
        message: str = "",
        now: datetime | None = None,
    ) -> bool:
        """Move a run to new_status if the transition table allows it.

        The read-check-write runs under WATCH so two callers racing to
        different terminal states cannot both win.

        Returns:
            True if the transition was applied, False if invalid or unknown run
        """
        now = now or datetime.now(UTC)
        key = _key(deployment_id)

        for _attempt in range(_MAX_WATCH_RETRIES):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    current = await pipe.hget(key, "status")
                    if current is None:
                        return False
                    current_status = DeploymentStatus(current)
                    if new_status not in self.TRANSITIONS.get(current_status, []):
                        return False

                    pipe.multi()
                    pipe.hset(
                        key,
                        mapping={
                            "status": new_status.value,
                            "status_message": message,
                            "updated_at": now.isoformat(),
                        },
                    )
                    await pipe.execute()
                    break
                except WatchError:
                    continue
        else:
            logger.warning("deployment_transition_contended", deployment_id=deployment_id, target=new_status.value)
            return False

        logger.info(
            "deployment_status_changed",
            deployment_id=deployment_id,
            from_status=current_status.value,
            to_status=new_status.value,
            message=message,
        )
        await self.redis.publish(
            f"{key}:events",
            json.dumps(
                {
                    "type": "deployment.status",
                    "deployment_id": deployment_id,
                    "status": new_status.value,
                    "message": message,
                    "timestamp": now.isoformat(),
                }
            ),
        )
        return True

    async def get_status(self, deployment_id: str) -> DeploymentStatus | None:
        status = await self.redis.hget(_key(deployment_id), "status")
        return DeploymentStatus(status) if status else None

    async def get(self, deployment_id: str) -> dict | None:
        data = await self.redis.hgetall(_key(deployment_id))
        return data if data else None
