"""Build output maintenance used by the deployment app.

Renaming a subdomain moves its outputs; deleting a project removes them.
Neither is safe against a build writing under the same prefix at the same
time; callers block new builds for the project while these run.
"""

import structlog

from launchpad.storage.artifact_store import ArtifactStore, output_prefix

logger = structlog.get_logger(__name__)


async def rename_outputs(store: ArtifactStore, old_project_uri: str, new_project_uri: str) -> int:
    """Move __outputs/{old}/ to __outputs/{new}/. Returns the number of objects moved."""
    if old_project_uri == new_project_uri:
        return 0
    moved = await store.copy_prefix(output_prefix(old_project_uri), output_prefix(new_project_uri))
    logger.info("outputs_renamed", old_project_uri=old_project_uri, new_project_uri=new_project_uri, count=moved)
    return moved


async def delete_outputs(store: ArtifactStore, project_uri: str) -> int:
    """Remove every build output object of a project."""
    deleted = await store.delete_prefix(output_prefix(project_uri))
    logger.info("outputs_deleted", project_uri=project_uri, count=deleted)
    return deleted
