from launchpad.storage.artifact_store import (
    ArtifactStore,
    S3ArtifactStore,
    guess_content_type,
    output_key,
    output_prefix,
)

__all__ = [
    "ArtifactStore",
    "S3ArtifactStore",
    "guess_content_type",
    "output_key",
    "output_prefix",
]
