class LaunchpadError(Exception):
    """Base exception for the deployment platform core."""

    pass


class BuildError(LaunchpadError):
    """Raised when the build command cannot be spawned or exits non-zero."""

    def __init__(self, message: str, exit_code: int | None = None):
        self.exit_code = exit_code
        super().__init__(message)


class UploadError(LaunchpadError):
    """Raised when a build output file cannot be uploaded."""

    def __init__(self, key: str, reason: str):
        self.key = key
        super().__init__(f"Failed to upload {key}: {reason}")


class EventBusError(LaunchpadError):
    """Raised when the log bus cannot be reached or rejects an operation."""

    pass


class ArtifactStoreError(LaunchpadError):
    """Raised when object storage operations fail."""

    pass


class EventStoreError(LaunchpadError):
    """Raised when log or visit events cannot be persisted or read."""

    pass


class WorkerShutdownError(LaunchpadError):
    """Raised when publishing is attempted after the worker began shutting down."""

    pass


class DeploymentNotFoundError(LaunchpadError):
    """Raised when the registry has no record of a deployment."""

    def __init__(self, deployment_id: str):
        self.deployment_id = deployment_id
        super().__init__(f"Deployment {deployment_id} not found")
