"""Entry point: python -m launchpad.worker

Reads PROJECT_* configuration from the environment, runs one build and exits.
"""

import asyncio
import sys

from launchpad.core.config import get_settings
from launchpad.core.logging import configure_structlog


def main() -> int:
    settings = get_settings()
    configure_structlog(
        log_level="DEBUG" if settings.debug else "INFO",
        json_logs=not settings.debug,
    )

    from launchpad.core.config import load_build_settings
    from launchpad.worker.runner import run_worker

    report = asyncio.run(run_worker(load_build_settings(), settings))
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
