"""Reverse proxy entry point: uvicorn launchpad.proxy.main:app"""

from launchpad.core.config import get_settings as _get_settings_early
from launchpad.core.logging import configure_structlog

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

from launchpad.middleware.correlation import setup_correlation_middleware  # noqa: E402
from launchpad.proxy.app import create_proxy_app  # noqa: E402

app = create_proxy_app(_early_settings)
setup_correlation_middleware(app)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "launchpad.proxy.main:app",
        host="0.0.0.0",
        port=_early_settings.proxy_port,
    )
