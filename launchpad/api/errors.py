"""JSON error envelope shared by the deployment API and the proxy.

Every error response is {detail, debug_id}; the debug_id is logged with the
request's correlation id so a user report can be matched to server logs.
"""

import uuid

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from launchpad.middleware.correlation import get_correlation_id

logger = structlog.get_logger(__name__)


def _error_response(request: Request, status_code: int, response_detail, event: str, **context) -> JSONResponse:
    debug_id = str(uuid.uuid4())
    logger.error(
        event,
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        **context,
    )
    return JSONResponse(status_code=status_code, content={"detail": response_detail, "debug_id": debug_id})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(request, exc.status_code, exc.detail, "http_exception", detail=exc.detail)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Generic 500; the traceback only goes to the log."""
    return _error_response(
        request,
        500,
        "Internal server error",
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
