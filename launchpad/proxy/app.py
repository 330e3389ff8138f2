"""Subdomain reverse proxy in front of the build output bucket.

{subdomain}.{base-domain}/{path}  ->  {artifact_base_url}/{subdomain}/{path}

- "/" is rewritten to "/index.html"; every other path passes through as-is
- method, headers and body are forwarded, Host is rewritten to the origin
- every request records a PageVisit in the background; a failed write is
  logged and never affects the proxied response
"""

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from launchpad.api.errors import install_exception_handlers
from launchpad.core.config import Settings, get_settings
from launchpad.services.event_store import EventStore

logger = structlog.get_logger(__name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# Connection-scoped headers that must not be forwarded in either direction
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


def extract_subdomain(host: str) -> str:
    """Leftmost label of the Host header, port stripped."""
    hostname = host.split(":", 1)[0].strip().lower()
    return hostname.split(".", 1)[0]


def rewrite_path(path: str) -> str:
    return "/index.html" if path == "/" else path


def forward_headers(headers) -> dict[str, str]:
    # Host is dropped so httpx sets it from the target URL (origin rewrite)
    return {
        name: value
        for name, value in headers.items()
        if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() not in ("host", "content-length")
    }


class VisitRecorder:
    """Fire-and-forget PageVisit writes. Holds task references until they finish."""

    def __init__(self, record: Callable[[str], Awaitable[str]]) -> None:
        self._record = record
        self._tasks: set[asyncio.Task] = set()

    def record(self, page_url: str) -> None:
        task = asyncio.create_task(self._write(page_url))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _write(self, page_url: str) -> None:
        try:
            await self._record(page_url)
        except Exception as exc:
            logger.warning("page_visit_record_failed", page_url=page_url, error=str(exc))

    async def drain(self, timeout: float = 2.0) -> None:
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)


async def proxy_request(request: Request) -> StreamingResponse | PlainTextResponse:
    state = request.app.state
    subdomain = extract_subdomain(request.headers.get("host", ""))
    state.visits.record(subdomain)

    target = f"{state.artifact_base_url}/{subdomain}{rewrite_path(request.url.path)}"
    if request.url.query:
        target = f"{target}?{request.url.query}"
    body = await request.body()
    upstream_request = state.http_client.build_request(
        request.method,
        target,
        headers=forward_headers(request.headers),
        content=body or None,
    )

    try:
        upstream = await state.http_client.send(upstream_request, stream=True)
    except httpx.RequestError as exc:
        logger.warning("upstream_unreachable", subdomain=subdomain, target=target, error=str(exc))
        return PlainTextResponse(f"Upstream error: {exc}", status_code=502)

    logger.debug("request_proxied", subdomain=subdomain, target=target, status_code=upstream.status_code)
    response = StreamingResponse(
        upstream.aiter_raw(),
        status_code=upstream.status_code,
        background=BackgroundTask(upstream.aclose),
    )
    # Repeated headers such as Set-Cookie stay separate
    for name, value in upstream.headers.multi_items():
        if name.lower() not in HOP_BY_HOP_HEADERS:
            response.headers.append(name, value)
    return response


def create_proxy_app(
    settings: Settings | None = None,
    event_store: EventStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the proxy app.

    event_store and http_client are created in the lifespan when not given.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_client = getattr(app.state, "http_client", None) is None
        owns_db = getattr(app.state, "visits", None) is None
        if owns_client:
            app.state.http_client = httpx.AsyncClient(timeout=settings.proxy_timeout_seconds)
        if owns_db:
            from launchpad.db.base import get_session_factory, init_db
            from launchpad.services.event_store import SqlEventStore

            await init_db(settings.database_url)
            app.state.visits = VisitRecorder(SqlEventStore(get_session_factory()).record_page_visit)
        logger.info("proxy_started", artifact_base_url=app.state.artifact_base_url)

        yield

        await app.state.visits.drain()
        if owns_client:
            await app.state.http_client.aclose()
        if owns_db:
            from launchpad.db.base import close_db

            await close_db()
        logger.info("proxy_stopped")

    app = FastAPI(title=f"{settings.app_name} proxy", docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.artifact_base_url = settings.resolved_artifact_base_url()
    if http_client is not None:
        app.state.http_client = http_client
    if event_store is not None:
        app.state.visits = VisitRecorder(event_store.record_page_visit)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=PROXY_METHODS,
        allow_headers=["Content-Type", "Authorization"],
    )
    install_exception_handlers(app)
    app.add_api_route(
        "/{path:path}", proxy_request, methods=PROXY_METHODS, include_in_schema=False, response_model=None
    )
    return app
