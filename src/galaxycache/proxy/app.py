"""HTTP surface of the galaxy proxy: repository content, status, health and metrics."""

from __future__ import annotations

import hmac
import os
import time
from contextlib import asynccontextmanager
from ipaddress import ip_address
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.background import BackgroundTask

from ..common.metrics import GLOBAL_REGISTRY, Gauge, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import ProxySettings
from ..storage.blobs import BlobStore
from ..storage.content import Content
from ..storage.metadata import MetadataStore, create_engine
from .cache import ProxyCache
from .kinds import InvalidAssetKindError
from .routes import ProxyRequest
from .upstream import UpstreamClient, format_http_date


LOGGER = structlog.get_logger("galaxycache.app")
TRACER = trace.get_tracer("galaxycache.app")

CACHED_ASSETS_GAUGE = GLOBAL_REGISTRY.register(
    Gauge("galaxycache_cached_assets", "Assets stored per repository", labelnames=("repository",))
)
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "galaxycache_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Proxy request latency",
    )
)


class ProxyState:
    def __init__(
        self,
        settings: ProxySettings,
        engine: AsyncEngine,
        http: httpx.AsyncClient,
        blob_store: BlobStore,
        store: MetadataStore,
        cache: ProxyCache,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.http = http
        self.blob_store = blob_store
        self.store = store
        self.cache = cache


def get_state(request: Request) -> ProxyState:
    return request.app.state.proxy_state  # type: ignore[attr-defined]


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Allow metrics scrapes that present the bearer token, or from loopback when no token is set."""
    if token:
        expected = f"Bearer {token}"
        auth_header = request.headers.get("authorization")
        if not auth_header or not hmac.compare_digest(auth_header, expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client_host = request.client.host if request.client else None
    if not client_host:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied")
    try:
        loopback = ip_address(client_host).is_loopback
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied") from exc
    if not loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")


def etag_matches(header: Optional[str], etag: str) -> bool:
    if not header:
        return False
    for candidate in header.split(","):
        candidate = candidate.strip()
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == "*" or candidate == etag:
            return True
    return False


def content_headers(content: Content) -> dict[str, str]:
    headers: dict[str, str] = {}
    if content.etag:
        headers["ETag"] = content.etag
    if content.last_modified is not None:
        headers["Last-Modified"] = format_http_date(content.last_modified)
    if content.size is not None:
        headers["Content-Length"] = str(content.size)
    return headers


def create_app(
    settings: Optional[ProxySettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or ProxySettings()
    configure_logging("galaxycache.proxy", settings.log_level, repository=settings.repository_name)
    configure_tracing(
        service_name="galaxycache.proxy",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_engine(settings.metadata_database_url)
        blob_store = BlobStore(settings.storage_path, settings.uploads_path)
        blob_store.storage_path.mkdir(parents=True, exist_ok=True)
        store = MetadataStore(engine, blob_store, settings.hash_algorithms)
        await store.ensure_schema()
        http = httpx.AsyncClient(timeout=settings.upstream_timeout_seconds, transport=transport)
        upstream = UpstreamClient(http, settings.upstream_url, settings.github_url)
        cache = ProxyCache(settings, store, upstream)
        app.state.proxy_state = ProxyState(settings, engine, http, blob_store, store, cache)
        LOGGER.info(
            "proxy_started",
            repository=settings.repository_name,
            upstream=settings.upstream_url,
            hash_algorithms=list(store.hash_algorithms),
        )
        try:
            yield
        finally:
            await http.aclose()
            await engine.dispose()
            uploads_dir = settings.uploads_path
            if uploads_dir.exists():
                for leftover in uploads_dir.glob("*.upload"):
                    leftover.unlink(missing_ok=True)

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.exception_handler(InvalidAssetKindError)
    async def invalid_kind_handler(request: Request, exc: InvalidAssetKindError) -> JSONResponse:
        LOGGER.error("invalid_asset_kind", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal asset classification error"},
        )

    @app.api_route("/repository/{repository}/{path:path}", methods=["GET", "HEAD"])
    async def serve_content(
        repository: str,
        path: str,
        request: Request,
        state: ProxyState = Depends(get_state),
    ) -> Response:
        if repository != state.settings.repository_name:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown repository")

        content = await state.cache.get(ProxyRequest(path=path, query=request.url.query))
        if content is None:
            LOGGER.info("content_not_found", path=path, query=request.url.query)
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

        headers = content_headers(content)
        if content.etag and etag_matches(request.headers.get("if-none-match"), content.etag):
            await content.close()
            headers.pop("Content-Length", None)
            return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)
        if request.method == "HEAD":
            await content.close()
            return Response(status_code=status.HTTP_200_OK, headers=headers, media_type=content.content_type)
        return StreamingResponse(
            content.iter_bytes(),
            media_type=content.content_type,
            headers=headers,
            background=BackgroundTask(content.close),
        )

    @app.get("/status")
    async def status_probe(state: ProxyState = Depends(get_state)) -> JSONResponse:
        with TRACER.start_as_current_span("proxy.status"):
            payload: dict[str, object] = {
                "repository": state.settings.repository_name,
                "repository_url": state.settings.repository_url,
                "upstream_url": state.settings.upstream_url,
                "storage_path": str(state.blob_store.storage_path),
                "hash_algorithms": list(state.store.hash_algorithms),
            }
            payload.update(await state.store.counts(state.settings.repository_name))
            CACHED_ASSETS_GAUGE.set(payload["assets"], repository=state.settings.repository_name)
            return JSONResponse(payload)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(
        request: Request,
        state: ProxyState = Depends(get_state),
    ) -> PlainTextResponse:
        token = (
            state.settings.metrics_token.get_secret_value()
            if state.settings.metrics_token
            else None
        )
        require_metrics_access(request, token)
        counts = await state.store.counts(state.settings.repository_name)
        CACHED_ASSETS_GAUGE.set(counts["assets"], repository=state.settings.repository_name)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: ProxyState = Depends(get_state)) -> dict:
        """Health check for K8s readiness/liveness probes."""
        health: dict[str, object] = {"status": "healthy", "checks": {}}
        checks: dict[str, object] = health["checks"]  # type: ignore[assignment]

        storage = state.blob_store.storage_path
        checks["storage_writable"] = storage.exists() and os.access(storage, os.W_OK)
        if not checks["storage_writable"]:
            health["status"] = "unhealthy"

        try:
            await state.store.counts(state.settings.repository_name)
            checks["database"] = "ok"
        except Exception as exc:  # noqa: BLE001
            checks["database"] = f"error: {exc}"
            health["status"] = "unhealthy"

        if health["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    return app
