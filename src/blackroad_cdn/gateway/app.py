"""Edge gateway serving media assets with per-class cache policy and conditional GET."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from types import MappingProxyType
from typing import AsyncIterator, Mapping, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask
import structlog
from opentelemetry import trace

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram, LabeledCounter
from ..common.observability import configure_observability, instrument_fastapi_app
from ..common.settings import GatewaySettings
from .policy import classify_media_type, resolve_cache_control
from .side_cache import CachedMetadata, MetadataCache, RedisMetadataCache
from .store import ObjectStore, StoredObject, StoreMiss, StoreUnavailableError, build_store


LOGGER = structlog.get_logger("blackroad_cdn.gateway")
TRACER = trace.get_tracer("blackroad_cdn.gateway")

CORS_HEADERS: Mapping[str, str] = MappingProxyType(
    {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Expose-Headers": "ETag, Content-Length, Content-Type",
    }
)
MARKER_HEADER = "X-BlackRoad-CDN"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
USAGE_HINT = "GET /<asset-key>"
UNBOUND_HINT = "Set BLACKROAD_CDN_S3_BUCKET or BLACKROAD_CDN_STORAGE_PATH"
UNAVAILABLE_HINT = "Check object store connectivity and credentials"

OUTCOMES = ("preflight", "self_description", "degraded", "not_found", "not_modified", "served")

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("blackroad_cdn_requests_total", "Total gateway requests"))
OUTCOME_COUNTER = GLOBAL_REGISTRY.register(
    LabeledCounter("blackroad_cdn_responses_total", "outcome", OUTCOMES, "Gateway responses by outcome")
)
SIDE_CACHE_HIT_COUNTER = GLOBAL_REGISTRY.register(
    Counter("blackroad_cdn_side_cache_hits_total", "Metadata lookups answered by the side-cache")
)
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("blackroad_cdn_bytes_served_total", "Asset bytes streamed to clients")
)
LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "blackroad_cdn_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
        description="Gateway request latency until response headers",
    )
)


def extract_asset_key(path: str) -> str:
    return path[1:] if path.startswith("/") else path


def cors_headers(**extra: str) -> dict[str, str]:
    return {**CORS_HEADERS, **extra}


def asset_headers(content_type: str, size: int, etag: Optional[str]) -> dict[str, str]:
    headers = cors_headers()
    headers["Content-Type"] = content_type
    headers["Content-Length"] = str(size)
    if etag:
        headers["ETag"] = etag
    headers["Cache-Control"] = resolve_cache_control(content_type)
    headers[MARKER_HEADER] = "1"
    return headers


async def stream_object(obj: StoredObject) -> AsyncIterator[bytes]:
    async for chunk in obj.body:
        BYTES_SERVED_COUNTER.inc(len(chunk))
        yield chunk


class AssetGateway:
    """Resolves one request against the object store.

    Each call walks preflight, key extraction, store availability and the
    conditional fetch in that order and always returns a complete response
    carrying the CORS headers.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        store: Optional[ObjectStore],
        side_cache: Optional[MetadataCache] = None,
    ):
        self.settings = settings
        self.store = store
        self.side_cache = side_cache
        backend = store.describe().get("backend") if store is not None else None
        self.logger = LOGGER.bind(backend=backend)

    async def handle(self, request: Request) -> Response:
        if request.method == "OPTIONS":
            return self._finish("preflight", Response(status_code=status.HTTP_200_OK, headers=cors_headers()))

        # request.url re-parses the decoded path, which would cut keys at "?" or "#"
        key = extract_asset_key(request.scope["path"])
        if not key:
            return self._finish("self_description", self.describe_service())

        if self.store is None:
            self.logger.warning("store_unbound", key=key)
            return self._finish("degraded", self.degraded(key, "Media bucket not bound", UNBOUND_HINT))

        if_none_match = request.headers.get("if-none-match")
        try:
            if request.method == "HEAD":
                return await self._head(key, if_none_match)
            return await self._get(key, if_none_match)
        except StoreUnavailableError as exc:
            self.logger.error("store_unavailable", key=key, error=str(exc))
            return self._finish("degraded", self.degraded(key, "Object store unavailable", UNAVAILABLE_HINT))

    def describe_service(self) -> JSONResponse:
        payload = {
            "service": self.settings.service_name,
            "bucket": self.settings.s3_bucket or self.settings.bucket_label,
            "usage": USAGE_HINT,
        }
        return JSONResponse(payload, headers=cors_headers())

    def degraded(self, key: str, error: str, hint: str) -> JSONResponse:
        return JSONResponse(
            {"error": error, "key": key, "hint": hint},
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            headers=cors_headers(),
        )

    async def _get(self, key: str, if_none_match: Optional[str]) -> Response:
        with TRACER.start_as_current_span("cdn.get", attributes={"cdn.asset_key": key}) as span:
            result = await self.store.get(key, match_etag=if_none_match)
            if isinstance(result, StoreMiss):
                span.set_attribute("cdn.outcome", result.value)
                return self._miss(key, result)

            content_type = result.content_type
            if not content_type:
                cached = await self._lookup_metadata(key)
                content_type = (cached.content_type if cached else None) or DEFAULT_CONTENT_TYPE
            media_class = classify_media_type(content_type)
            span.set_attribute("cdn.outcome", "served")
            span.set_attribute("cdn.media_class", media_class.value)
            span.set_attribute("cdn.bytes", result.size)
            self.logger.info(
                "asset_served",
                key=key,
                bytes=result.size,
                content_type=content_type,
                media_class=media_class.value,
            )
            # the background task releases the stream even when the body is never iterated
            response = StreamingResponse(
                stream_object(result),
                headers=asset_headers(content_type, result.size, result.etag),
                background=BackgroundTask(result.aclose),
            )
            return self._finish("served", response)

    async def _head(self, key: str, if_none_match: Optional[str]) -> Response:
        with TRACER.start_as_current_span("cdn.head", attributes={"cdn.asset_key": key}) as span:
            # conditional HEADs need the store's validator
            cached = None if if_none_match else await self._lookup_metadata(key)
            if cached is not None and cached.content_type and cached.size is not None:
                SIDE_CACHE_HIT_COUNTER.inc()
                span.set_attribute("cdn.outcome", "served")
                span.set_attribute("cdn.source", "side_cache")
                self.logger.info("asset_head", key=key, source="side_cache", bytes=cached.size)
                response = Response(headers=asset_headers(cached.content_type, cached.size, None))
                return self._finish("served", response)

            result = await self.store.head(key, match_etag=if_none_match)
            if isinstance(result, StoreMiss):
                span.set_attribute("cdn.outcome", result.value)
                return self._miss(key, result)

            content_type = result.content_type or DEFAULT_CONTENT_TYPE
            span.set_attribute("cdn.outcome", "served")
            span.set_attribute("cdn.source", "store")
            self.logger.info("asset_head", key=key, source="store", bytes=result.size)
            response = Response(headers=asset_headers(content_type, result.size, result.etag))
            return self._finish("served", response)

    def _miss(self, key: str, miss: StoreMiss) -> Response:
        if miss is StoreMiss.NOT_MODIFIED:
            self.logger.info("asset_not_modified", key=key)
            return self._finish("not_modified", Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=cors_headers()))
        self.logger.info("asset_not_found", key=key)
        response = PlainTextResponse("Not found", status_code=status.HTTP_404_NOT_FOUND, headers=cors_headers())
        return self._finish("not_found", response)

    async def _lookup_metadata(self, key: str) -> Optional[CachedMetadata]:
        if self.side_cache is None:
            return None
        return await self.side_cache.lookup(key)

    @staticmethod
    def _finish(outcome: str, response: Response) -> Response:
        OUTCOME_COUNTER.inc(outcome)
        return response


def get_gateway(request: Request) -> AssetGateway:
    return request.app.state.gateway  # type: ignore[attr-defined]


def build_side_cache(settings: GatewaySettings) -> Optional[MetadataCache]:
    if not settings.redis_url:
        return None
    return RedisMetadataCache.from_url(settings.redis_url, prefix=settings.metadata_prefix)


def create_app(
    settings: Optional[GatewaySettings] = None,
    store: Optional[ObjectStore] = None,
    side_cache: Optional[MetadataCache] = None,
) -> FastAPI:
    settings = settings or GatewaySettings()
    configure_observability("blackroad_cdn.gateway", settings)
    if store is None:
        store = build_store(settings)
    if side_cache is None:
        side_cache = build_side_cache(settings)
    gateway = AssetGateway(settings, store, side_cache)
    admin_prefix = settings.admin_prefix

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gateway.logger.info(
            "gateway_started",
            store=store.describe() if store is not None else None,
            side_cache=side_cache is not None,
        )
        try:
            yield
        finally:
            if side_cache is not None:
                await side_cache.close()

    # asset keys own the whole path space, so no docs or schema routes
    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    instrument_fastapi_app(app, excluded_urls=f"{admin_prefix}/healthz,{admin_prefix}/metrics")
    app.state.gateway = gateway

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        REQUEST_COUNTER.inc()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            LATENCY_HISTOGRAM.observe(duration)
            gateway.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        LATENCY_HISTOGRAM.observe(duration)
        for name, value in CORS_HEADERS.items():
            response.headers.setdefault(name, value)

        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            gateway.logger.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            gateway.logger.warning("http_request", **log_kwargs)
        else:
            gateway.logger.info("http_request", **log_kwargs)
        return response

    @app.get(f"{admin_prefix}/healthz")
    async def health_check(gateway: AssetGateway = Depends(get_gateway)) -> dict:
        """Readiness probe; unhealthy while no object store is bound."""
        health: dict[str, object] = {"status": "healthy", "checks": {}}
        if gateway.store is None:
            health["status"] = "unhealthy"
            health["checks"] = {"store": "unbound"}
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        health["checks"] = {
            "store": gateway.store.describe(),
            "side_cache": gateway.side_cache is not None,
        }
        return health

    @app.get(f"{admin_prefix}/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, gateway: AssetGateway = Depends(get_gateway)) -> PlainTextResponse:
        token = gateway.settings.metrics_token.get_secret_value() if gateway.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{asset_path:path}", methods=["GET", "HEAD", "OPTIONS"], include_in_schema=False)
    async def serve_asset(request: Request, gateway: AssetGateway = Depends(get_gateway)) -> Response:
        return await gateway.handle(request)

    return app
