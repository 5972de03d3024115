"""FastAPI edge service that serves, caches and invalidates origin images."""

from __future__ import annotations

import time
import urllib.parse
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Optional

import httpx
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from opentelemetry import trace

from ..common.http_security import CORS_HEADERS, client_host, require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.networking import EgressDenied, MetadataEndpointDenylist, OriginEgressGuard, Resolver
from ..common.observability import configure_observability, instrument_fastapi_app
from ..common.schemas import DeleteResult, ErrorBody
from ..common.settings import EdgeSettings
from ..usage import UsageDispatcher
from .cache import CACHE_CONTROL, CacheBackend, CacheEntry, build_backend, compute_etag, etag_matches
from .errors import (
    Forbidden,
    ImgProError,
    MethodNotAllowed,
    NotFound,
    StorageError,
    UnsupportedMediaType,
    UpstreamError,
)
from .origin import FetchOutcome, OriginFetcher
from .validation import RequestDescriptor, is_allowed_origin, is_image_content_type, parse_request

LOGGER = structlog.get_logger("imgpro.edge")
TRACER = trace.get_tracer("imgpro.edge")

SERVICE_VERSION = "1.1.0"
IMAGE_METHODS = ["GET", "HEAD", "DELETE", "POST", "PUT", "PATCH"]

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("imgpro_requests_total", "Image requests by method"))
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("imgpro_cache_hits_total", "Images served from cache"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("imgpro_cache_misses_total", "Cache lookups that found nothing"))
NOT_MODIFIED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imgpro_not_modified_total", "Conditional requests answered with 304")
)
FETCH_COUNTER = GLOBAL_REGISTRY.register(Counter("imgpro_origin_fetches_total", "Images fetched from origins"))
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(Counter("imgpro_bytes_served_total", "Image bytes served"))
ORIGIN_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imgpro_origin_errors_total", "Origin fetches that did not yield an image")
)
BLOCKED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imgpro_origin_blocked_total", "Origin responses classified as refusals")
)
CACHE_WRITE_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imgpro_cache_write_failures_total", "Fetched images that could not be stored")
)
DELETE_COUNTER = GLOBAL_REGISTRY.register(Counter("imgpro_cache_deletes_total", "Cache entries invalidated"))
USAGE_START_FAILURES = GLOBAL_REGISTRY.register(
    Counter("imgpro_usage_start_failures_total", "Startups that continued with usage accounting disabled")
)
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "imgpro_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Edge request latency",
    )
)


@dataclass
class EdgeState:
    settings: EdgeSettings
    backend: CacheBackend
    fetcher: OriginFetcher
    usage: Optional[UsageDispatcher]

    def record_usage(self, domain: str, cache_hit: bool) -> None:
        """Hand a served image to the usage pipeline; never affects the response."""
        if self.usage is None:
            return
        try:
            self.usage.submit(domain, cache_hit)
        except Exception:  # noqa: BLE001
            LOGGER.warning("usage_submit_failed", domain=domain, exc_info=True)


def get_state(request: Request) -> EdgeState:
    return request.app.state.edge_state  # type: ignore[attr-defined]


def build_fetcher(
    settings: EdgeSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    resolver: Optional[Resolver] = None,
) -> OriginFetcher:
    guard = OriginEgressGuard(
        allow_private=settings.allow_private_origins,
        metadata_denylist=MetadataEndpointDenylist(settings.metadata_endpoint_denylist),
        resolver=resolver,
    )
    return OriginFetcher(
        guard,
        timeout_seconds=settings.fetch_timeout_seconds,
        max_redirects=settings.max_redirects,
        max_body_bytes=settings.max_file_size,
        user_agent_override=settings.origin_user_agent,
        forward_client_ip=settings.forward_client_ip,
        redirect_validator=lambda url: is_allowed_origin(url, settings.allowed_origins),
        transport=transport,
    )


def error_response(message: str, status_code: int) -> JSONResponse:
    body = ErrorBody(error=message, status=status_code)
    return JSONResponse(body.model_dump(), status_code=status_code)


def _http_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def _entry_headers(entry: CacheEntry, status_label: str) -> dict[str, str]:
    headers = {
        "Content-Type": entry.content_type,
        "Content-Length": str(entry.size),
        "ETag": entry.http_etag,
        "Last-Modified": _http_date(entry.uploaded_at),
        "Cache-Control": CACHE_CONTROL,
        "X-ImgPro-Status": status_label,
    }
    if entry.cached_at:
        headers["X-ImgPro-Cached-At"] = entry.cached_at
    return headers


def image_response(entry: CacheEntry, body: bytes, status_label: str) -> Response:
    headers = _entry_headers(entry, status_label)
    headers["Content-Length"] = str(len(body))
    BYTES_SERVED_COUNTER.inc(len(body))
    return Response(content=body, status_code=status.HTTP_200_OK, headers=headers)


def not_modified_response(entry: CacheEntry) -> Response:
    return Response(
        status_code=status.HTTP_304_NOT_MODIFIED,
        headers={"ETag": entry.http_etag, "Cache-Control": CACHE_CONTROL},
    )


def _raw_request_path(request: Request) -> str:
    raw_path = request.scope.get("raw_path")
    if raw_path:
        return raw_path.decode("latin-1").split("?", 1)[0]
    return urllib.parse.quote(request.url.path)


async def invalidate(state: EdgeState, descriptor: RequestDescriptor) -> Response:
    entry = await state.backend.head(descriptor.cache_key)
    if entry is None:
        raise NotFound("Image not found in cache")
    await state.backend.delete(descriptor.cache_key)
    DELETE_COUNTER.inc()
    LOGGER.info("cache_deleted", cache_key=descriptor.cache_key, domain=descriptor.domain)
    return JSONResponse(DeleteResult(cache_key=descriptor.cache_key).model_dump(by_alias=True))


async def head_lookup(state: EdgeState, descriptor: RequestDescriptor, request: Request) -> Response:
    with TRACER.start_as_current_span("edge.cache_lookup", attributes={"imgpro.cache_key": descriptor.cache_key}):
        entry = await state.backend.head(descriptor.cache_key)
    if entry is None:
        raise NotFound("Image not found in cache")
    if etag_matches(entry.etag, request.headers.get("if-none-match")):
        NOT_MODIFIED_COUNTER.inc()
        return not_modified_response(entry)
    return Response(status_code=status.HTTP_200_OK, headers=_entry_headers(entry, "cached"))


async def serve_image(state: EdgeState, descriptor: RequestDescriptor, request: Request) -> Response:
    if not is_allowed_origin(descriptor.source_url, state.settings.allowed_origins):
        raise Forbidden("Origin not allowed")

    if not descriptor.force_reprocess:
        with TRACER.start_as_current_span(
            "edge.cache_lookup", attributes={"imgpro.cache_key": descriptor.cache_key}
        ) as span:
            entry = await state.backend.head(descriptor.cache_key)
            if entry is not None and etag_matches(entry.etag, request.headers.get("if-none-match")):
                span.set_attribute("imgpro.cache_result", "not_modified")
                NOT_MODIFIED_COUNTER.inc()
                state.record_usage(descriptor.domain, True)
                return not_modified_response(entry)
            if entry is not None:
                entry = await state.backend.get(descriptor.cache_key)
            if entry is not None and entry.body is not None:
                span.set_attribute("imgpro.cache_result", "hit")
                HIT_COUNTER.inc()
                LOGGER.info("cache_hit", cache_key=descriptor.cache_key, bytes=entry.size)
                state.record_usage(descriptor.domain, True)
                return image_response(entry, entry.body, "hit")
            span.set_attribute("imgpro.cache_result", "miss")
        MISS_COUNTER.inc()
        LOGGER.info("cache_miss", cache_key=descriptor.cache_key)

    body, content_type = await fetch_image(state, descriptor, request)
    entry, stored = await store_image(state, descriptor, body, content_type)
    state.record_usage(descriptor.domain, False)
    response = image_response(entry, body, "fetched" if descriptor.force_reprocess else "miss")
    if not stored:
        response.headers["X-ImgPro-Cache-Write"] = "failed"
    return response


async def fetch_image(state: EdgeState, descriptor: RequestDescriptor, request: Request) -> tuple[bytes, str]:
    """Fetch and validate the origin image, returning its bytes and content type."""
    with TRACER.start_as_current_span("edge.origin_fetch", attributes={"imgpro.source_url": descriptor.source_url}) as span:
        try:
            outcome = await state.fetcher.fetch(
                descriptor.source_url,
                client_headers=request.headers,
                client_ip=client_host(request),
            )
        except EgressDenied as exc:
            ORIGIN_ERROR_COUNTER.inc(reason="egress_denied")
            LOGGER.warning("origin_egress_denied", source_url=descriptor.source_url, error=str(exc))
            raise Forbidden(str(exc)) from exc
        except UpstreamError as exc:
            ORIGIN_ERROR_COUNTER.inc(reason=type(exc).__name__.lower())
            raise

        span.set_attribute("http.status_code", outcome.status_code)
        try:
            return await _accept_outcome(state, descriptor, outcome)
        finally:
            await outcome.aclose()


async def _accept_outcome(state: EdgeState, descriptor: RequestDescriptor, outcome: FetchOutcome) -> tuple[bytes, str]:
    if outcome.blocked:
        BLOCKED_COUNTER.inc(reason=outcome.block_reason or "unknown")

    if not outcome.ok:
        ORIGIN_ERROR_COUNTER.inc(reason=f"http_{outcome.status_code}")
        if outcome.status_code == status.HTTP_404_NOT_FOUND:
            raise NotFound(f"Image not found: {descriptor.source_url}")
        raise UpstreamError(f"Origin error {outcome.status_code}: {outcome.reason}")

    if outcome.blocked and outcome.block_reason != "non_image_content_type":
        ORIGIN_ERROR_COUNTER.inc(reason="blocked")
        raise UpstreamError(f"Origin refused request: {outcome.block_reason}")

    content_type = outcome.content_type
    if not is_image_content_type(content_type):
        raise UnsupportedMediaType(f"Not an image: {content_type}")

    body = await outcome.read_body(state.settings.max_file_size)
    FETCH_COUNTER.inc()
    LOGGER.info("origin_fetched", source_url=descriptor.source_url, bytes=len(body), content_type=content_type)
    return body, content_type


async def store_image(
    state: EdgeState,
    descriptor: RequestDescriptor,
    body: bytes,
    content_type: str,
) -> tuple[CacheEntry, bool]:
    """Write the fetched image; a failed write still yields an entry describing the bytes."""
    with TRACER.start_as_current_span("edge.store", attributes={"imgpro.cache_key": descriptor.cache_key}) as span:
        try:
            entry = await state.backend.put(
                descriptor.cache_key,
                body,
                content_type,
                descriptor.source_url,
                descriptor.domain,
            )
        except StorageError as exc:
            span.record_exception(exc)
            CACHE_WRITE_FAILURE_COUNTER.inc()
            LOGGER.error("cache_write_failed", cache_key=descriptor.cache_key, error=exc.message)
            now = datetime.now(timezone.utc)
            entry = CacheEntry(
                key=descriptor.cache_key,
                size=len(body),
                content_type=content_type,
                etag=compute_etag(body),
                uploaded_at=now,
                cached_at="",
                source_url=descriptor.source_url,
                domain=descriptor.domain,
            )
            return entry, False
        span.set_attribute("imgpro.bytes", len(body))
        return entry, True


def create_app(
    settings: Optional[EdgeSettings] = None,
    *,
    backend: Optional[CacheBackend] = None,
    fetcher: Optional[OriginFetcher] = None,
    usage: Optional[UsageDispatcher] = None,
) -> FastAPI:
    settings = settings or EdgeSettings()
    configure_observability(settings, "imgpro.edge", SERVICE_VERSION)
    state = EdgeState(
        settings=settings,
        backend=backend or build_backend(settings),
        fetcher=fetcher or build_fetcher(settings),
        usage=usage if usage is not None else UsageDispatcher.from_settings(settings),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if state.usage is not None:
            try:
                await state.usage.start()
            except Exception:  # noqa: BLE001
                # Images are still served; usage accounting stays off until restart.
                LOGGER.exception("usage_start_failed")
                USAGE_START_FAILURES.inc()
                state.usage = None
        LOGGER.info("edge_started", backend=state.backend.status().get("backend"), version=SERVICE_VERSION)
        try:
            yield
        finally:
            if state.usage is not None:
                await state.usage.stop()
            await state.fetcher.aclose()
            LOGGER.info("edge_stopped")

    app = FastAPI(title="ImgPro Edge", version=SERVICE_VERSION, lifespan=lifespan)
    instrument_fastapi_app(app)
    app.state.edge_state = state

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
        for name, value in CORS_HEADERS.items():
            response.headers.setdefault(name, value)

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

    @app.get("/health")
    @app.get("/ping")
    async def health_check(request: Request) -> dict:
        current = get_state(request)
        return {
            "status": "healthy",
            "version": SERVICE_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "backend": current.backend.status(),
            "usage": {"enabled": current.usage is not None and current.usage.enabled},
        }

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request) -> PlainTextResponse:
        current = get_state(request)
        token = current.settings.metrics_token.get_secret_value() if current.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.options("/{full_path:path}")
    async def preflight(full_path: str) -> Response:
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.api_route("/{full_path:path}", methods=IMAGE_METHODS)
    async def handle_image(full_path: str, request: Request) -> Response:
        current = get_state(request)
        raw_path = _raw_request_path(request)
        REQUEST_COUNTER.inc(method=request.method)
        try:
            descriptor = parse_request(raw_path, request.query_params)
            if request.method == "DELETE":
                return await invalidate(current, descriptor)
            if request.method == "HEAD":
                return await head_lookup(current, descriptor, request)
            if request.method != "GET":
                raise MethodNotAllowed("Method not allowed")
            return await serve_image(current, descriptor, request)
        except ImgProError as exc:
            if exc.status_code >= 500:
                LOGGER.error("edge_request_failed", path=raw_path, status=exc.status_code, error=exc.message)
            else:
                LOGGER.info("edge_request_rejected", path=raw_path, status=exc.status_code, error=exc.message)
            return error_response(exc.message, exc.status_code)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("edge_request_crashed", path=raw_path, method=request.method)
            return error_response(str(exc) or type(exc).__name__, status.HTTP_500_INTERNAL_SERVER_ERROR)

    return app
