"""HTTP entrypoint for the edge image proxy."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse
from starlette.background import BackgroundTasks

from ..common.http_security import MetricsGuard
from ..common.metrics import GLOBAL_REGISTRY, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.schemas import IncomingImageRequest, ProxyResponse
from ..common.settings import ImageProxySettings
from .cache import ResponseCache, build_cache
from .dispatcher import ImageDispatcher
from .fetcher import CacheAsideFetcher
from .policy import AccessPolicy
from .translator import UrlTranslator


SERVICE_NAME = "edgeimg.proxy"
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

LOGGER = structlog.get_logger(SERVICE_NAME)

REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "edgeimg_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
        description="End-to-end image request latency",
    )
)


class ProxyState:
    def __init__(self, settings: ImageProxySettings, cache: ResponseCache, http_client: httpx.AsyncClient) -> None:
        self.settings = settings
        self.cache = cache
        self.http = http_client
        self.metrics_guard = MetricsGuard(settings.metrics_token)
        translator = UrlTranslator(settings)
        self.dispatcher = ImageDispatcher(
            policy=AccessPolicy(settings, translator),
            fetcher=CacheAsideFetcher(settings, cache, translator, http_client),
        )


def build_http_client(
    settings: ImageProxySettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.origin_timeout_seconds),
        follow_redirects=True,
        transport=transport,
    )


def get_state(request: Request) -> ProxyState:
    return request.app.state.proxy  # type: ignore[attr-defined]


def to_response(result: ProxyResponse, background: BackgroundTasks) -> Response:
    response = Response(content=result.body, status_code=result.status, background=background)
    for name, value in result.headers:
        response.headers.append(name, value)
    return response


def create_app(
    settings: Optional[ImageProxySettings] = None,
    *,
    cache: Optional[ResponseCache] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or ImageProxySettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(SERVICE_NAME, settings.log_level)
        configure_tracing(SERVICE_NAME, settings)
        response_cache = cache if cache is not None else build_cache(settings)
        http_client = build_http_client(settings, transport)
        app.state.proxy = ProxyState(settings, response_cache, http_client)
        LOGGER.info(
            "proxy_started",
            policy=settings.transform_policy,
            referer_check=settings.referer_check_enabled,
            cache_backend=response_cache.status().get("backend"),
        )
        try:
            yield
        finally:
            await http_client.aclose()
            await response_cache.close()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
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

    @app.get("/_health")
    async def health_check(state: ProxyState = Depends(get_state)) -> dict:
        try:
            backend = state.cache.status()
        except Exception as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"status": "unhealthy", "cache": f"error: {exc}"},
            ) from exc
        return {"status": "healthy", "cache": backend, "policy": state.settings.transform_policy}

    @app.get("/_metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: ProxyState = Depends(get_state)) -> PlainTextResponse:
        state.metrics_guard.check(request)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{image_path:path}", methods=ALL_METHODS)
    async def serve_image(request: Request, state: ProxyState = Depends(get_state)) -> Response:
        incoming = IncomingImageRequest.from_url(
            str(request.url),
            method=request.method,
            headers=request.headers.items(),
        )
        background = BackgroundTasks()
        result = await state.dispatcher.handle(incoming, background)
        return to_response(result, background)

    return app
