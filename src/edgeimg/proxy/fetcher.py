"""Cache-aside retrieval of transformed images from the origin."""

from __future__ import annotations

import time
from http import HTTPStatus

import httpx
import structlog
from opentelemetry import trace
from starlette.background import BackgroundTasks

from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.schemas import IncomingImageRequest, OriginRequest, ProxyError, ProxyResponse
from ..common.settings import ImageProxySettings
from .cache import ResponseCache
from .translator import UrlTranslator


LOGGER = structlog.get_logger("edgeimg.fetcher")
TRACER = trace.get_tracer("edgeimg.fetcher")

# Never forwarded to the origin. httpx sets its own transport headers, and the
# origin reply is shared by every client so it must be the full image.
REQUEST_HEADER_DROPLIST = (
    "host",
    "connection",
    "keep-alive",
    "proxy-connection",
    "transfer-encoding",
    "upgrade",
    "te",
    "content-length",
    "accept-encoding",
    "user-agent",
    "if-none-match",
    "if-modified-since",
    "if-match",
    "if-unmodified-since",
    "if-range",
    "range",
)
# Not a complete representation of the image.
UNCACHEABLE_STATUSES = frozenset({HTTPStatus.PARTIAL_CONTENT, HTTPStatus.NOT_MODIFIED})
# The body is handed on decoded, so encoding/length headers no longer apply.
RESPONSE_HEADER_DROPLIST = (
    "connection",
    "keep-alive",
    "transfer-encoding",
    "content-encoding",
    "content-length",
)

CACHE_HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("edgeimg_cache_hits_total", "Responses served from cache"))
CACHE_MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("edgeimg_cache_misses_total", "Cache lookups that missed"))
CACHE_STORE_COUNTER = GLOBAL_REGISTRY.register(Counter("edgeimg_cache_stores_total", "Responses written to cache"))
CACHE_STORE_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgeimg_cache_store_failures_total", "Background cache writes that failed")
)
ORIGIN_FETCH_COUNTER = GLOBAL_REGISTRY.register(Counter("edgeimg_origin_fetches_total", "Requests sent to the origin"))
ORIGIN_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgeimg_origin_error_responses_total", "Origin responses with an error status")
)
ORIGIN_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "edgeimg_origin_latency_seconds",
        buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
        description="Latency of origin image fetches",
    )
)


class TranslationFault(RuntimeError):
    """A request reached the fetcher although the translator rejects it."""

    def __init__(self, error: ProxyError) -> None:
        super().__init__(f"untranslatable request reached fetcher: {error.kind.name}")
        self.error = error


class CacheAsideFetcher:
    def __init__(
        self,
        settings: ImageProxySettings,
        cache: ResponseCache,
        translator: UrlTranslator,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._cache = cache
        self._translator = translator
        self._http = http_client
        self._user_agent = settings.user_agent
        self._ttl_seconds = settings.cache_ttl_seconds
        self._cache_control = f"public, max-age={settings.cache_ttl_seconds}"
        self._vary = ", ".join(settings.vary_headers)

    async def fetch(self, request: IncomingImageRequest, background: BackgroundTasks) -> ProxyResponse:
        """Serve ``request`` from cache, or fetch it and schedule the store on ``background``.

        The store runs after the response has been returned and cannot change it.
        """
        cache_key = request.cache_key
        with TRACER.start_as_current_span("edgeimg.fetch", attributes={"edgeimg.cache_key": cache_key}) as span:
            cached = await self._cache.match(cache_key)
            if cached is not None:
                CACHE_HIT_COUNTER.inc()
                span.set_attribute("edgeimg.cache_hit", True)
                return cached
            CACHE_MISS_COUNTER.inc()
            span.set_attribute("edgeimg.cache_hit", False)

            origin = self._translator.translate(request)
            if isinstance(origin, ProxyError):
                raise TranslationFault(origin)

            response = await self._fetch_origin(origin, request)
            self.rewrite_headers(response)
            span.set_attribute("edgeimg.origin_status", response.status)
            if response.status not in UNCACHEABLE_STATUSES:
                background.add_task(self._store, cache_key, response.copy())
            return response

    def forward_headers(self, request: IncomingImageRequest) -> list[tuple[str, str]]:
        headers = [(name, value) for name, value in request.headers if name not in REQUEST_HEADER_DROPLIST]
        headers.append(("user-agent", self._user_agent))
        return headers

    def rewrite_headers(self, response: ProxyResponse) -> None:
        response.set_header("cache-control", self._cache_control)
        response.set_header("vary", self._vary)

    async def _fetch_origin(self, origin: OriginRequest, request: IncomingImageRequest) -> ProxyResponse:
        url = origin.url
        with TRACER.start_as_current_span("edgeimg.origin_fetch", attributes={"http.url": url}) as span:
            ORIGIN_FETCH_COUNTER.inc()
            start = time.perf_counter()
            upstream = await self._http.get(url, headers=self.forward_headers(request))
            ORIGIN_LATENCY_HISTOGRAM.observe(time.perf_counter() - start)
            span.set_attribute("http.status_code", upstream.status_code)
            if upstream.is_error:
                ORIGIN_ERROR_COUNTER.inc()
            return ProxyResponse(
                status=upstream.status_code,
                body=upstream.content,
                headers=[
                    (name.lower(), value)
                    for name, value in upstream.headers.multi_items()
                    if name.lower() not in RESPONSE_HEADER_DROPLIST
                ],
                reason=upstream.reason_phrase,
            )

    async def _store(self, cache_key: str, response: ProxyResponse) -> None:
        try:
            await self._cache.put(cache_key, response, self._ttl_seconds)
        except Exception as exc:  # noqa: BLE001
            CACHE_STORE_FAILURE_COUNTER.inc()
            LOGGER.warning("cache_store_failed", cache_key=cache_key, error=str(exc))
            return
        CACHE_STORE_COUNTER.inc()
