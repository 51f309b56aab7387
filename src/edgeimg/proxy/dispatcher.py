"""Top-level request handling and response normalization."""

from __future__ import annotations

import structlog
from starlette.background import BackgroundTasks

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import ErrorKind, IncomingImageRequest, ProxyError, ProxyResponse
from .fetcher import CacheAsideFetcher
from .policy import AccessPolicy


LOGGER = structlog.get_logger("edgeimg.dispatcher")

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("edgeimg_requests_total", "Image requests handled"))
REJECTION_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgeimg_policy_rejections_total", "Requests rejected by method or access policy")
)
INTERNAL_FAULT_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgeimg_internal_faults_total", "Requests that failed with an unclassified error")
)


def sanitize(response: ProxyResponse) -> ProxyResponse:
    """Reduce an error response to its status and status text."""
    if not response.is_error:
        return response
    return ProxyResponse.for_error(ProxyError.from_origin(response.status, response.status_text))


class ImageDispatcher:
    """Always produces exactly one response per inbound request."""

    def __init__(self, policy: AccessPolicy, fetcher: CacheAsideFetcher) -> None:
        self._policy = policy
        self._fetcher = fetcher

    async def handle(self, request: IncomingImageRequest, background: BackgroundTasks) -> ProxyResponse:
        REQUEST_COUNTER.inc()
        method_error = self._policy.check_method(request)
        if method_error is not None:
            return self._reject(method_error)

        try:
            rejection = self._policy.evaluate(request)
            if rejection is not None:
                return self._reject(rejection)
            response = await self._fetcher.fetch(request, background)
        except Exception:
            INTERNAL_FAULT_COUNTER.inc()
            LOGGER.exception("unexpected_error", method=request.method, path=request.path)
            return ProxyResponse.for_error(ProxyError(ErrorKind.INTERNAL_FAULT))
        return sanitize(response)

    @staticmethod
    def _reject(error: ProxyError) -> ProxyResponse:
        REJECTION_COUNTER.inc()
        return ProxyResponse.for_error(error)
