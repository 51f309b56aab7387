"""Access policy checks applied before any cache or origin work."""

from __future__ import annotations

from typing import Optional

from ..common.schemas import AccessRules, ErrorKind, IncomingImageRequest, ProxyError
from ..common.settings import ImageProxySettings
from .translator import UrlTranslator


class AccessPolicy:
    """Method, referer and transformation checks for an inbound request.

    Returns ``None`` when the request may proceed, otherwise the first
    :class:`ProxyError` encountered. Nothing here touches the network.
    """

    def __init__(self, settings: ImageProxySettings, translator: UrlTranslator) -> None:
        self._referer_check = settings.referer_check_enabled
        self._rules = AccessRules.build(settings.allowed_sizes, settings.allowed_referers)
        self._translator = translator

    @staticmethod
    def check_method(request: IncomingImageRequest) -> Optional[ProxyError]:
        if request.method != "GET":
            return ProxyError(ErrorKind.METHOD_NOT_ALLOWED)
        return None

    def check_referer(self, request: IncomingImageRequest) -> Optional[ProxyError]:
        if not self._referer_check:
            return None
        if not self._rules.referer_allowed(request.header("referer")):
            return ProxyError(ErrorKind.HOTLINK_REJECTED)
        return None

    def check_transform(self, request: IncomingImageRequest) -> Optional[ProxyError]:
        result = self._translator.translate(request)
        if isinstance(result, ProxyError):
            return result
        return None

    def evaluate(self, request: IncomingImageRequest) -> Optional[ProxyError]:
        return self.check_method(request) or self.check_referer(request) or self.check_transform(request)
