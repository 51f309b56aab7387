"""Translation of public image URLs into transformation-origin requests."""

from __future__ import annotations

from typing import Iterable, Union
from urllib.parse import urlencode

from ..common.schemas import (
    ErrorKind,
    IncomingImageRequest,
    OriginRequest,
    ProxyError,
    TransformDirective,
)
from ..common.settings import ImageProxySettings


SIZE_PARAM = "s"
WIDTH_PARAM = "w"
HEIGHT_PARAM = "h"

TranslationResult = Union[OriginRequest, ProxyError]


class TransformPolicy:
    """Decides which resize tokens a request contributes to the directive."""

    consumed_params: tuple[str, ...] = ()

    def directive_for(  # pragma: no cover - interface
        self,
        request: IncomingImageRequest,
        directive: TransformDirective,
    ) -> Union[TransformDirective, ProxyError]:
        raise NotImplementedError


class SizeTokenPolicy(TransformPolicy):
    """Square bounding box chosen from a whitelist of symbolic sizes."""

    consumed_params = (SIZE_PARAM,)

    def __init__(self, allowed_sizes: Iterable[str]) -> None:
        self._allowed_sizes = frozenset(allowed_sizes)

    def directive_for(self, request, directive):
        # Without a size the origin would serve the unrestricted original.
        if not request.has_param(SIZE_PARAM):
            return ProxyError(ErrorKind.SIZE_VALIDATION, "Size parameter is required")
        size = request.param(SIZE_PARAM)
        if size not in self._allowed_sizes:
            return ProxyError(ErrorKind.SIZE_VALIDATION, "Invalid size parameter")
        return directive.extend(f"w_{size}", f"h_{size}")


class DimensionPolicy(TransformPolicy):
    """Independent width/height values passed to the origin as given."""

    consumed_params = (WIDTH_PARAM, HEIGHT_PARAM)

    def directive_for(self, request, directive):
        width = request.param(WIDTH_PARAM)
        if width:
            directive = directive.extend(f"w_{width}")
        height = request.param(HEIGHT_PARAM)
        if height:
            directive = directive.extend(f"h_{height}")
        return directive


def build_policy(settings: ImageProxySettings) -> TransformPolicy:
    if settings.transform_policy == "dimensions":
        return DimensionPolicy()
    return SizeTokenPolicy(settings.allowed_sizes)


def image_identifier(path: str) -> str:
    """Strip the leading separator and everything from the first dot on."""
    trimmed = path[1:] if path.startswith("/") else path
    return trimmed.split(".", 1)[0]


class UrlTranslator:
    def __init__(self, settings: ImageProxySettings, policy: TransformPolicy | None = None) -> None:
        self._settings = settings
        self._policy = policy or build_policy(settings)

    def translate(self, request: IncomingImageRequest) -> TranslationResult:
        directive = self._policy.directive_for(request, TransformDirective())
        if isinstance(directive, ProxyError):
            return directive
        consumed = set(self._policy.consumed_params)
        remaining = [(key, value) for key, value in request.query if key not in consumed]
        return OriginRequest(
            base_url=self._settings.origin_base_url,
            image_id=image_identifier(request.path),
            directive=directive,
            namespace=self._settings.asset_namespace,
            version=self._settings.version_segment,
            image_format=self._settings.output_format,
            passthrough=urlencode(remaining),
        )
