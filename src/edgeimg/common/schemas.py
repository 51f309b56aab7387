"""Shared data models for the image delivery proxy."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Iterable, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit


class ErrorKind(enum.Enum):
    """Closed set of failure kinds the proxy can report to a client.

    ``ORIGIN_ERROR`` has no fixed status or message: an origin failure keeps
    the origin's own status code and reason phrase.
    """

    METHOD_NOT_ALLOWED = (HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
    SIZE_VALIDATION = (HTTPStatus.UNPROCESSABLE_ENTITY, "Unprocessable Entity")
    HOTLINK_REJECTED = (HTTPStatus.FORBIDDEN, "Forbidden")
    ORIGIN_ERROR = (None, None)
    INTERNAL_FAULT = (HTTPStatus.INTERNAL_SERVER_ERROR, "Internal Server Error")

    def __init__(self, status: Optional[HTTPStatus], message: Optional[str]) -> None:
        self.status = int(status) if status is not None else None
        self.message = message


@dataclass(frozen=True, slots=True)
class ProxyError:
    """Error value returned by the translator, access policy and dispatcher."""

    kind: ErrorKind
    detail: str = ""
    origin_status: Optional[int] = None

    @classmethod
    def from_origin(cls, status: int, reason: str) -> "ProxyError":
        return cls(ErrorKind.ORIGIN_ERROR, detail=reason, origin_status=status)

    @property
    def status(self) -> int:
        if self.kind.status is None:
            return self.origin_status or int(HTTPStatus.BAD_GATEWAY)
        return self.kind.status

    @property
    def message(self) -> str:
        if self.kind.message is None:
            return self.detail
        return self.kind.message


@dataclass(frozen=True, slots=True)
class IncomingImageRequest:
    """Inbound request as seen by the proxy core."""

    method: str
    url: str
    path: str
    query: tuple[tuple[str, str], ...] = ()
    headers: tuple[tuple[str, str], ...] = ()

    @classmethod
    def from_url(
        cls,
        url: str,
        method: str = "GET",
        headers: Mapping[str, str] | Iterable[tuple[str, str]] | None = None,
    ) -> "IncomingImageRequest":
        parts = urlsplit(url)
        pairs = headers.items() if isinstance(headers, Mapping) else (headers or ())
        return cls(
            method=method.upper(),
            url=url,
            path=parts.path or "/",
            query=tuple(parse_qsl(parts.query, keep_blank_values=True)),
            headers=tuple((name.lower(), value) for name, value in pairs),
        )

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers:
            if key == wanted:
                return value
        return None

    def has_param(self, name: str) -> bool:
        return any(key == name for key, _ in self.query)

    def param(self, name: str) -> Optional[str]:
        for key, value in self.query:
            if key == name:
                return value
        return None

    @property
    def cache_key(self) -> str:
        """Canonical identity used for cache lookups and stores.

        Query parameters are ordered by name so that equivalent URLs share one
        entry; repeated names keep their relative order.
        """
        parts = urlsplit(self.url)
        canonical = f"{parts.scheme}://{parts.netloc.lower()}{self.path}"
        if self.query:
            canonical += "?" + urlencode(sorted(self.query, key=lambda pair: pair[0]))
        return f"{self.method} {canonical}"


@dataclass(frozen=True, slots=True)
class TransformDirective:
    """Ordered transformation tokens sent to the origin."""

    tokens: tuple[str, ...] = ("c_fit", "q_auto")

    def extend(self, *tokens: str) -> "TransformDirective":
        return TransformDirective(self.tokens + tokens)

    def serialize(self) -> str:
        return ",".join(self.tokens)


@dataclass(frozen=True, slots=True)
class OriginRequest:
    """Fully derived request against the transformation origin."""

    base_url: str
    image_id: str
    directive: TransformDirective
    namespace: str
    version: str = "v1"
    image_format: str = "avif"
    passthrough: str = ""

    @property
    def path(self) -> str:
        return f"upload/{self.directive.serialize()}/{self.version}/{self.namespace}/{self.image_id}"

    @property
    def url(self) -> str:
        url = f"{self.base_url}/{self.path}.{self.image_format}"
        if self.passthrough:
            url += f"?{self.passthrough}"
        return url


@dataclass(frozen=True, slots=True)
class AccessRules:
    allowed_sizes: frozenset[str]
    allowed_referers: tuple[str, ...]

    @classmethod
    def build(cls, sizes: Iterable[str], referers: Iterable[str]) -> "AccessRules":
        prefixes: list[str] = []
        for origin in referers:
            origin = origin.rstrip("/")
            if not origin:
                continue
            for candidate in (origin, f"{origin}/"):
                if candidate not in prefixes:
                    prefixes.append(candidate)
        return cls(allowed_sizes=frozenset(sizes), allowed_referers=tuple(prefixes))

    def referer_allowed(self, referer: Optional[str]) -> bool:
        if not referer:
            return False
        return any(referer.startswith(prefix) for prefix in self.allowed_referers)


@dataclass(slots=True)
class ProxyResponse:
    """Response flowing back through the proxy; also the cached payload."""

    status: int
    body: bytes = b""
    headers: list[tuple[str, str]] = field(default_factory=list)
    reason: str = ""

    @property
    def is_error(self) -> bool:
        return self.status > 399

    @property
    def status_text(self) -> str:
        if self.reason:
            return self.reason
        try:
            return HTTPStatus(self.status).phrase
        except ValueError:
            return ""

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return None

    def set_header(self, name: str, value: str) -> None:
        wanted = name.lower()
        self.headers = [(key, val) for key, val in self.headers if key.lower() != wanted]
        self.headers.append((wanted, value))

    def copy(self) -> "ProxyResponse":
        return ProxyResponse(status=self.status, body=self.body, headers=list(self.headers), reason=self.reason)

    @classmethod
    def for_error(cls, error: ProxyError) -> "ProxyResponse":
        return cls.plain(error.status, error.message)

    @classmethod
    def plain(cls, status: int, text: str) -> "ProxyResponse":
        return cls(
            status=status,
            body=text.encode("utf-8"),
            headers=[("content-type", "text/plain; charset=utf-8")],
        )
