"""Access control for the proxy's operational endpoints."""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Optional

from fastapi import HTTPException, Request, status
from pydantic import SecretStr


def _bearer_token(request: Request) -> str:
    scheme, _, credentials = (request.headers.get("authorization") or "").partition(" ")
    return credentials.strip() if scheme.lower() == "bearer" else ""


def _is_loopback(host: Optional[str]) -> bool:
    try:
        return ip_address(host or "").is_loopback
    except ValueError:
        return False


class MetricsGuard:
    """Admits metrics scrapes carrying the configured bearer token.

    Without a configured token only loopback clients may scrape, so a
    sidecar collector can scrape without credentials.
    """

    def __init__(self, token: Optional[SecretStr]) -> None:
        self._token = token.get_secret_value() if token else ""

    def check(self, request: Request) -> None:
        if self._token:
            if not hmac.compare_digest(_bearer_token(request).encode(), self._token.encode()):
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
            return
        if not _is_loopback(request.client.host if request.client else None):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")
