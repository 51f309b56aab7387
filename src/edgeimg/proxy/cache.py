"""Response cache backends keyed by the canonical inbound request."""

from __future__ import annotations

import hashlib
import json
from typing import Optional

from redis.asyncio import Redis
import structlog

from ..common.schemas import ProxyResponse
from ..common.settings import ImageProxySettings


LOGGER = structlog.get_logger("edgeimg.cache")


class ResponseCache:
    async def match(self, cache_key: str) -> Optional[ProxyResponse]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, cache_key: str, response: ProxyResponse, ttl_seconds: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        return None

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


class InMemoryResponseCache(ResponseCache):
    """Per-process cache for local runs and tests. Entries never expire."""

    def __init__(self) -> None:
        self._entries: dict[str, ProxyResponse] = {}

    async def match(self, cache_key: str) -> Optional[ProxyResponse]:
        cached = self._entries.get(cache_key)
        return cached.copy() if cached is not None else None

    async def put(self, cache_key: str, response: ProxyResponse, ttl_seconds: int) -> None:
        self._entries[cache_key] = response.copy()

    def __len__(self) -> int:
        return len(self._entries)

    def status(self) -> dict[str, object]:
        return {"backend": "memory", "entries": len(self._entries)}


class RedisResponseCache(ResponseCache):
    """Shared cache stored as one Redis hash per response."""

    def __init__(self, redis: Redis, key_prefix: str = "edgeimg:response:") -> None:
        self._redis = redis
        self._prefix = key_prefix

    def storage_key(self, cache_key: str) -> str:
        digest = hashlib.sha256(cache_key.encode("utf-8")).hexdigest()
        return f"{self._prefix}{digest}"

    async def match(self, cache_key: str) -> Optional[ProxyResponse]:
        payload = await self._redis.hgetall(self.storage_key(cache_key))
        if not payload:
            return None
        try:
            headers = json.loads(payload[b"headers"].decode("utf-8"))
            return ProxyResponse(
                status=int(payload[b"status"]),
                body=payload.get(b"body", b""),
                headers=[(str(name), str(value)) for name, value in headers],
                reason=payload.get(b"reason", b"").decode("utf-8"),
            )
        except (KeyError, ValueError) as exc:
            LOGGER.warning("cache_entry_corrupt", cache_key=cache_key, error=str(exc))
            return None

    async def put(self, cache_key: str, response: ProxyResponse, ttl_seconds: int) -> None:
        key = self.storage_key(cache_key)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(
                key,
                mapping={
                    "status": str(response.status),
                    "reason": response.reason,
                    "headers": json.dumps(response.headers),
                    "body": response.body,
                },
            )
            if ttl_seconds > 0:
                pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def close(self) -> None:
        await self._redis.aclose()

    def status(self) -> dict[str, object]:
        return {"backend": "redis", "key_prefix": self._prefix}


def build_cache(settings: ImageProxySettings) -> ResponseCache:
    if settings.redis_url:
        redis = Redis.from_url(str(settings.redis_url), decode_responses=False)
        return RedisResponseCache(redis, key_prefix=settings.redis_key_prefix)
    return InMemoryResponseCache()
