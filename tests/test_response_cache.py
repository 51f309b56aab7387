from __future__ import annotations

import pytest

from edgeimg.common.schemas import ProxyResponse
from edgeimg.common.settings import ImageProxySettings
from edgeimg.proxy import cache as cache_module
from edgeimg.proxy.cache import InMemoryResponseCache, RedisResponseCache, build_cache

from tests.utils.fakes import FakeRedis


KEY = "GET https://img.example.com/sunset.jpg?s=700"


def _response() -> ProxyResponse:
    return ProxyResponse(
        status=200,
        body=b"\x00avif-bytes\xff",
        headers=[("content-type", "image/avif"), ("cache-control", "public, max-age=31536000"), ("vary", "Accept")],
        reason="OK",
    )


@pytest.mark.asyncio
async def test_memory_cache_miss_then_hit():
    cache = InMemoryResponseCache()

    assert await cache.match(KEY) is None
    await cache.put(KEY, _response(), 60)
    cached = await cache.match(KEY)

    assert cached == _response()
    assert cache.status() == {"backend": "memory", "entries": 1}


@pytest.mark.asyncio
async def test_memory_cache_last_writer_wins():
    cache = InMemoryResponseCache()
    await cache.put(KEY, _response(), 60)
    await cache.put(KEY, ProxyResponse(status=200, body=b"newer"), 60)

    assert (await cache.match(KEY)).body == b"newer"
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_redis_cache_stores_hash_with_ttl():
    redis = FakeRedis()
    cache = RedisResponseCache(redis, key_prefix="test:")

    await cache.put(KEY, _response(), 3600)

    storage_key = cache.storage_key(KEY)
    assert storage_key.startswith("test:")
    assert redis.ttls[storage_key] == 3600
    assert redis.hashes[storage_key][b"status"] == b"200"
    assert redis.hashes[storage_key][b"body"] == b"\x00avif-bytes\xff"


@pytest.mark.asyncio
async def test_redis_cache_roundtrip_preserves_headers():
    cache = RedisResponseCache(FakeRedis())

    await cache.put(KEY, _response(), 3600)
    cached = await cache.match(KEY)

    assert cached == _response()


@pytest.mark.asyncio
async def test_redis_cache_miss_returns_none():
    assert await RedisResponseCache(FakeRedis()).match(KEY) is None


@pytest.mark.asyncio
async def test_redis_cache_corrupt_entry_treated_as_miss(monkeypatch):
    warnings: list[dict] = []

    class Logger:
        def warning(self, *_args, **kwargs):  # noqa: ANN001
            warnings.append(kwargs)

    monkeypatch.setattr(cache_module, "LOGGER", Logger())
    redis = FakeRedis()
    cache = RedisResponseCache(redis)
    redis.hashes[cache.storage_key(KEY)] = {b"status": b"not-a-number", b"headers": b"[]"}

    assert await cache.match(KEY) is None
    assert warnings and warnings[0]["cache_key"] == KEY


@pytest.mark.asyncio
async def test_redis_cache_close():
    redis = FakeRedis()
    await RedisResponseCache(redis).close()

    assert redis.closed is True


def test_build_cache_defaults_to_memory(settings):
    assert isinstance(build_cache(settings), InMemoryResponseCache)


def test_build_cache_uses_redis_when_configured(monkeypatch):
    captured: dict[str, object] = {}

    def fake_from_url(url, **kwargs):  # noqa: ANN001
        captured["url"] = url
        captured.update(kwargs)
        return FakeRedis()

    monkeypatch.setattr(cache_module.Redis, "from_url", staticmethod(fake_from_url))
    settings = ImageProxySettings(redis_url="redis://cache.internal:6379/2", redis_key_prefix="img:")

    backend = build_cache(settings)

    assert isinstance(backend, RedisResponseCache)
    assert captured["url"] == "redis://cache.internal:6379/2"
    assert captured["decode_responses"] is False
    assert backend.status() == {"backend": "redis", "key_prefix": "img:"}
