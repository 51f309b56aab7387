from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from edgeimg.common.settings import ImageProxySettings
from edgeimg.proxy.app import create_app

from tests.utils.fakes import ConditionalOrigin, CountingCache, OriginRecorder


@pytest.fixture
def client(settings: ImageProxySettings, cache: CountingCache, origin: OriginRecorder) -> Iterator[TestClient]:
    app = create_app(settings, cache=cache, transport=origin.transport)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def referer_client(cache: CountingCache, origin: OriginRecorder) -> Iterator[TestClient]:
    settings = ImageProxySettings(referer_check_enabled=True, allowed_referers=["https://slovyagin.com"])
    app = create_app(settings, cache=cache, transport=origin.transport)
    with TestClient(app) as test_client:
        yield test_client


def test_serves_transformed_image(client: TestClient, origin: OriginRecorder) -> None:
    response = client.get("/sunset.jpg?s=1400", headers={"Accept": "image/avif"})

    assert response.status_code == 200
    assert response.content == origin.body
    assert response.headers["content-type"] == "image/avif"
    assert response.headers["cache-control"] == "public, max-age=31536000"
    assert "Accept" in response.headers["vary"]
    assert "/upload/c_fit,q_auto,w_1400,h_1400/v1/photos/sunset.avif" in str(origin.requests[0].url)


def test_second_request_served_from_cache(client: TestClient, origin: OriginRecorder, cache: CountingCache) -> None:
    first = client.get("/sunset.jpg?s=700")
    second = client.get("/sunset.jpg?s=700")

    assert origin.calls == 1
    assert cache.put_calls == 1
    assert first.content == second.content
    assert second.headers["cache-control"] == "public, max-age=31536000"
    assert "Accept" in second.headers["vary"]


def test_invalid_size_returns_422_without_side_effects(
    client: TestClient, origin: OriginRecorder, cache: CountingCache
) -> None:
    missing = client.get("/sunset.jpg")
    invalid = client.get("/sunset.jpg?s=10000")

    assert missing.status_code == 422
    assert invalid.status_code == 422
    assert invalid.text == "Unprocessable Entity"
    assert origin.calls == 0
    assert cache.match_calls == 0
    assert cache.put_calls == 0


@pytest.mark.parametrize("method", ["POST", "PUT", "DELETE", "PATCH"])
def test_non_get_returns_405(client: TestClient, origin: OriginRecorder, cache: CountingCache, method: str) -> None:
    response = client.request(method, "/sunset.jpg?s=700")

    assert response.status_code == 405
    assert response.text == "Method not allowed"
    assert origin.calls == 0
    assert cache.match_calls == 0


def test_origin_404_is_sanitized(settings: ImageProxySettings, cache: CountingCache) -> None:
    origin = OriginRecorder(status_code=404, body=b"Resource not found - photos/missing")
    app = create_app(settings, cache=cache, transport=origin.transport)
    with TestClient(app) as client:
        response = client.get("/missing.jpg?s=700")

    assert response.status_code == 404
    assert response.text == "Not Found"
    assert "cache-control" not in response.headers


def test_referer_from_allowed_site_passes(referer_client: TestClient) -> None:
    response = referer_client.get("/sunset.jpg?s=700", headers={"Referer": "https://slovyagin.com/foo"})

    assert response.status_code == 200
    assert response.headers["vary"] == "Accept, Referer"


def test_referer_from_foreign_site_rejected(referer_client: TestClient, origin: OriginRecorder) -> None:
    response = referer_client.get("/sunset.jpg?s=700", headers={"Referer": "https://evil.com"})

    assert response.status_code == 403
    assert response.text == "Forbidden"
    assert origin.calls == 0


def test_missing_referer_rejected(referer_client: TestClient) -> None:
    assert referer_client.get("/sunset.jpg?s=700").status_code == 403


def test_dimension_policy_end_to_end(cache: CountingCache, origin: OriginRecorder) -> None:
    settings = ImageProxySettings(transform_policy="dimensions")
    app = create_app(settings, cache=cache, transport=origin.transport)
    with TestClient(app) as client:
        response = client.get("/sunset.png?w=640&h=480&e_grayscale=1")

    assert response.status_code == 200
    assert response.headers["cache-control"] == "public, max-age=2592000"
    assert str(origin.requests[0].url).endswith(
        "/upload/c_fit,q_auto,w_640,h_480/v1/photos/sunset.avif?e_grayscale=1"
    )


def test_health_endpoint(client: TestClient) -> None:
    response = client.get("/_health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "healthy"
    assert payload["cache"]["backend"] == "memory"


def test_metrics_require_token(cache: CountingCache, origin: OriginRecorder) -> None:
    settings = ImageProxySettings(metrics_token="scrape-secret")
    app = create_app(settings, cache=cache, transport=origin.transport)
    with TestClient(app) as client:
        client.get("/sunset.jpg?s=700")
        denied = client.get("/_metrics")
        allowed = client.get("/_metrics", headers={"Authorization": "Bearer scrape-secret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert "edgeimg_requests_total" in allowed.text
    assert "edgeimg_origin_fetches_total" in allowed.text


def test_metrics_without_token_limited_to_loopback(client: TestClient) -> None:
    assert client.get("/_metrics").status_code == 403


def test_injected_cache_is_used_even_when_empty(settings: ImageProxySettings, origin: OriginRecorder) -> None:
    cache = CountingCache()
    app = create_app(settings, cache=cache, transport=origin.transport)
    with TestClient(app) as client:
        client.get("/sunset.jpg?s=700")
        assert app.state.proxy.cache is cache

    assert cache.match_calls == 1
    assert cache.put_calls == 1


@pytest.mark.parametrize(
    "client_headers",
    [{"If-None-Match": '"v1"'}, {"Range": "bytes=0-3"}],
)
def test_conditional_client_does_not_poison_cache(
    settings: ImageProxySettings, cache: CountingCache, client_headers: dict[str, str]
) -> None:
    origin = ConditionalOrigin()
    app = create_app(settings, cache=cache, transport=origin.transport)
    with TestClient(app) as client:
        first = client.get("/sunset.jpg?s=700", headers=client_headers)
        second = client.get("/sunset.jpg?s=700")

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.content == origin.body
    assert origin.calls == 1


def test_partial_origin_reply_is_not_cached(settings: ImageProxySettings, cache: CountingCache) -> None:
    origin = OriginRecorder(status_code=206, body=b"\x00\x00")
    app = create_app(settings, cache=cache, transport=origin.transport)
    with TestClient(app) as client:
        client.get("/sunset.jpg?s=700")
        client.get("/sunset.jpg?s=700")

    assert origin.calls == 2
    assert cache.put_calls == 0
