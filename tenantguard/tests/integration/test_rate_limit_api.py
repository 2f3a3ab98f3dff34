from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from tenantguard.apps.api.main import create_app
from tenantguard.services.rate_limit import FixedWindowRateLimiter, MemoryRateLimitStore
from tenantguard.tests.utils.components import build_test_components


class _FrozenClock:
    def __call__(self) -> float:
        return 1_700_000_045.0


class _DownStore:
    name = "redis"

    async def increment(self, key, window_start, ttl_s) -> int:
        raise ConnectionRefusedError("down")


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _with_limiter(components, store, **kwargs):
    components.rate_limiter = FixedWindowRateLimiter(store, time_provider=_FrozenClock(), **kwargs)
    return components


@pytest.mark.asyncio
async def test_throttles_after_limit_with_retry_hints(tmp_path) -> None:
    components = _with_limiter(build_test_components(tmp_path, rate_limit_max_per_min=2), MemoryRateLimitStore())
    app = create_app(components)
    headers = {"X-Tenant": "acme", "Authorization": "Bearer token-abcdefghijkl"}

    async with _client(app) as client:
        first = await client.get("/v1/rate-limit/check", headers=headers)
        second = await client.get("/v1/rate-limit/check", headers=headers)
        third = await client.get("/v1/rate-limit/check", headers=headers)
        other_tenant = await client.get("/v1/rate-limit/check", headers={"X-Tenant": "globex"})

    assert first.status_code == 200
    assert first.json()["data"] == {"ok": True, "limit": 2, "remaining": 1, "degraded": False}
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert second.headers["X-RateLimit-Remaining"] == "0"

    assert third.status_code == 429
    assert third.json()["error"]["code"] == "RATE_LIMITED"
    assert third.headers["Retry-After"] == "55"
    assert third.headers["X-RateLimit-Remaining"] == "0"

    assert other_tenant.status_code == 200


@pytest.mark.asyncio
async def test_store_outage_fails_open_by_default(tmp_path) -> None:
    components = _with_limiter(build_test_components(tmp_path), _DownStore(), fail_mode="open")
    async with _client(create_app(components)) as client:
        response = await client.get("/v1/rate-limit/check")
    assert response.status_code == 200
    assert response.json()["data"]["degraded"] is True
    assert response.headers["X-RateLimit-Status"] == "degraded"


@pytest.mark.asyncio
async def test_store_outage_fails_closed_when_configured(tmp_path) -> None:
    components = _with_limiter(build_test_components(tmp_path), _DownStore(), fail_mode="closed")
    async with _client(create_app(components)) as client:
        response = await client.get("/v1/rate-limit/check")
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "STORE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_disabled_rate_limit_passes_through(tmp_path) -> None:
    components = build_test_components(tmp_path, rate_limit_enabled=False, rate_limit_max_per_min=1)
    async with _client(create_app(components)) as client:
        responses = [await client.get("/v1/rate-limit/check") for _ in range(3)]
    assert [response.status_code for response in responses] == [200, 200, 200]
    assert responses[0].json()["data"]["limit"] is None


@pytest.mark.asyncio
async def test_health_is_not_rate_limited(tmp_path) -> None:
    components = build_test_components(tmp_path, rate_limit_max_per_min=1)
    async with _client(create_app(components)) as client:
        responses = [await client.get("/v1/health", headers={"X-Request-Id": "req-1"}) for _ in range(3)]
    assert all(response.status_code == 200 for response in responses)
    assert responses[0].json()["data"] == {"status": "ok"}
    assert responses[0].json()["meta"]["request_id"] == "req-1"
    assert responses[0].headers["X-Request-Id"] == "req-1"


@pytest.mark.asyncio
async def test_malformed_request_id_is_replaced(tmp_path) -> None:
    components = build_test_components(tmp_path)
    async with _client(create_app(components)) as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "r" * 300})
    echoed = response.headers["X-Request-Id"]
    assert echoed != "r" * 300
    assert len(echoed) == 32
    assert response.json()["meta"]["request_id"] == echoed
