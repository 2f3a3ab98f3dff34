from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select

from tenantguard.core.errors import StoreUnavailableError
from tenantguard.domain.models import WebhookIdempotencyRecord
from tenantguard.services.idempotency import (
    IdempotencyGuard,
    MemoryIdempotencyStore,
    RedisIdempotencyStore,
    SqlIdempotencyStore,
)


class StubRedis:
    def __init__(self, *, fail: bool = False) -> None:
        self.values: dict[str, str] = {}
        self.calls: list[dict] = []
        self._fail = fail

    async def set(self, key: str, value: str, nx: bool = False, **kwargs):
        self.calls.append({"key": key, "nx": nx, **kwargs})
        if self._fail:
            raise RedisConnectionError("down")
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True


@pytest.mark.asyncio
async def test_first_admit_then_duplicate() -> None:
    guard = IdempotencyGuard(MemoryIdempotencyStore())
    first = await guard.admit_once("sha256=abc")
    second = await guard.admit_once("sha256=abc")
    assert first.duplicate is False
    assert second.duplicate is True


@pytest.mark.asyncio
async def test_concurrent_admits_yield_exactly_one_winner() -> None:
    guard = IdempotencyGuard(MemoryIdempotencyStore())
    results = await asyncio.gather(*(guard.admit_once("sha256=same") for _ in range(25)))
    assert sum(1 for item in results if not item.duplicate) == 1


@pytest.mark.asyncio
async def test_empty_signature_is_rejected() -> None:
    guard = IdempotencyGuard(MemoryIdempotencyStore())
    with pytest.raises(ValueError):
        await guard.admit_once("")


@pytest.mark.asyncio
async def test_first_seen_uses_injected_clock() -> None:
    fixed = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    store = MemoryIdempotencyStore()
    guard = IdempotencyGuard(store, clock=lambda: fixed)
    await guard.admit_once("sig")
    await guard.admit_once("sig")
    assert store.first_seen("sig") == fixed


@pytest.mark.asyncio
async def test_sql_store_records_once(session_factory) -> None:
    guard = IdempotencyGuard(SqlIdempotencyStore(session_factory))
    results = await asyncio.gather(*(guard.admit_once("sha256=sql") for _ in range(5)))
    assert [item.duplicate for item in results].count(False) == 1

    async with session_factory() as session:
        total = await session.scalar(select(func.count()).select_from(WebhookIdempotencyRecord))
    assert total == 1


@pytest.mark.asyncio
async def test_redis_store_uses_set_nx_without_expiry() -> None:
    redis = StubRedis()
    guard = IdempotencyGuard(RedisIdempotencyStore(redis, prefix="tg:webhook"))
    assert (await guard.admit_once("sig-1")).duplicate is False
    assert (await guard.admit_once("sig-1")).duplicate is True
    assert redis.calls[0]["key"] == "tg:webhook:sig-1"
    assert redis.calls[0]["nx"] is True
    assert "ex" not in redis.calls[0]


@pytest.mark.asyncio
async def test_store_failure_is_retryable_error() -> None:
    guard = IdempotencyGuard(RedisIdempotencyStore(StubRedis(fail=True), prefix="tg"))
    with pytest.raises(StoreUnavailableError) as exc_info:
        await guard.admit_once("sig")
    assert exc_info.value.retryable is True
    assert exc_info.value.store == "redis"


@pytest.mark.asyncio
async def test_store_timeout_is_retryable_error() -> None:
    class SlowStore:
        name = "slow"

        async def insert_if_absent(self, signature, first_seen_at) -> bool:
            await asyncio.sleep(1)
            return True

    guard = IdempotencyGuard(SlowStore(), timeout_s=0.01)
    with pytest.raises(StoreUnavailableError):
        await guard.admit_once("sig")
