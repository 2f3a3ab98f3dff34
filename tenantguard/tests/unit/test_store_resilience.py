from __future__ import annotations

import asyncio

import pytest
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import OperationalError

from tenantguard.core.errors import StoreUnavailableError
from tenantguard.services.resilience import with_store_timeout


@pytest.mark.asyncio
async def test_returns_result_within_timeout() -> None:
    async def quick() -> str:
        return "ok"

    assert await with_store_timeout(quick(), store="memory", operation="read", timeout_s=1.0) == "ok"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        OSError("refused"),
        RedisTimeoutError("slow"),
        OperationalError("SELECT 1", {}, Exception("gone")),
    ],
)
async def test_driver_errors_become_store_unavailable(error: Exception) -> None:
    async def failing() -> None:
        raise error

    with pytest.raises(StoreUnavailableError) as exc_info:
        await with_store_timeout(failing(), store="database", operation="write", timeout_s=1.0)
    assert exc_info.value.store == "database"
    assert exc_info.value.operation == "write"
    assert exc_info.value.__cause__ is error


@pytest.mark.asyncio
async def test_timeout_becomes_store_unavailable() -> None:
    with pytest.raises(StoreUnavailableError):
        await with_store_timeout(asyncio.sleep(1), store="redis", operation="incr", timeout_s=0.01)


@pytest.mark.asyncio
async def test_programming_errors_propagate() -> None:
    async def buggy() -> None:
        raise KeyError("bug")

    with pytest.raises(KeyError):
        await with_store_timeout(buggy(), store="memory", operation="read", timeout_s=1.0)
