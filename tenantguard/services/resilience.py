from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from tenantguard.core.errors import StoreUnavailableError


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Driver failures that mean "store unreachable", never "bad input".
TransientStoreErrors = (TimeoutError, asyncio.TimeoutError, OSError, SQLAlchemyError, RedisError)


async def with_store_timeout(
    awaitable: Awaitable[T],
    *,
    store: str,
    operation: str,
    timeout_s: float,
) -> T:
    # Bound store calls and normalize driver failures into a retryable error.
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except TransientStoreErrors as exc:
        logger.warning("store_unavailable store=%s operation=%s", store, operation, exc_info=exc)
        raise StoreUnavailableError(store=store, operation=operation) from exc
