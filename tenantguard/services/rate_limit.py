from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Callable, Protocol

from redis.asyncio import Redis
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import async_sessionmaker

from tenantguard.core.errors import StoreUnavailableError
from tenantguard.domain.models import RateLimitBucket
from tenantguard.persistence.db import dialect_name
from tenantguard.services.resilience import with_store_timeout


logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60
FAIL_OPEN = "open"
FAIL_CLOSED = "closed"
ANONYMOUS_CREDENTIAL = "anon"
_CREDENTIAL_SUFFIX_LEN = 12


@dataclass(frozen=True)
class RateLimitDecision:
    # Capture the outcome and retry hints for a rate-limited request.
    allowed: bool
    count: int
    limit: int
    window_start: datetime
    retry_after_s: int
    degraded: bool = False

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class RateLimitStore(Protocol):
    name: str

    async def increment(self, key: str, window_start: datetime, ttl_s: int) -> int:
        """Atomically bump the (key, window_start) counter and return the new count."""
        ...


def window_start_for(now: float) -> datetime:
    # Fixed windows align to the start of the UTC minute.
    return datetime.fromtimestamp(now - (now % WINDOW_SECONDS), tz=timezone.utc)


def rate_limit_key(
    *,
    tenant_id: str | None,
    authorization: str | None,
    api_key: str | None,
    default_tenant: str = "default",
) -> str:
    # Identity = tenant + ":" + last 12 chars of the presented credential.
    tenant = (tenant_id or "").strip() or default_tenant
    fingerprint = (authorization or "")[-_CREDENTIAL_SUFFIX_LEN:]
    if not fingerprint:
        fingerprint = (api_key or "")[-_CREDENTIAL_SUFFIX_LEN:]
    return f"{tenant}:{fingerprint or ANONYMOUS_CREDENTIAL}"


class SqlRateLimitStore:
    name = "database"

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory
        self._insert = sqlite.insert if dialect_name(session_factory) == "sqlite" else postgresql.insert

    async def increment(self, key: str, window_start: datetime, ttl_s: int) -> int:
        # Single upsert-and-return; stale windows expire by never being read again.
        table = RateLimitBucket.__table__
        stmt = (
            self._insert(RateLimitBucket)
            .values(key=key, window_start=window_start, count=1)
            .on_conflict_do_update(
                index_elements=["key", "window_start"],
                set_={"count": table.c["count"] + 1},
            )
            .returning(RateLimitBucket.count)
        )
        async with self._session_factory() as session:
            count = (await session.execute(stmt)).scalar_one()
            await session.commit()
        return int(count)


class RedisRateLimitStore:
    name = "redis"

    def __init__(self, redis: Redis, *, prefix: str) -> None:
        self._redis = redis
        self._prefix = prefix

    async def increment(self, key: str, window_start: datetime, ttl_s: int) -> int:
        bucket = f"{self._prefix}:{key}:{int(window_start.timestamp())}"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(bucket)
            pipe.expire(bucket, ttl_s)
            count, _ = await pipe.execute()
        return int(count)


class MemoryRateLimitStore:
    name = "memory"

    def __init__(self) -> None:
        self._counts: dict[tuple[str, datetime], int] = {}
        self._lock = asyncio.Lock()

    async def increment(self, key: str, window_start: datetime, ttl_s: int) -> int:
        async with self._lock:
            # Drop windows older than the current one to keep memory bounded.
            for stale in [k for k in self._counts if k[1] < window_start]:
                del self._counts[stale]
            bucket = (key, window_start)
            self._counts[bucket] = self._counts.get(bucket, 0) + 1
            return self._counts[bucket]


class FixedWindowRateLimiter:
    def __init__(
        self,
        store: RateLimitStore,
        *,
        fail_mode: str = FAIL_OPEN,
        timeout_s: float = 2.0,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        if fail_mode not in {FAIL_OPEN, FAIL_CLOSED}:
            raise ValueError(f"Unsupported rate limit fail mode: {fail_mode}")
        self._store = store
        self._fail_mode = fail_mode
        self._timeout_s = timeout_s
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time

    async def check(self, key: str, max_per_window: int) -> RateLimitDecision:
        now = self._time_provider()
        window_start = window_start_for(now)
        retry_after_s = max(1, int(window_start.timestamp()) + WINDOW_SECONDS - int(now))
        try:
            count = await with_store_timeout(
                self._store.increment(key, window_start, WINDOW_SECONDS * 2),
                store=self._store.name,
                operation="rate_limit.increment",
                timeout_s=self._timeout_s,
            )
        except StoreUnavailableError:
            if self._fail_mode == FAIL_CLOSED:
                raise
            logger.warning("rate_limit_degraded store=%s fail_mode=open", self._store.name)
            return RateLimitDecision(
                allowed=True,
                count=0,
                limit=max_per_window,
                window_start=window_start,
                retry_after_s=0,
                degraded=True,
            )
        allowed = count <= max_per_window
        return RateLimitDecision(
            allowed=allowed,
            count=count,
            limit=max_per_window,
            window_start=window_start,
            retry_after_s=0 if allowed else retry_after_s,
        )

    async def allow(self, key: str, max_per_window: int) -> bool:
        decision = await self.check(key, max_per_window)
        return decision.allowed
