from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, Protocol

from redis.asyncio import Redis
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import async_sessionmaker

from tenantguard.domain.models import WebhookIdempotencyRecord
from tenantguard.persistence.db import dialect_name
from tenantguard.services.resilience import with_store_timeout


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admission:
    # duplicate=True means the signed request was already processed once.
    duplicate: bool


class IdempotencyStore(Protocol):
    name: str

    async def insert_if_absent(self, signature: str, first_seen_at: datetime) -> bool:
        """Atomically record the signature; True only for the inserting call."""
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SqlIdempotencyStore:
    name = "database"

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory
        self._insert = sqlite.insert if dialect_name(session_factory) == "sqlite" else postgresql.insert

    async def insert_if_absent(self, signature: str, first_seen_at: datetime) -> bool:
        # ON CONFLICT DO NOTHING + RETURNING yields a row only for the winning insert.
        stmt = (
            self._insert(WebhookIdempotencyRecord)
            .values(signature=signature, first_seen_at=first_seen_at)
            .on_conflict_do_nothing(index_elements=["signature"])
            .returning(WebhookIdempotencyRecord.signature)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            inserted = result.scalar_one_or_none()
            await session.commit()
        return inserted is not None


class RedisIdempotencyStore:
    name = "redis"

    def __init__(self, redis: Redis, *, prefix: str) -> None:
        self._redis = redis
        self._prefix = prefix

    async def insert_if_absent(self, signature: str, first_seen_at: datetime) -> bool:
        # SET NX without expiry; replay protection must not lapse.
        created = await self._redis.set(f"{self._prefix}:{signature}", first_seen_at.isoformat(), nx=True)
        return bool(created)


class MemoryIdempotencyStore:
    name = "memory"

    def __init__(self) -> None:
        self._seen: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def insert_if_absent(self, signature: str, first_seen_at: datetime) -> bool:
        async with self._lock:
            if signature in self._seen:
                return False
            self._seen[signature] = first_seen_at
            return True

    def first_seen(self, signature: str) -> datetime | None:
        return self._seen.get(signature)


class IdempotencyGuard:
    def __init__(
        self,
        store: IdempotencyStore,
        *,
        timeout_s: float = 2.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._timeout_s = timeout_s
        self._clock = clock or _utc_now

    async def admit_once(self, signature: str) -> Admission:
        # Call only with signatures that already passed verification.
        if not signature:
            raise ValueError("signature is required for idempotency checks")
        inserted = await with_store_timeout(
            self._store.insert_if_absent(signature, self._clock()),
            store=self._store.name,
            operation="idempotency.insert_if_absent",
            timeout_s=self._timeout_s,
        )
        if not inserted:
            logger.info("webhook_replay_detected store=%s", self._store.name)
        return Admission(duplicate=not inserted)
