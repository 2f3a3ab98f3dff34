from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import AsyncGenerator, Awaitable, Callable

from fastapi import HTTPException, Request, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tenantguard.core.config import Settings
from tenantguard.persistence.db import build_engine, build_session_factory
from tenantguard.services.audit import AuditLogger, AuditSink, MemoryAuditSink, SqlAuditSink
from tenantguard.services.evidence import EvidenceStorage, LocalEvidenceStorage
from tenantguard.services.idempotency import (
    IdempotencyGuard,
    IdempotencyStore,
    MemoryIdempotencyStore,
    RedisIdempotencyStore,
    SqlIdempotencyStore,
)
from tenantguard.services.rate_limit import (
    FixedWindowRateLimiter,
    MemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
    SqlRateLimitStore,
)


logger = logging.getLogger(__name__)

# Tenant ids become audit keys and evidence path segments.
_TENANT_ID_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._:-]{0,127}")


@dataclass(frozen=True)
class WebhookDelivery:
    # Authenticated, first-seen webhook handed to downstream business logic.
    tenant_id: str
    timestamp: str
    signature: str
    body: bytes


WebhookHandler = Callable[[WebhookDelivery], Awaitable[None]]


async def log_webhook_delivery(delivery: WebhookDelivery) -> None:
    logger.info("webhook_accepted tenant_id=%s bytes=%s", delivery.tenant_id, len(delivery.body))


@dataclass
class SecurityComponents:
    # Built once per app; every component gets its store handle explicitly.
    settings: Settings
    rate_limiter: FixedWindowRateLimiter
    idempotency: IdempotencyGuard
    audit: AuditLogger
    evidence_storage: EvidenceStorage
    session_factory: async_sessionmaker | None = None
    webhook_handler: WebhookHandler = log_webhook_delivery
    engine: AsyncEngine | None = None
    redis: Redis | None = None

    async def aclose(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def _rate_limit_store(backend: str, session_factory: async_sessionmaker | None, redis: Redis | None, settings: Settings) -> RateLimitStore:
    if backend == "redis" and redis is not None:
        return RedisRateLimitStore(redis, prefix=settings.rl_redis_prefix)
    if backend == "database" and session_factory is not None:
        return SqlRateLimitStore(session_factory)
    if backend == "memory":
        return MemoryRateLimitStore()
    raise ValueError(f"Unsupported rate limit backend: {backend}")


def _idempotency_store(backend: str, session_factory: async_sessionmaker | None, redis: Redis | None, settings: Settings) -> IdempotencyStore:
    if backend == "redis" and redis is not None:
        return RedisIdempotencyStore(redis, prefix=settings.idempotency_redis_prefix)
    if backend == "database" and session_factory is not None:
        return SqlIdempotencyStore(session_factory)
    if backend == "memory":
        return MemoryIdempotencyStore()
    raise ValueError(f"Unsupported idempotency backend: {backend}")


def build_components(
    settings: Settings,
    *,
    session_factory: async_sessionmaker | None = None,
    redis: Redis | None = None,
    webhook_handler: WebhookHandler | None = None,
) -> SecurityComponents:
    timeout_s = settings.store_timeout_ms / 1000.0
    engine: AsyncEngine | None = None
    backends = {settings.rl_backend, settings.idempotency_backend}
    if session_factory is None and "database" in backends:
        engine = build_engine(settings.database_url)
        session_factory = build_session_factory(engine)
    if redis is None and "redis" in backends:
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)

    audit_sink: AuditSink = SqlAuditSink(session_factory) if session_factory is not None else MemoryAuditSink()
    return SecurityComponents(
        settings=settings,
        rate_limiter=FixedWindowRateLimiter(
            _rate_limit_store(settings.rl_backend, session_factory, redis, settings),
            fail_mode=settings.rl_fail_mode.lower(),
            timeout_s=timeout_s,
        ),
        idempotency=IdempotencyGuard(
            _idempotency_store(settings.idempotency_backend, session_factory, redis, settings),
            timeout_s=timeout_s,
        ),
        audit=AuditLogger(audit_sink, mode=settings.audit_write_mode, timeout_s=timeout_s),
        evidence_storage=LocalEvidenceStorage(
            settings.evidence_dir,
            url_secret=settings.evidence_url_secret,
            base_url=settings.evidence_base_url,
        ),
        session_factory=session_factory,
        webhook_handler=webhook_handler or log_webhook_delivery,
        engine=engine,
        redis=redis,
    )


def get_components(request: Request) -> SecurityComponents:
    return request.app.state.components


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    components = get_components(request)
    if components.session_factory is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "DATABASE_UNAVAILABLE", "message": "Database is not configured"},
        )
    async with components.session_factory() as session:
        yield session


def get_tenant_id(request: Request) -> str:
    settings = get_components(request).settings
    value = (request.headers.get(settings.tenant_header) or "").strip()
    if not value:
        return settings.default_tenant
    if not _TENANT_ID_RE.fullmatch(value):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_INVALID", "message": "Tenant header is malformed"},
        )
    return value
