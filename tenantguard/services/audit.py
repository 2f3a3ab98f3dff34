from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.ext.asyncio import async_sessionmaker
from starlette.requests import Request

from tenantguard.core.errors import AuditWriteError, StoreUnavailableError
from tenantguard.domain.models import AuditLog
from tenantguard.services.resilience import with_store_timeout


logger = logging.getLogger(__name__)

AUDIT_MODE_BEST_EFFORT = "best_effort"
AUDIT_MODE_SYNC = "sync"

# Column widths for request-derived hints; longer values are clipped, never rejected.
MAX_IP_LENGTH = 64
MAX_USER_AGENT_LENGTH = 512


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuditLogEntry(BaseModel):
    # Shape-only validation; old/new snapshots are opaque to the logger.
    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(min_length=1, max_length=128)
    user_id: str | None = Field(default=None, max_length=128)
    action: str = Field(min_length=1, max_length=128)
    resource: str = Field(min_length=1, max_length=128)
    resource_id: str | None = Field(default=None, max_length=256)
    ip: str | None = Field(default=None, max_length=MAX_IP_LENGTH)
    user_agent: str | None = Field(default=None, max_length=MAX_USER_AGENT_LENGTH)
    old_value: Any = None
    new_value: Any = None
    result: str = Field(default="ok", min_length=1, max_length=64)
    timestamp: datetime = Field(default_factory=_utc_now)

    @field_validator("tenant_id", "action", "resource", "result")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class AuditSink(Protocol):
    # Insert-only by construction: no update or delete exists on the contract.
    name: str

    async def insert(self, entry: AuditLogEntry) -> None:
        ...


class SqlAuditSink:
    name = "database"

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def insert(self, entry: AuditLogEntry) -> None:
        row = AuditLog(
            tenant_id=entry.tenant_id,
            user_id=entry.user_id,
            action=entry.action,
            resource=entry.resource,
            resource_id=entry.resource_id,
            ip=entry.ip,
            user_agent=entry.user_agent,
            old_value=entry.old_value,
            new_value=entry.new_value,
            result=entry.result,
            occurred_at=entry.timestamp,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()


class MemoryAuditSink:
    name = "memory"

    def __init__(self) -> None:
        self._entries: list[AuditLogEntry] = []
        self._lock = asyncio.Lock()

    async def insert(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._entries.append(entry)

    @property
    def entries(self) -> tuple[AuditLogEntry, ...]:
        return tuple(self._entries)


class AuditLogger:
    def __init__(self, sink: AuditSink, *, mode: str = AUDIT_MODE_BEST_EFFORT, timeout_s: float = 2.0) -> None:
        if mode not in {AUDIT_MODE_BEST_EFFORT, AUDIT_MODE_SYNC}:
            raise ValueError(f"Unsupported audit write mode: {mode}")
        self._sink = sink
        self._mode = mode
        self._timeout_s = timeout_s

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def sink(self) -> AuditSink:
        return self._sink

    async def append(self, entry: AuditLogEntry) -> bool:
        """Persist one audit entry.

        Returns True when stored. In ``best_effort`` mode a persistence
        failure is logged and reported as False so the primary action can
        proceed; in ``sync`` mode it raises ``AuditWriteError``.
        """
        try:
            await with_store_timeout(
                self._sink.insert(entry),
                store=self._sink.name,
                operation="audit.append",
                timeout_s=self._timeout_s,
            )
        except StoreUnavailableError as exc:
            if self._mode == AUDIT_MODE_SYNC:
                logger.error("audit_write_failed action=%s tenant_id=%s", entry.action, entry.tenant_id)
                raise AuditWriteError(f"audit write failed for action {entry.action}") from exc
            logger.warning("audit_write_failed action=%s tenant_id=%s", entry.action, entry.tenant_id)
            return False
        return True


def client_ip(request: Request | None) -> str | None:
    # Prefer the first forwarded hop, then the socket peer.
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop[:MAX_IP_LENGTH]
    return request.client.host[:MAX_IP_LENGTH] if request.client else None


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract client hints without persisting credentials.
    if request is None:
        return {"ip": None, "user_agent": None}
    user_agent = request.headers.get("user-agent")
    return {
        "ip": client_ip(request),
        "user_agent": user_agent[:MAX_USER_AGENT_LENGTH] if user_agent is not None else None,
    }
