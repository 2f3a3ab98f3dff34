from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from starlette.requests import Request

from tenantguard.core.errors import AuditImmutableError, AuditWriteError
from tenantguard.domain.models import AuditLog
from tenantguard.persistence.repos import audit as audit_repo
from tenantguard.services.audit import (
    AuditLogEntry,
    AuditLogger,
    MemoryAuditSink,
    SqlAuditSink,
    client_ip,
    get_request_context,
)


class _BrokenSink:
    name = "broken"

    async def insert(self, entry: AuditLogEntry) -> None:
        raise OperationalError("INSERT", {}, Exception("disk full"))


def _entry(**overrides) -> AuditLogEntry:
    values = {"tenant_id": "t1", "action": "secret.updated", "resource": "tenant_secret", "resource_id": "42"}
    values.update(overrides)
    return AuditLogEntry(**values)


def _make_request(headers: list[tuple[bytes, bytes]], client=("10.0.0.9", 1234)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/v1/audit/logs",
        "scheme": "http",
        "server": ("test", 80),
        "client": client,
        "headers": headers,
        "query_string": b"",
    }
    return Request(scope)


def test_entry_shape_validation() -> None:
    with pytest.raises(ValidationError):
        _entry(tenant_id="")
    with pytest.raises(ValidationError):
        _entry(action="   ")
    with pytest.raises(ValidationError):
        _entry(resource="r" * 129)
    entry = _entry(old_value={"a": [1, 2]}, new_value="opaque")
    assert entry.result == "ok"
    assert entry.timestamp.tzinfo is not None


@pytest.mark.asyncio
async def test_memory_sink_appends_in_order() -> None:
    sink = MemoryAuditSink()
    logger = AuditLogger(sink)
    assert await logger.append(_entry(action="first"))
    assert await logger.append(_entry(action="second"))
    assert [item.action for item in sink.entries] == ["first", "second"]


@pytest.mark.asyncio
async def test_best_effort_reports_failure_without_raising() -> None:
    logger = AuditLogger(_BrokenSink(), mode="best_effort")
    assert await logger.append(_entry()) is False


@pytest.mark.asyncio
async def test_sync_mode_raises_on_failure() -> None:
    logger = AuditLogger(_BrokenSink(), mode="sync")
    with pytest.raises(AuditWriteError):
        await logger.append(_entry())


def test_unknown_mode_rejected() -> None:
    with pytest.raises(ValueError):
        AuditLogger(MemoryAuditSink(), mode="eventually")


@pytest.mark.asyncio
async def test_sql_sink_persists_and_lists_newest_first(session_factory) -> None:
    logger = AuditLogger(SqlAuditSink(session_factory), mode="sync")
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)
    await logger.append(_entry(action="older", timestamp=base, old_value={"v": 1}, new_value={"v": 2}))
    await logger.append(_entry(action="newer", timestamp=base + timedelta(minutes=1)))
    await logger.append(_entry(tenant_id="t2", action="other-tenant", timestamp=base))

    async with session_factory() as session:
        rows = await audit_repo.list_entries(session, tenant_id="t1")
        filtered = await audit_repo.list_entries(session, tenant_id="t1", action="older")
    assert [row.action for row in rows] == ["newer", "older"]
    assert filtered[0].old_value == {"v": 1}
    assert filtered[0].new_value == {"v": 2}


@pytest.mark.asyncio
async def test_audit_rows_reject_update_and_delete(session_factory) -> None:
    await AuditLogger(SqlAuditSink(session_factory)).append(_entry())

    async with session_factory() as session:
        row = (await session.execute(select(AuditLog))).scalar_one()
        row.result = "tampered"
        with pytest.raises(AuditImmutableError):
            await session.commit()

    async with session_factory() as session:
        row = (await session.execute(select(AuditLog))).scalar_one()
        await session.delete(row)
        with pytest.raises(AuditImmutableError):
            await session.commit()

    async with session_factory() as session:
        remaining = (await session.execute(select(AuditLog))).scalars().all()
    assert [item.result for item in remaining] == ["ok"]


def test_sinks_expose_insert_only() -> None:
    for sink in (SqlAuditSink, MemoryAuditSink, AuditLogger):
        assert not hasattr(sink, "delete")
        assert not hasattr(sink, "update")


def test_client_ip_prefers_forwarded_header() -> None:
    forwarded = _make_request([(b"x-forwarded-for", b"203.0.113.5, 10.0.0.1"), (b"user-agent", b"pytest")])
    assert client_ip(forwarded) == "203.0.113.5"
    assert get_request_context(forwarded) == {"ip": "203.0.113.5", "user_agent": "pytest"}

    direct = _make_request([])
    assert client_ip(direct) == "10.0.0.9"
    assert get_request_context(None) == {"ip": None, "user_agent": None}
