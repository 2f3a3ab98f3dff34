from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import SecurityComponents, get_components, get_db, get_tenant_id
from tenantguard.apps.api.rate_limit import enforce_rate_limit
from tenantguard.apps.api.response import SuccessEnvelope, success_response
from tenantguard.persistence.repos import audit as audit_repo
from tenantguard.services.audit import AuditLogEntry, get_request_context
from tenantguard.services.rate_limit import RateLimitDecision


router = APIRouter(prefix="/audit", tags=["audit"])


class AuditWriteRequest(BaseModel):
    action: str = Field(min_length=1, max_length=128)
    resource: str = Field(min_length=1, max_length=128)
    resource_id: str | None = Field(default=None, max_length=256)
    user_id: str | None = Field(default=None, max_length=128)
    old_value: Any = None
    new_value: Any = None
    result: str = Field(default="ok", min_length=1, max_length=64)

    @field_validator("action", "resource", "result")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class AuditWriteResponse(BaseModel):
    ok: bool
    persisted: bool


class AuditLogResponse(BaseModel):
    id: int
    tenant_id: str
    user_id: str | None
    action: str
    resource: str
    resource_id: str | None
    ip: str | None
    user_agent: str | None
    old_value: Any
    new_value: Any
    result: str
    occurred_at: str


class AuditLogsPage(BaseModel):
    items: list[AuditLogResponse]
    next_offset: int | None


def _to_response(row) -> AuditLogResponse:
    return AuditLogResponse(
        id=row.id,
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        action=row.action,
        resource=row.resource,
        resource_id=row.resource_id,
        ip=row.ip,
        user_agent=row.user_agent,
        old_value=row.old_value,
        new_value=row.new_value,
        result=row.result,
        occurred_at=row.occurred_at.isoformat(),
    )


@router.post("/logs", response_model=SuccessEnvelope[AuditWriteResponse])
async def write_audit_log(
    payload: AuditWriteRequest,
    request: Request,
    _decision: RateLimitDecision | None = Depends(enforce_rate_limit),
    components: SecurityComponents = Depends(get_components),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    # Client hints come from the request, never from the body.
    request_ctx = get_request_context(request)
    entry = AuditLogEntry(
        tenant_id=tenant_id,
        user_id=payload.user_id,
        action=payload.action,
        resource=payload.resource,
        resource_id=payload.resource_id,
        ip=request_ctx["ip"],
        user_agent=request_ctx["user_agent"],
        old_value=payload.old_value,
        new_value=payload.new_value,
        result=payload.result,
    )
    persisted = await components.audit.append(entry)
    return success_response(request=request, data=AuditWriteResponse(ok=True, persisted=persisted))


@router.get("/logs", response_model=SuccessEnvelope[AuditLogsPage])
async def list_audit_logs(
    request: Request,
    action: str | None = None,
    resource: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await audit_repo.list_entries(
        db,
        tenant_id=tenant_id,
        action=action,
        resource=resource,
        resource_id=resource_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        offset=offset,
        limit=limit + 1,
    )
    next_offset = None
    if len(rows) > limit:
        rows = rows[:limit]
        next_offset = offset + limit
    page = AuditLogsPage(items=[_to_response(row) for row in rows], next_offset=next_offset)
    return success_response(request=request, data=page)
