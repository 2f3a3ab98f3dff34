from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.apps.api.deps import SecurityComponents, get_components, get_db, get_tenant_id
from tenantguard.apps.api.response import SuccessEnvelope, success_response
from tenantguard.core.errors import EvidenceNotFoundError
from tenantguard.persistence.repos import evidence as evidence_repo
from tenantguard.services.audit import AuditLogEntry, get_request_context
from tenantguard.services.evidence import (
    LocalEvidenceStorage,
    build_evidence_path,
    discard_artifact,
    issue_download_grant,
    new_artifact_id,
    store_artifact,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/evidence", tags=["evidence"])


class EvidenceCreated(BaseModel):
    id: str
    sha256: str
    size_bytes: int


class EvidenceDownload(BaseModel):
    url: str
    expires_at: str


@router.post("", response_model=SuccessEnvelope[EvidenceCreated], status_code=status.HTTP_201_CREATED)
async def upload_evidence(
    request: Request,
    filename: str = Query(default="artifact.bin", min_length=1, max_length=255),
    components: SecurityComponents = Depends(get_components),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail={"code": "EVIDENCE_EMPTY", "message": "Evidence body is empty"})
    artifact_id = new_artifact_id()
    timeout_s = components.settings.store_timeout_ms / 1000.0
    stored = await store_artifact(
        components.evidence_storage,
        path=build_evidence_path(tenant_id, artifact_id, filename),
        data=data,
        timeout_s=timeout_s,
    )
    try:
        artifact = await evidence_repo.create_artifact(
            db,
            artifact_id=artifact_id,
            tenant_id=tenant_id,
            path=stored.path,
            sha256=stored.sha256,
            size_bytes=stored.size_bytes,
        )
    except Exception:
        await discard_artifact(components.evidence_storage, path=stored.path, timeout_s=timeout_s)
        raise
    request_ctx = get_request_context(request)
    await components.audit.append(
        AuditLogEntry(
            tenant_id=tenant_id,
            action="evidence.created",
            resource="evidence",
            resource_id=artifact.id,
            ip=request_ctx["ip"],
            user_agent=request_ctx["user_agent"],
            new_value={"sha256": artifact.sha256, "size_bytes": artifact.size_bytes},
        )
    )
    payload = EvidenceCreated(id=artifact.id, sha256=artifact.sha256, size_bytes=artifact.size_bytes)
    return success_response(request=request, data=payload)


@router.get("/{artifact_id}/download", response_model=SuccessEnvelope[EvidenceDownload])
async def download_evidence(
    artifact_id: str,
    request: Request,
    components: SecurityComponents = Depends(get_components),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Lookups are tenant-scoped; another tenant's id reads as not found.
    artifact = await evidence_repo.get_artifact(db, tenant_id=tenant_id, artifact_id=artifact_id)
    if artifact is None:
        raise EvidenceNotFoundError(f"evidence {artifact_id} not found")
    settings = components.settings
    request_ctx = get_request_context(request)
    try:
        grant = await issue_download_grant(
            artifact,
            components.evidence_storage,
            ttl_s=settings.evidence_url_ttl_s,
            timeout_s=settings.store_timeout_ms / 1000.0,
        )
    except EvidenceNotFoundError:
        logger.error("evidence_object_missing artifact_id=%s tenant_id=%s", artifact_id, tenant_id)
        raise
    except Exception:
        await components.audit.append(
            AuditLogEntry(
                tenant_id=tenant_id,
                action="evidence.download",
                resource="evidence",
                resource_id=artifact_id,
                ip=request_ctx["ip"],
                user_agent=request_ctx["user_agent"],
                result="failed",
            )
        )
        raise
    await components.audit.append(
        AuditLogEntry(
            tenant_id=tenant_id,
            action="evidence.download",
            resource="evidence",
            resource_id=artifact_id,
            ip=request_ctx["ip"],
            user_agent=request_ctx["user_agent"],
        )
    )
    payload = EvidenceDownload(url=grant.url, expires_at=grant.expires_at.isoformat())
    return success_response(request=request, data=payload)


@router.get("/files/{path:path}", include_in_schema=False)
async def serve_evidence_file(
    path: str,
    expires: int = Query(...),
    signature: str = Query(..., min_length=1),
    components: SecurityComponents = Depends(get_components),
) -> Response:
    storage = components.evidence_storage
    if not isinstance(storage, LocalEvidenceStorage):
        raise HTTPException(status_code=404, detail="Evidence file serving is not enabled")
    if not storage.verify_signed_url(path, expires_at=expires, signature=signature):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Download link invalid or expired"},
        )
    data = await storage.fetch(path)
    return Response(content=data, media_type="application/octet-stream")
