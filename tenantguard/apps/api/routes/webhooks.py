from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from tenantguard.apps.api.deps import SecurityComponents, WebhookDelivery, get_components, get_tenant_id
from tenantguard.apps.api.response import SuccessEnvelope, success_response
from tenantguard.services.audit import AuditLogEntry, get_request_context
from tenantguard.services.security.pii import hash_for_logging
from tenantguard.services.security.signatures import (
    REASON_MISSING_SECRET,
    canonical_signature,
    check_signature,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class WebhookAck(BaseModel):
    ok: bool
    duplicate: bool


def _auth_error() -> HTTPException:
    # One message for every failure reason so callers cannot tell which check failed.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": "invalid_signature"},
    )


@router.post("/inbound", response_model=SuccessEnvelope[WebhookAck])
async def receive_webhook(
    request: Request,
    components: SecurityComponents = Depends(get_components),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    settings = components.settings
    raw_body = await request.body()
    timestamp = request.headers.get(settings.webhook_timestamp_header)
    signature = request.headers.get(settings.webhook_signature_header)
    request_ctx = get_request_context(request)

    check = check_signature(
        raw_body,
        timestamp,
        signature,
        settings.webhook_hmac_secret,
        settings.webhook_max_skew_seconds,
    )
    if not check.ok:
        log = logger.error if check.reason == REASON_MISSING_SECRET else logger.warning
        log(
            "webhook_rejected tenant_id=%s reason=%s signature_ref=%s",
            tenant_id,
            check.reason,
            hash_for_logging(signature or ""),
        )
        await components.audit.append(
            AuditLogEntry(
                tenant_id=tenant_id,
                action="webhook.rejected",
                resource="webhook",
                ip=request_ctx["ip"],
                user_agent=request_ctx["user_agent"],
                new_value={"reason": check.reason},
                result="denied",
            )
        )
        raise _auth_error()

    admission = await components.idempotency.admit_once(canonical_signature(signature))
    if admission.duplicate:
        # Replays are acknowledged so senders stop retrying, but never re-processed.
        return success_response(request=request, data=WebhookAck(ok=True, duplicate=True))

    await components.webhook_handler(
        WebhookDelivery(tenant_id=tenant_id, timestamp=timestamp.strip(), signature=signature.strip(), body=raw_body)
    )
    await components.audit.append(
        AuditLogEntry(
            tenant_id=tenant_id,
            action="webhook.accepted",
            resource="webhook",
            resource_id=hash_for_logging(signature),
            ip=request_ctx["ip"],
            user_agent=request_ctx["user_agent"],
            result="ok",
        )
    )
    return success_response(request=request, data=WebhookAck(ok=True, duplicate=False))
