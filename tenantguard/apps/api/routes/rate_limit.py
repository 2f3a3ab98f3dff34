from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from tenantguard.apps.api.rate_limit import enforce_rate_limit
from tenantguard.apps.api.response import SuccessEnvelope, success_response
from tenantguard.services.rate_limit import RateLimitDecision


router = APIRouter(prefix="/rate-limit", tags=["rate-limit"])


class RateLimitStatus(BaseModel):
    ok: bool
    limit: int | None
    remaining: int | None
    degraded: bool


@router.get("/check", response_model=SuccessEnvelope[RateLimitStatus])
async def check_rate_limit(
    request: Request,
    decision: RateLimitDecision | None = Depends(enforce_rate_limit),
) -> dict:
    # Gateways call this before forwarding; a 429 is raised by the dependency.
    payload = RateLimitStatus(
        ok=True,
        limit=decision.limit if decision else None,
        remaining=decision.remaining if decision else None,
        degraded=decision.degraded if decision else False,
    )
    return success_response(request=request, data=payload)
