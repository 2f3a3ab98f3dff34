from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, Response, status

from tenantguard.apps.api.deps import SecurityComponents, get_components
from tenantguard.services.rate_limit import RateLimitDecision, rate_limit_key


logger = logging.getLogger(__name__)


def request_rate_limit_key(request: Request, components: SecurityComponents) -> str:
    settings = components.settings
    return rate_limit_key(
        tenant_id=request.headers.get(settings.tenant_header),
        authorization=request.headers.get("authorization"),
        api_key=request.headers.get("x-api-key"),
        default_tenant=settings.default_tenant,
    )


def _apply_headers(response: Response, decision: RateLimitDecision) -> None:
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    if decision.degraded:
        response.headers["X-RateLimit-Status"] = "degraded"


def _throttle_exception(*, decision: RateLimitDecision) -> HTTPException:
    # Construct a stable 429 response with retry hints and metadata.
    headers = {
        "Retry-After": str(decision.retry_after_s),
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": "0",
    }
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Rate limit exceeded",
            "limit": decision.limit,
            "window_seconds": 60,
            "retry_after_s": decision.retry_after_s,
        },
        headers=headers,
    )


async def enforce_rate_limit(
    request: Request,
    response: Response,
    components: SecurityComponents = Depends(get_components),
) -> RateLimitDecision | None:
    # Fixed-window throttle per tenant/credential; store failures follow rl_fail_mode.
    settings = components.settings
    if not settings.rate_limit_enabled:
        return None
    key = request_rate_limit_key(request, components)
    decision = await components.rate_limiter.check(key, settings.rate_limit_max_per_min)
    if not decision.allowed:
        logger.info("rate_limited key_tenant=%s path=%s", key.split(":", 1)[0], request.url.path)
        raise _throttle_exception(decision=decision)
    _apply_headers(response, decision)
    return decision
