from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.apps.api.deps import SecurityComponents, build_components
from tenantguard.apps.api.errors import (
    audit_write_handler,
    ciphertext_integrity_handler,
    evidence_integrity_handler,
    evidence_not_found_handler,
    http_exception_handler,
    key_resolution_handler,
    store_unavailable_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantguard.apps.api.response import API_VERSION, REQUEST_ID_HEADER, resolve_request_id
from tenantguard.apps.api.routes.audit import router as audit_router
from tenantguard.apps.api.routes.evidence import router as evidence_router
from tenantguard.apps.api.routes.health import router as health_router
from tenantguard.apps.api.routes.rate_limit import router as rate_limit_router
from tenantguard.apps.api.routes.webhooks import router as webhooks_router
from tenantguard.core.config import get_settings
from tenantguard.core.errors import (
    AuditWriteError,
    CiphertextIntegrityError,
    EvidenceIntegrityError,
    EvidenceNotFoundError,
    KeyResolutionError,
    StoreUnavailableError,
)
from tenantguard.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app(components: SecurityComponents | None = None) -> FastAPI:
    """Build the API app.

    Tests pass a prebuilt ``SecurityComponents``; otherwise stores are
    created from settings at startup and closed at shutdown.
    """
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = components is None
        app.state.components = components or build_components(get_settings())
        logger.info(
            "tenantguard_started rl_backend=%s idempotency_backend=%s audit_mode=%s",
            app.state.components.settings.rl_backend,
            app.state.components.settings.idempotency_backend,
            app.state.components.audit.mode,
        )
        try:
            yield
        finally:
            if owned:
                await app.state.components.aclose()

    app = FastAPI(title="tenantguard API", lifespan=lifespan)
    if components is not None:
        # Available even when the ASGI lifespan is not run (e.g. httpx transports).
        app.state.components = components

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = resolve_request_id(request)
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StoreUnavailableError, store_unavailable_handler)
    app.add_exception_handler(KeyResolutionError, key_resolution_handler)
    app.add_exception_handler(CiphertextIntegrityError, ciphertext_integrity_handler)
    app.add_exception_handler(EvidenceIntegrityError, evidence_integrity_handler)
    app.add_exception_handler(EvidenceNotFoundError, evidence_not_found_handler)
    app.add_exception_handler(AuditWriteError, audit_write_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    app.include_router(rate_limit_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    app.include_router(evidence_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
