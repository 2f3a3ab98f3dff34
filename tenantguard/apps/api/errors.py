from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.apps.api.response import error_response
from tenantguard.core.errors import (
    AuditWriteError,
    CiphertextIntegrityError,
    EvidenceIntegrityError,
    EvidenceNotFoundError,
    KeyResolutionError,
    StoreUnavailableError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _envelope(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _envelope(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for SDK parsing.
    return _envelope(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )


async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    # Retryable: tell clients to come back rather than treating it as a rejection.
    return _envelope(
        request,
        status_code=503,
        code="STORE_UNAVAILABLE",
        message="Backing store unavailable",
        details={"store": exc.store, "operation": exc.operation, "retryable": True},
        headers={"Retry-After": "1"},
    )


async def key_resolution_handler(request: Request, exc: KeyResolutionError) -> JSONResponse:
    # Operator alert: a KEK is missing or retired, not a client mistake.
    logger.error("kek_unavailable version=%s path=%s", exc.version, request.url.path)
    return _envelope(
        request,
        status_code=500,
        code="KEY_RESOLUTION_FAILED",
        message="Encryption key unavailable",
    )


async def ciphertext_integrity_handler(request: Request, exc: CiphertextIntegrityError) -> JSONResponse:
    logger.error("ciphertext_integrity_failed path=%s", request.url.path)
    return _envelope(request, status_code=500, code="DECRYPTION_FAILED", message="Unable to decrypt value")


async def evidence_integrity_handler(request: Request, exc: EvidenceIntegrityError) -> JSONResponse:
    return _envelope(
        request,
        status_code=409,
        code="EVIDENCE_HASH_MISMATCH",
        message="Stored evidence failed integrity verification",
        details={"artifact_id": exc.artifact_id},
    )


async def evidence_not_found_handler(request: Request, exc: EvidenceNotFoundError) -> JSONResponse:
    return _envelope(request, status_code=404, code="NOT_FOUND", message="Evidence not found")


async def audit_write_handler(request: Request, exc: AuditWriteError) -> JSONResponse:
    return _envelope(
        request,
        status_code=503,
        code="AUDIT_UNAVAILABLE",
        message="Audit log unavailable",
        details={"retryable": True},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    return _envelope(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
