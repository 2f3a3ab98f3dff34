from __future__ import annotations

import re
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")

# Caller-supplied ids are echoed back in headers and logs.
_REQUEST_ID_RE = re.compile(r"[A-Za-z0-9._:-]{1,128}")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def resolve_request_id(request: Request) -> str:
    """Return the id already bound to this request, binding one if needed.

    A well-formed ``X-Request-Id`` from the caller is kept so traces line up
    across services; anything else is replaced with a fresh id.
    """
    bound = getattr(request.state, "request_id", None)
    if bound:
        return bound
    incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    request_id = incoming if _REQUEST_ID_RE.fullmatch(incoming) else uuid4().hex
    request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=resolve_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
