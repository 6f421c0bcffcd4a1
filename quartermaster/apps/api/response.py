"""Response shapes for the two route surfaces.

Routes under ``/v1`` wrap payloads as ``{"data", "meta"}`` and errors as
``{"error", "meta"}``. The unversioned aliases kept for the troop web client return bare
payloads and FastAPI-style ``{"detail": ...}`` errors.
"""

from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"
_VERSIONED_PREFIX = f"/{API_VERSION}/"

PayloadT = TypeVar("PayloadT")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[PayloadT]):
    data: PayloadT
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorBody
    meta: ResponseMeta


def request_id_for(request: Request) -> str:
    # The middleware assigns one up front; the header covers handlers reached without it.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(_VERSIONED_PREFIX)


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=request_id_for(request)).model_dump()


def success_response(*, request: Request, data: Any) -> Any:
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = ErrorBody(code=code, message=message, details=details or None)
    return {"error": body.model_dump(exclude_none=True), "meta": _meta(request)}
