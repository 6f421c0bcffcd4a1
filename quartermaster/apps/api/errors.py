from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from quartermaster.apps.api.response import error_response, is_versioned_request
from quartermaster.core.errors import QuartermasterError, Unauthenticated
from quartermaster.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "VALIDATION_FAILED",
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    415: "UNSUPPORTED_MEDIA_TYPE",
    500: "INTERNAL",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _render(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    # Legacy paths get {"detail": {...}}; versioned paths get the error envelope.
    if is_versioned_request(request):
        content = error_response(request=request, code=code, message=message, details=details)
    else:
        content = {"detail": {"code": code, "message": message, **(details or {})}}
    return JSONResponse(content=content, status_code=status_code, headers=headers)


async def quartermaster_exception_handler(request: Request, exc: QuartermasterError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    if exc.status_code >= 500:
        logger.error("request_failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    return _render(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _render(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Starlette raises these for unknown routes and disallowed methods.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _render(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Malformed bodies, params and enum values are client errors, reported as 400.
    return _render(
        request,
        status_code=400,
        code="VALIDATION_FAILED",
        message="Validation failed",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # An unscoped query is a programming error; never let it reach the client as data.
    logger.error("tenant_predicate_violation path=%s error=%s", request.url.path, exc)
    return _render(request, status_code=500, code="INTERNAL", message="Internal server error")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error.
    logger.exception("unhandled_exception path=%s", request.url.path)
    return _render(request, status_code=500, code="INTERNAL", message="Internal server error")
