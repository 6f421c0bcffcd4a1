from __future__ import annotations

from typing import Any

from quartermaster.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Bad request",
        _error_example(
            code="VALIDATION_FAILED",
            message="Validation failed",
            details={"errors": [{"loc": ["body", "name"], "msg": "Field required"}]},
        ),
    ),
    401: _response(
        "Unauthenticated",
        _error_example(code="UNAUTHENTICATED", message="Missing or invalid bearer token"),
    ),
    403: _response(
        "Forbidden",
        _error_example(
            code="FORBIDDEN",
            message="Insufficient permissions",
            details={"requiredRoles": ["admin", "leader"], "actualRole": "scout"},
        ),
    ),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Item not found")),
    409: _response(
        "Conflict",
        _error_example(
            code="INVALID_TRANSITION",
            message="Item not available for checkout (status: checked_out)",
            details={"status": "checked_out"},
        ),
    ),
    500: _response("Internal server error", _error_example(code="INTERNAL", message="Internal server error")),
}
