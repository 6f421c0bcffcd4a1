from __future__ import annotations

from typing import Any


class QuartermasterError(Exception):
    """Base error for Quartermaster.

    Every subclass carries a stable machine-readable ``code`` and the HTTP status it
    maps to, so API handlers can render any domain failure without special cases.
    """

    code = "INTERNAL"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class Unauthenticated(QuartermasterError):
    """Missing, malformed, expired or no-longer-valid credential."""

    code = "UNAUTHENTICATED"
    status_code = 401
    default_message = "Authentication required"


class Forbidden(QuartermasterError):
    """Authenticated principal lacks a permitted role."""

    code = "FORBIDDEN"
    status_code = 403
    default_message = "Insufficient permissions"


class TenantSelectorMissing(QuartermasterError):
    code = "TENANT_SELECTOR_MISSING"
    status_code = 400
    default_message = "Troop identifier required"


class TenantNotFound(QuartermasterError):
    code = "TENANT_NOT_FOUND"
    status_code = 404
    default_message = "Troop not found"


class NotFound(QuartermasterError):
    """Missing resource; also used for resources owned by another tenant."""

    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class ValidationFailed(QuartermasterError):
    code = "VALIDATION_FAILED"
    status_code = 400
    default_message = "Validation failed"


class InvalidTransition(QuartermasterError):
    """Checkout/checkin/status change requested from the wrong item status."""

    code = "INVALID_TRANSITION"
    status_code = 409
    default_message = "Invalid status transition"


class TenantMismatch(QuartermasterError):
    """QR payload minted by a different tenant than the one requesting it."""

    code = "TENANT_MISMATCH"
    status_code = 403
    default_message = "QR code belongs to a different troop"


class MalformedPayload(QuartermasterError):
    code = "MALFORMED_PAYLOAD"
    status_code = 400
    default_message = "Invalid QR code data"


class Conflict(QuartermasterError):
    code = "CONFLICT"
    status_code = 409
    default_message = "Resource already exists"


class InternalError(QuartermasterError):
    """Storage failure surfaced after a full rollback."""


class IdempotencyKeyConflict(Conflict):
    code = "IDEMPOTENCY_KEY_CONFLICT"
    default_message = "Idempotency-Key already used with different payload"
