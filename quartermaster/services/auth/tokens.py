from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
from pydantic import BaseModel

from quartermaster.core.config import get_settings
from quartermaster.core.errors import Unauthenticated
from quartermaster.domain.state import Role


_REQUIRED_CLAIMS = ["sub", "tid", "role", "exp", "iat"]


class Claims(BaseModel):
    # Authenticated identity threaded explicitly through every tenant-scoped call.
    subject_id: str
    tenant_id: str
    role: Role

    model_config = {"frozen": True}


def issue_token(
    *,
    subject_id: str,
    tenant_id: str,
    role: Role,
    ttl_minutes: int | None = None,
    now: datetime | None = None,
) -> str:
    # Sign a short-lived HS256 bearer token binding the subject to one tenant.
    settings = get_settings()
    issued_at = now or datetime.now(timezone.utc)
    ttl = settings.jwt_ttl_minutes if ttl_minutes is None else ttl_minutes
    payload = {
        "sub": subject_id,
        "tid": tenant_id,
        "role": role.value,
        "iss": settings.jwt_issuer,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=ttl),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(raw_token: str) -> Claims:
    """Verify signature, expiry and shape; any failure is ``Unauthenticated``."""
    settings = get_settings()
    try:
        payload = jwt.decode(
            raw_token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": _REQUIRED_CLAIMS},
        )
    except jwt.ExpiredSignatureError as exc:
        raise Unauthenticated("Token expired") from exc
    except jwt.PyJWTError as exc:
        raise Unauthenticated("Invalid token") from exc
    subject_id = payload.get("sub")
    tenant_id = payload.get("tid")
    if not isinstance(subject_id, str) or not subject_id or not isinstance(tenant_id, str) or not tenant_id:
        raise Unauthenticated("Invalid token")
    try:
        role = Role(payload.get("role"))
    except ValueError as exc:
        raise Unauthenticated("Invalid token") from exc
    return Claims(subject_id=subject_id, tenant_id=tenant_id, role=role)
