from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.core.errors import Unauthenticated
from quartermaster.domain.models import Principal, Tenant
from quartermaster.persistence.repos import principals as principals_repo
from quartermaster.services.auth.tokens import Claims, decode_token


logger = logging.getLogger(__name__)


def parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format; an absent header is reported separately by the caller.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise Unauthenticated("Missing or invalid bearer token")
    return parts[1]


async def load_principal(session: AsyncSession, claims: Claims) -> Principal:
    # Re-check the subject on every request so deleted or moved users lose access immediately.
    principal = await principals_repo.get_principal(session, claims.tenant_id, claims.subject_id)
    if principal is None:
        raise Unauthenticated("Invalid token or user not found")
    return principal


async def authenticate(session: AsyncSession, raw_token: str | None, tenant: Tenant) -> Claims:
    """Turn a bearer token into claims bound to the resolved tenant.

    The token must be valid, its tenant claim must be the resolved tenant, and its subject
    must still exist in that tenant. The returned role is the principal's current stored
    role, so an admin's role change takes effect without waiting for token expiry.
    """
    if not raw_token:
        raise Unauthenticated("Authentication required")
    claims = decode_token(raw_token)
    if claims.tenant_id != tenant.id:
        logger.info(
            "auth_tenant_mismatch subject_id=%s token_tenant=%s resolved_tenant=%s",
            claims.subject_id,
            claims.tenant_id,
            tenant.id,
        )
        raise Unauthenticated("Invalid token or user not found")
    principal = await load_principal(session, claims)
    return Claims(subject_id=principal.id, tenant_id=principal.tenant_id, role=principal.role)
