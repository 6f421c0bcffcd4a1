from __future__ import annotations

import logging
from typing import AsyncGenerator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.core.config import get_settings
from quartermaster.core.errors import Forbidden
from quartermaster.domain.models import Tenant
from quartermaster.domain.state import Role
from quartermaster.persistence.db import get_session
from quartermaster.services.auth.identity import authenticate, parse_bearer_token
from quartermaster.services.auth.roles import authorize
from quartermaster.services.auth.tokens import Claims
from quartermaster.services.tenants import resolve_tenant


logger = logging.getLogger(__name__)

TENANT_QUERY_PARAM = "troop_slug"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_tenant(request: Request, db: AsyncSession = Depends(get_db)) -> Tenant:
    # Header first; the query parameter serves links opened from printed labels.
    settings = get_settings()
    selector = request.headers.get(settings.tenant_header) or request.query_params.get(TENANT_QUERY_PARAM)
    return await resolve_tenant(db, selector)


async def get_claims(
    request: Request,
    tenant: Tenant = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
) -> Claims:
    raw_token = parse_bearer_token(request.headers.get("Authorization"))
    return await authenticate(db, raw_token, tenant)


def idempotency_key_header(
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128),
) -> str | None:
    # Expose Idempotency-Key in OpenAPI without forcing usage in handlers.
    return idempotency_key


def require_roles(allowed_roles: frozenset[Role]):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(request: Request, claims: Claims = Depends(get_claims)) -> Claims:
        try:
            return authorize(claims, allowed_roles)
        except Forbidden:
            logger.info(
                "rbac_forbidden tenant_id=%s subject_id=%s role=%s method=%s path=%s",
                claims.tenant_id,
                claims.subject_id,
                claims.role.value,
                request.method,
                request.url.path,
            )
            raise

    return _dependency
