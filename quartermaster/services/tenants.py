from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.core.errors import TenantNotFound, TenantSelectorMissing
from quartermaster.domain.models import Tenant
from quartermaster.persistence.repos import tenants as tenants_repo


async def resolve_tenant(session: AsyncSession, selector: str | None) -> Tenant:
    """Map a troop slug to its tenant; the choke point every scoped request passes."""
    if selector is None or not selector.strip():
        raise TenantSelectorMissing()
    tenant = await tenants_repo.get_by_slug(session, selector.strip().lower())
    if tenant is None:
        raise TenantNotFound()
    return tenant
