from __future__ import annotations

import re
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.core.errors import Conflict, ValidationFailed
from quartermaster.domain.models import Tenant


SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def normalize_slug(slug: str) -> str:
    cleaned = slug.strip().lower()
    if not SLUG_PATTERN.match(cleaned):
        raise ValidationFailed(f"Invalid troop slug: {slug!r}")
    return cleaned


async def get_by_slug(session: AsyncSession, slug: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.slug == slug))
    return result.scalar_one_or_none()


async def get_by_id(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def create_tenant(session: AsyncSession, *, name: str, slug: str) -> Tenant:
    # Flush inside a savepoint so a duplicate slug leaves the outer transaction usable.
    tenant = Tenant(id=str(uuid4()), name=name.strip(), slug=normalize_slug(slug))
    try:
        async with session.begin_nested():
            session.add(tenant)
    except IntegrityError as exc:
        raise Conflict(f"Troop slug already exists: {tenant.slug}") from exc
    return tenant


async def delete_tenant(session: AsyncSession, tenant_id: str) -> bool:
    # Principals, items, transactions and idempotency rows go with it via FK cascades.
    result = await session.execute(delete(Tenant).where(Tenant.id == tenant_id))
    return bool(result.rowcount)
