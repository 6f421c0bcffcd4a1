from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.core.errors import Conflict
from quartermaster.domain.models import Principal
from quartermaster.domain.state import Role
from quartermaster.persistence.guards import tenant_predicate


def normalize_email(email: str) -> str:
    # Compare emails case-insensitively so the per-troop uniqueness rule cannot be sidestepped.
    return email.strip().lower()


async def get_principal(session: AsyncSession, tenant_id: str, principal_id: str) -> Principal | None:
    # Ensure tenant scoping so ids from other troops look exactly like missing ids.
    result = await session.execute(
        select(Principal).where(
            tenant_predicate(Principal, tenant_id),
            Principal.id == principal_id,
        )
    )
    return result.scalar_one_or_none()


async def get_by_email(session: AsyncSession, tenant_id: str, email: str) -> Principal | None:
    result = await session.execute(
        select(Principal).where(
            tenant_predicate(Principal, tenant_id),
            Principal.email == normalize_email(email),
        )
    )
    return result.scalar_one_or_none()


async def list_principals(session: AsyncSession, tenant_id: str) -> list[Principal]:
    # Stable ordering avoids non-deterministic API responses for the same tenant.
    result = await session.execute(
        select(Principal)
        .where(tenant_predicate(Principal, tenant_id))
        .order_by(Principal.created_at, Principal.id)
    )
    return list(result.scalars().all())


async def create_principal(
    session: AsyncSession,
    tenant_id: str,
    *,
    username: str,
    email: str,
    credential_hash: str,
    role: Role,
) -> Principal:
    principal = Principal(
        id=str(uuid4()),
        tenant_id=tenant_id,
        username=username.strip(),
        email=normalize_email(email),
        credential_hash=credential_hash,
        role=role,
    )
    try:
        async with session.begin_nested():
            session.add(principal)
    except IntegrityError as exc:
        raise Conflict("A user with this email already exists in this troop") from exc
    return principal


async def update_fields(
    session: AsyncSession,
    tenant_id: str,
    principal_id: str,
    *,
    username: str | None = None,
    email: str | None = None,
    role: Role | None = None,
    credential_hash: str | None = None,
) -> Principal | None:
    # Fetch first to enforce tenant scoping and avoid accidental upserts.
    principal = await get_principal(session, tenant_id, principal_id)
    if principal is None:
        return None
    if username is not None:
        principal.username = username.strip()
    if email is not None:
        principal.email = normalize_email(email)
    if role is not None:
        principal.role = role
    if credential_hash is not None:
        principal.credential_hash = credential_hash
    principal.updated_at = datetime.now(timezone.utc)
    try:
        async with session.begin_nested():
            await session.flush()
    except IntegrityError as exc:
        raise Conflict("A user with this email already exists in this troop") from exc
    return principal


async def delete_principal(session: AsyncSession, tenant_id: str, principal_id: str) -> bool:
    # Ledger rows keep their history; their principal_id is nulled by the FK.
    result = await session.execute(
        delete(Principal).where(
            tenant_predicate(Principal, tenant_id),
            Principal.id == principal_id,
        )
    )
    return bool(result.rowcount)
