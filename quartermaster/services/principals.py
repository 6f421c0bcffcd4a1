from __future__ import annotations

import logging
import re

from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.core.config import get_settings
from quartermaster.core.errors import Forbidden, NotFound, Unauthenticated, ValidationFailed
from quartermaster.domain.models import Principal
from quartermaster.domain.state import Role
from quartermaster.persistence.repos import principals as principals_repo
from quartermaster.services.auth.passwords import hash_password, verify_password
from quartermaster.services.auth.tokens import Claims


logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
USERNAME_MIN_LENGTH = 3


def validate_username(username: str) -> str:
    cleaned = username.strip()
    if len(cleaned) < USERNAME_MIN_LENGTH:
        raise ValidationFailed(f"Username must be at least {USERNAME_MIN_LENGTH} characters")
    return cleaned


def validate_email(email: str) -> str:
    cleaned = email.strip()
    if not _EMAIL_PATTERN.match(cleaned):
        raise ValidationFailed("Invalid email format")
    return cleaned


def validate_password(password: str) -> str:
    minimum = get_settings().password_min_length
    if len(password) < minimum:
        raise ValidationFailed(f"Password must be at least {minimum} characters")
    return password


async def create_principal(
    session: AsyncSession,
    tenant_id: str,
    *,
    username: str,
    email: str,
    password: str,
    role: Role,
) -> Principal:
    return await principals_repo.create_principal(
        session,
        tenant_id,
        username=validate_username(username),
        email=validate_email(email),
        credential_hash=hash_password(validate_password(password)),
        role=role,
    )


async def login(session: AsyncSession, tenant_id: str, *, email: str, password: str) -> Principal:
    principal = await principals_repo.get_by_email(session, tenant_id, email)
    # One message for both failure modes so login cannot be used to enumerate accounts.
    if principal is None or not verify_password(password, principal.credential_hash):
        logger.info("login_failed tenant_id=%s", tenant_id)
        raise Unauthenticated("Invalid email or password")
    return principal


async def update_principal(
    session: AsyncSession,
    actor: Claims,
    principal_id: str,
    *,
    username: str | None = None,
    email: str | None = None,
    role: Role | None = None,
) -> Principal:
    # An admin may not demote themself; that is the only way a troop loses its last admin.
    if principal_id == actor.subject_id and role is not None and role is not Role.ADMIN:
        raise Forbidden("Admins cannot change their own role")
    principal = await principals_repo.update_fields(
        session,
        actor.tenant_id,
        principal_id,
        username=validate_username(username) if username is not None else None,
        email=validate_email(email) if email is not None else None,
        role=role,
    )
    if principal is None:
        raise NotFound("User not found")
    return principal


async def delete_principal(session: AsyncSession, actor: Claims, principal_id: str) -> None:
    if principal_id == actor.subject_id:
        raise Forbidden("You cannot delete your own account")
    deleted = await principals_repo.delete_principal(session, actor.tenant_id, principal_id)
    if not deleted:
        raise NotFound("User not found")


async def change_password(
    session: AsyncSession,
    actor: Claims,
    *,
    current_password: str,
    new_password: str,
) -> Principal:
    principal = await principals_repo.get_principal(session, actor.tenant_id, actor.subject_id)
    if principal is None:
        raise Unauthenticated("Invalid token or user not found")
    if not verify_password(current_password, principal.credential_hash):
        raise ValidationFailed("Current password is incorrect")
    updated = await principals_repo.update_fields(
        session,
        actor.tenant_id,
        actor.subject_id,
        credential_hash=hash_password(validate_password(new_password)),
    )
    if updated is None:
        raise Unauthenticated("Invalid token or user not found")
    return updated
