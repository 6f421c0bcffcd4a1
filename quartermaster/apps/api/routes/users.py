from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.apps.api.deps import get_db, require_roles
from quartermaster.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from quartermaster.apps.api.response import SuccessEnvelope, success_response
from quartermaster.core.errors import InternalError, NotFound
from quartermaster.domain.models import Principal
from quartermaster.domain.state import Role
from quartermaster.persistence.repos import principals as principals_repo
from quartermaster.services import principals as principals_service
from quartermaster.services.auth.roles import ANY_ROLE, USER_ADMIN, USER_LIST
from quartermaster.services.auth.tokens import Claims


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"], responses=DEFAULT_ERROR_RESPONSES)


class PrincipalResponse(BaseModel):
    id: str
    tenant_id: str
    username: str
    email: str
    role: Role
    created_at: str
    updated_at: str


class PrincipalCreateRequest(BaseModel):
    username: str = Field(max_length=100)
    email: str = Field(max_length=320)
    password: str = Field(max_length=1024)
    role: Role = Role.SCOUT

    model_config = ConfigDict(extra="forbid")


class PrincipalUpdateRequest(BaseModel):
    username: str | None = Field(default=None, max_length=100)
    email: str | None = Field(default=None, max_length=320)
    role: Role | None = None

    model_config = ConfigDict(extra="forbid")


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(alias="currentPassword", max_length=1024)
    new_password: str = Field(alias="newPassword", max_length=1024)

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class PasswordChangeResponse(BaseModel):
    changed: bool


def principal_to_response(principal: Principal) -> PrincipalResponse:
    # Never expose the credential hash.
    return PrincipalResponse(
        id=principal.id,
        tenant_id=principal.tenant_id,
        username=principal.username,
        email=principal.email,
        role=principal.role,
        created_at=principal.created_at.isoformat(),
        updated_at=principal.updated_at.isoformat(),
    )


async def _commit(db: AsyncSession, message: str) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("principal_commit_failed")
        raise InternalError(message) from exc


@router.get("", response_model=SuccessEnvelope[list[PrincipalResponse]] | list[PrincipalResponse])
async def list_users(
    request: Request,
    claims: Claims = Depends(require_roles(USER_LIST)),
    db: AsyncSession = Depends(get_db),
):
    try:
        principals = await principals_repo.list_principals(db, claims.tenant_id)
    except SQLAlchemyError as exc:
        raise InternalError("Database error while listing users") from exc
    return success_response(request=request, data=[principal_to_response(p) for p in principals])


@router.post("", status_code=201, response_model=SuccessEnvelope[PrincipalResponse] | PrincipalResponse)
async def create_user(
    request: Request,
    payload: PrincipalCreateRequest,
    claims: Claims = Depends(require_roles(USER_ADMIN)),
    db: AsyncSession = Depends(get_db),
):
    principal = await principals_service.create_principal(
        db,
        claims.tenant_id,
        username=payload.username,
        email=payload.email,
        password=payload.password,
        role=payload.role,
    )
    await _commit(db, "Database error while creating user")
    logger.info(
        "principal_created tenant_id=%s subject_id=%s role=%s by=%s",
        claims.tenant_id,
        principal.id,
        principal.role.value,
        claims.subject_id,
    )
    return success_response(request=request, data=principal_to_response(principal))


# Declared before /{principal_id} so "me" is never captured as an id.
@router.put("/me/password", response_model=SuccessEnvelope[PasswordChangeResponse] | PasswordChangeResponse)
async def change_own_password(
    request: Request,
    payload: PasswordChangeRequest,
    claims: Claims = Depends(require_roles(ANY_ROLE)),
    db: AsyncSession = Depends(get_db),
):
    await principals_service.change_password(
        db,
        claims,
        current_password=payload.current_password,
        new_password=payload.new_password,
    )
    await _commit(db, "Database error while changing password")
    logger.info("password_changed tenant_id=%s subject_id=%s", claims.tenant_id, claims.subject_id)
    return success_response(request=request, data=PasswordChangeResponse(changed=True))


@router.get("/{principal_id}", response_model=SuccessEnvelope[PrincipalResponse] | PrincipalResponse)
async def get_user(
    principal_id: str,
    request: Request,
    claims: Claims = Depends(require_roles(USER_LIST)),
    db: AsyncSession = Depends(get_db),
):
    principal = await principals_repo.get_principal(db, claims.tenant_id, principal_id)
    if principal is None:
        raise NotFound("User not found")
    return success_response(request=request, data=principal_to_response(principal))


@router.put("/{principal_id}", response_model=SuccessEnvelope[PrincipalResponse] | PrincipalResponse)
async def update_user(
    principal_id: str,
    request: Request,
    payload: PrincipalUpdateRequest,
    claims: Claims = Depends(require_roles(USER_ADMIN)),
    db: AsyncSession = Depends(get_db),
):
    principal = await principals_service.update_principal(
        db,
        claims,
        principal_id,
        username=payload.username,
        email=payload.email,
        role=payload.role,
    )
    await _commit(db, "Database error while updating user")
    return success_response(request=request, data=principal_to_response(principal))


@router.delete("/{principal_id}", status_code=204)
async def delete_user(
    principal_id: str,
    claims: Claims = Depends(require_roles(USER_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await principals_service.delete_principal(db, claims, principal_id)
    await _commit(db, "Database error while deleting user")
    logger.info("principal_deleted tenant_id=%s subject_id=%s by=%s", claims.tenant_id, principal_id, claims.subject_id)
    return Response(status_code=204)
