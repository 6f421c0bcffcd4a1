from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.apps.api.deps import get_db, get_tenant, require_roles
from quartermaster.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from quartermaster.apps.api.response import SuccessEnvelope, success_response
from quartermaster.apps.api.routes.users import PrincipalResponse, principal_to_response
from quartermaster.core.config import get_settings
from quartermaster.core.errors import Forbidden, InternalError
from quartermaster.domain.models import Principal, Tenant
from quartermaster.services import principals as principals_service
from quartermaster.services.auth.identity import load_principal
from quartermaster.services.auth.roles import ANY_ROLE, normalize_role
from quartermaster.services.auth.tokens import Claims, issue_token


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)


class LoginRequest(BaseModel):
    email: str = Field(max_length=320)
    password: str = Field(max_length=1024)

    model_config = ConfigDict(extra="forbid")


class RegisterRequest(BaseModel):
    username: str = Field(max_length=100)
    email: str = Field(max_length=320)
    password: str = Field(max_length=1024)

    model_config = ConfigDict(extra="forbid")


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    principal: PrincipalResponse


def _token_response(principal: Principal) -> TokenResponse:
    settings = get_settings()
    token = issue_token(subject_id=principal.id, tenant_id=principal.tenant_id, role=principal.role)
    return TokenResponse(
        access_token=token,
        expires_in=settings.jwt_ttl_minutes * 60,
        principal=principal_to_response(principal),
    )


@router.post("/login", response_model=SuccessEnvelope[TokenResponse] | TokenResponse)
async def login(
    request: Request,
    payload: LoginRequest,
    tenant: Tenant = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
):
    principal = await principals_service.login(db, tenant.id, email=payload.email, password=payload.password)
    logger.info("login_succeeded tenant_id=%s subject_id=%s", tenant.id, principal.id)
    return success_response(request=request, data=_token_response(principal))


@router.post("/register", status_code=201, response_model=SuccessEnvelope[TokenResponse] | TokenResponse)
async def register(
    request: Request,
    payload: RegisterRequest,
    tenant: Tenant = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
):
    settings = get_settings()
    if not settings.self_registration_enabled:
        raise Forbidden("Self-registration is disabled for this troop")
    principal = await principals_service.create_principal(
        db,
        tenant.id,
        username=payload.username,
        email=payload.email,
        password=payload.password,
        role=normalize_role(settings.self_registration_role),
    )
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise InternalError("Database error while registering user") from exc
    logger.info("principal_registered tenant_id=%s subject_id=%s", tenant.id, principal.id)
    return success_response(request=request, data=_token_response(principal))


@router.get("/me", response_model=SuccessEnvelope[PrincipalResponse] | PrincipalResponse)
async def me(
    request: Request,
    claims: Claims = Depends(require_roles(ANY_ROLE)),
    db: AsyncSession = Depends(get_db),
):
    principal = await load_principal(db, claims)
    return success_response(request=request, data=principal_to_response(principal))
