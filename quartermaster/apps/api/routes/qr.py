from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.apps.api.deps import get_db, get_tenant, require_roles
from quartermaster.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from quartermaster.apps.api.response import SuccessEnvelope, success_response
from quartermaster.apps.api.routes.items import ItemResponse, item_to_response
from quartermaster.domain.models import Tenant
from quartermaster.services import qr as qr_service
from quartermaster.services.auth.roles import ITEM_CIRCULATE, ITEM_READ
from quartermaster.services.auth.tokens import Claims


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/qr", tags=["qr"], responses=DEFAULT_ERROR_RESPONSES)


class QRCodeResponse(BaseModel):
    item_id: str
    qr_data: str


class ScanRequest(BaseModel):
    qr_data: str = Field(alias="qrData", max_length=qr_service.MAX_PAYLOAD_CHARS)

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


# Declared before /{item_id} so the literal path wins.
@router.post("/scan", response_model=SuccessEnvelope[ItemResponse] | ItemResponse)
async def scan_qr(
    request: Request,
    payload: ScanRequest,
    claims: Claims = Depends(require_roles(ITEM_CIRCULATE)),
    tenant: Tenant = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
):
    item = await qr_service.resolve(db, payload.qr_data, tenant)
    logger.info("qr_scanned tenant_id=%s item_id=%s subject_id=%s", tenant.id, item.id, claims.subject_id)
    return success_response(request=request, data=item_to_response(item))


@router.get("/{item_id}", response_model=SuccessEnvelope[QRCodeResponse] | QRCodeResponse)
async def get_qr_payload(
    item_id: str,
    request: Request,
    _claims: Claims = Depends(require_roles(ITEM_READ)),
    tenant: Tenant = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
):
    item, payload = await qr_service.mint(db, tenant, item_id)
    return success_response(request=request, data=QRCodeResponse(item_id=item.id, qr_data=payload))
