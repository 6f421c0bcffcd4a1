from __future__ import annotations

from datetime import datetime
import logging

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.apps.api.deps import get_db, idempotency_key_header, require_roles
from quartermaster.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from quartermaster.apps.api.response import SuccessEnvelope, success_response
from quartermaster.core.errors import InternalError, NotFound, ValidationFailed
from quartermaster.domain.models import Item, Transaction
from quartermaster.domain.state import ItemCategory, ItemStatus, LocationLevel, LocationSide
from quartermaster.persistence.repos import items as items_repo
from quartermaster.persistence.repos import ledger as ledger_repo
from quartermaster.services import circulation
from quartermaster.services.auth.roles import ITEM_CIRCULATE, ITEM_DELETE, ITEM_READ, ITEM_WRITE
from quartermaster.services.auth.tokens import Claims
from quartermaster.services import idempotency


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/items", tags=["items"], responses=DEFAULT_ERROR_RESPONSES)

_REQUIRED_ON_UPDATE = ("name", "category", "location_side", "location_level")


class ItemResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: str | None
    category: ItemCategory
    location_side: LocationSide
    location_level: LocationLevel
    status: ItemStatus
    qr_token: str
    created_at: str
    updated_at: str


class TransactionResponse(BaseModel):
    id: str
    item_id: str
    principal_id: str | None
    action: str
    performed_by_label: str | None
    expected_return_at: str | None
    notes: str | None
    occurred_at: str
    sequence: int


class ItemCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    category: ItemCategory
    location_side: LocationSide = Field(alias="locationSide")
    location_level: LocationLevel = Field(alias="locationLevel")

    # Accept wire camelCase and snake_case; reject tenant_id/status smuggled into the body.
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class ItemUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    category: ItemCategory | None = None
    location_side: LocationSide | None = Field(default=None, alias="locationSide")
    location_level: LocationLevel | None = Field(default=None, alias="locationLevel")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class StatusUpdateRequest(BaseModel):
    status: ItemStatus
    notes: str | None = Field(default=None, max_length=2000)

    model_config = ConfigDict(extra="forbid")


class CheckoutRequestBody(BaseModel):
    checked_out_by: str = Field(alias="checkedOutBy", max_length=200)
    principal_id: str | None = Field(default=None, alias="principalId")
    notes: str | None = Field(default=None, max_length=2000)
    expected_return_at: datetime | None = Field(default=None, alias="expectedReturnAt")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class CheckinRequestBody(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)

    model_config = ConfigDict(extra="forbid")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def item_to_response(item: Item) -> ItemResponse:
    return ItemResponse(
        id=item.id,
        tenant_id=item.tenant_id,
        name=item.name,
        description=item.description,
        category=item.category,
        location_side=item.location_side,
        location_level=item.location_level,
        status=item.status,
        qr_token=item.qr_token,
        created_at=item.created_at.isoformat(),
        updated_at=item.updated_at.isoformat(),
    )


def _transaction_to_response(entry: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=entry.id,
        item_id=entry.item_id,
        principal_id=entry.principal_id,
        action=entry.action.value,
        performed_by_label=entry.performed_by_label,
        expected_return_at=_iso(entry.expected_return_at),
        notes=entry.notes,
        occurred_at=entry.occurred_at.isoformat(),
        sequence=entry.sequence,
    )


async def _commit(db: AsyncSession, message: str) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("item_commit_failed")
        raise InternalError(message) from exc


@router.post(
    "",
    status_code=201,
    response_model=SuccessEnvelope[ItemResponse] | ItemResponse,
)
async def create_item(
    request: Request,
    payload: ItemCreateRequest,
    claims: Claims = Depends(require_roles(ITEM_WRITE)),
    db: AsyncSession = Depends(get_db),
):
    if not payload.name.strip():
        raise ValidationFailed("Item name is required")
    try:
        item = await items_repo.create_item(
            db,
            claims.tenant_id,
            name=payload.name,
            description=payload.description,
            category=payload.category,
            location_side=payload.location_side,
            location_level=payload.location_level,
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise InternalError("Database error while creating item") from exc
    await _commit(db, "Database error while creating item")
    logger.info("item_created tenant_id=%s item_id=%s", claims.tenant_id, item.id)
    return success_response(request=request, data=item_to_response(item))


@router.get("", response_model=SuccessEnvelope[list[ItemResponse]] | list[ItemResponse])
async def list_items(
    request: Request,
    category: ItemCategory | None = Query(default=None),
    status: ItemStatus | None = Query(default=None),
    location: str | None = Query(default=None, description="side-level, e.g. left-middle"),
    search: str | None = Query(default=None, max_length=200),
    claims: Claims = Depends(require_roles(ITEM_READ)),
    db: AsyncSession = Depends(get_db),
):
    filters = items_repo.ItemFilters(
        category=category,
        status=status,
        location=items_repo.parse_location(location) if location else None,
        search=search or None,
    )
    try:
        items = await items_repo.list_items(db, claims.tenant_id, filters)
    except SQLAlchemyError as exc:
        raise InternalError("Database error while listing items") from exc
    return success_response(request=request, data=[item_to_response(item) for item in items])


@router.get("/{item_id}", response_model=SuccessEnvelope[ItemResponse] | ItemResponse)
async def get_item(
    item_id: str,
    request: Request,
    claims: Claims = Depends(require_roles(ITEM_READ)),
    db: AsyncSession = Depends(get_db),
):
    try:
        item = await items_repo.get_item(db, claims.tenant_id, item_id)
    except SQLAlchemyError as exc:
        raise InternalError("Database error while fetching item") from exc
    if item is None:
        # Use 404 to avoid leaking cross-tenant item existence.
        raise NotFound("Item not found")
    return success_response(request=request, data=item_to_response(item))


@router.put("/{item_id}", response_model=SuccessEnvelope[ItemResponse] | ItemResponse)
async def update_item(
    item_id: str,
    request: Request,
    payload: ItemUpdateRequest,
    claims: Claims = Depends(require_roles(ITEM_WRITE)),
    db: AsyncSession = Depends(get_db),
):
    patch = payload.model_dump(exclude_unset=True)
    cleared = sorted(field for field in _REQUIRED_ON_UPDATE if field in patch and patch[field] is None)
    if cleared:
        raise ValidationFailed("Fields cannot be null: " + ", ".join(cleared), details={"fields": cleared})
    try:
        item = await items_repo.update_item(db, claims.tenant_id, item_id, patch)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise InternalError("Database error while updating item") from exc
    if item is None:
        raise NotFound("Item not found")
    await _commit(db, "Database error while updating item")
    return success_response(request=request, data=item_to_response(item))


@router.delete("/{item_id}", status_code=204)
async def delete_item(
    item_id: str,
    claims: Claims = Depends(require_roles(ITEM_DELETE)),
    db: AsyncSession = Depends(get_db),
) -> Response:
    try:
        deleted = await items_repo.delete_item(db, claims.tenant_id, item_id)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise InternalError("Database error while deleting item") from exc
    if not deleted:
        raise NotFound("Item not found")
    await _commit(db, "Database error while deleting item")
    logger.info("item_deleted tenant_id=%s item_id=%s", claims.tenant_id, item_id)
    return Response(status_code=204)


@router.put("/{item_id}/status", response_model=SuccessEnvelope[ItemResponse] | ItemResponse)
async def set_item_status(
    item_id: str,
    request: Request,
    payload: StatusUpdateRequest,
    claims: Claims = Depends(require_roles(ITEM_WRITE)),
    db: AsyncSession = Depends(get_db),
):
    result = await circulation.set_status(
        db, claims.tenant_id, item_id, payload.status, claims, notes=payload.notes
    )
    return success_response(request=request, data=item_to_response(result.item))


@router.get(
    "/{item_id}/transactions",
    response_model=SuccessEnvelope[list[TransactionResponse]] | list[TransactionResponse],
)
async def list_item_transactions(
    item_id: str,
    request: Request,
    claims: Claims = Depends(require_roles(ITEM_READ)),
    db: AsyncSession = Depends(get_db),
):
    try:
        item = await items_repo.get_item(db, claims.tenant_id, item_id)
        if item is None:
            raise NotFound("Item not found")
        entries = await ledger_repo.list_for_item(db, claims.tenant_id, item_id)
    except SQLAlchemyError as exc:
        raise InternalError("Database error while listing transactions") from exc
    return success_response(request=request, data=[_transaction_to_response(entry) for entry in entries])


@router.post("/{item_id}/checkout", response_model=SuccessEnvelope[ItemResponse] | ItemResponse)
async def checkout_item(
    item_id: str,
    request: Request,
    payload: CheckoutRequestBody,
    _idempotency_key: str | None = Depends(idempotency_key_header),
    claims: Claims = Depends(require_roles(ITEM_CIRCULATE)),
    db: AsyncSession = Depends(get_db),
):
    transition_key, replay = await idempotency.lookup(
        db,
        request=request,
        claims=claims,
        item_id=item_id,
        body=payload.model_dump(mode="json"),
    )
    if replay is not None:
        return replay
    result = await circulation.checkout(
        db,
        claims.tenant_id,
        item_id,
        circulation.CheckoutRequest(
            checked_out_by=payload.checked_out_by,
            principal_id=payload.principal_id,
            expected_return_at=payload.expected_return_at,
            notes=payload.notes,
        ),
        claims,
    )
    response_payload = success_response(request=request, data=item_to_response(result.item))
    await idempotency.remember(
        db, transition_key, status_code=200, body=jsonable_encoder(response_payload)
    )
    return response_payload


@router.post("/{item_id}/checkin", response_model=SuccessEnvelope[ItemResponse] | ItemResponse)
async def checkin_item(
    item_id: str,
    request: Request,
    payload: CheckinRequestBody,
    _idempotency_key: str | None = Depends(idempotency_key_header),
    claims: Claims = Depends(require_roles(ITEM_CIRCULATE)),
    db: AsyncSession = Depends(get_db),
):
    transition_key, replay = await idempotency.lookup(
        db,
        request=request,
        claims=claims,
        item_id=item_id,
        body=payload.model_dump(mode="json"),
    )
    if replay is not None:
        return replay
    result = await circulation.checkin(
        db,
        claims.tenant_id,
        item_id,
        circulation.CheckinRequest(notes=payload.notes),
        claims,
    )
    response_payload = success_response(request=request, data=item_to_response(result.item))
    await idempotency.remember(
        db, transition_key, status_code=200, body=jsonable_encoder(response_payload)
    )
    return response_payload
