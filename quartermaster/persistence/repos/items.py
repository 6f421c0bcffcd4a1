from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.core.errors import ValidationFailed
from quartermaster.domain.models import Item
from quartermaster.domain.state import ItemCategory, ItemStatus, LocationLevel, LocationSide
from quartermaster.persistence.guards import tenant_predicate


QR_TOKEN_PREFIX = "qrt_"

# Descriptive fields an update may touch; status is owned by the circulation service.
UPDATABLE_FIELDS = frozenset({"name", "description", "category", "location_side", "location_level"})


@dataclass(frozen=True)
class ItemFilters:
    category: ItemCategory | None = None
    status: ItemStatus | None = None
    location: tuple[LocationSide, LocationLevel] | None = None
    search: str | None = None


def parse_location(value: str) -> tuple[LocationSide, LocationLevel]:
    """Parse a ``side-level`` compound such as ``left-middle``."""
    side, sep, level = value.strip().lower().partition("-")
    if not sep:
        raise ValidationFailed(f"Invalid location {value!r}; expected side-level")
    try:
        return LocationSide(side), LocationLevel(level)
    except ValueError as exc:
        raise ValidationFailed(f"Invalid location {value!r}; expected side-level") from exc


def generate_qr_token() -> str:
    # Opaque and globally unique; never derived from tenant data.
    return f"{QR_TOKEN_PREFIX}{uuid4().hex}"


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def get_item(
    session: AsyncSession,
    tenant_id: str,
    item_id: str,
    *,
    refresh: bool = False,
) -> Item | None:
    # Ensure tenant scoping to prevent cross-tenant item access.
    stmt = select(Item).where(tenant_predicate(Item, tenant_id), Item.id == item_id)
    if refresh:
        # Overwrite identity-map state after bulk updates issued by the state machine.
        stmt = stmt.execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_items(session: AsyncSession, tenant_id: str, filters: ItemFilters | None = None) -> list[Item]:
    filters = filters or ItemFilters()
    stmt = select(Item).where(tenant_predicate(Item, tenant_id))
    if filters.category is not None:
        stmt = stmt.where(Item.category == filters.category)
    if filters.status is not None:
        stmt = stmt.where(Item.status == filters.status)
    if filters.location is not None:
        side, level = filters.location
        stmt = stmt.where(Item.location_side == side, Item.location_level == level)
    if filters.search:
        pattern = f"%{_escape_like(filters.search.strip().lower())}%"
        stmt = stmt.where(
            or_(
                func.lower(Item.name).like(pattern, escape="\\"),
                func.lower(func.coalesce(Item.description, "")).like(pattern, escape="\\"),
            )
        )
    # Stable ordering avoids non-deterministic API responses for the same tenant.
    result = await session.execute(stmt.order_by(Item.name, Item.id))
    return list(result.scalars().all())


async def create_item(
    session: AsyncSession,
    tenant_id: str,
    *,
    name: str,
    category: ItemCategory,
    location_side: LocationSide,
    location_level: LocationLevel,
    description: str | None = None,
) -> Item:
    tenant_predicate(Item, tenant_id)
    now = datetime.now(timezone.utc)
    item = Item(
        id=str(uuid4()),
        tenant_id=tenant_id,
        name=name.strip(),
        description=description,
        category=category,
        location_side=location_side,
        location_level=location_level,
        status=ItemStatus.AVAILABLE,
        qr_token=generate_qr_token(),
        created_at=now,
        updated_at=now,
    )
    session.add(item)
    await session.flush()
    return item


async def update_item(
    session: AsyncSession,
    tenant_id: str,
    item_id: str,
    patch: dict[str, object],
) -> Item | None:
    # Reject status (and anything else unexpected) instead of silently ignoring it.
    unknown = set(patch) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationFailed(
            "Fields cannot be updated: " + ", ".join(sorted(unknown)),
            details={"fields": sorted(unknown)},
        )
    # Fetch first to enforce tenant scoping and avoid accidental upserts.
    item = await get_item(session, tenant_id, item_id)
    if item is None:
        return None
    for field, value in patch.items():
        if field == "name" and isinstance(value, str):
            value = value.strip()
        setattr(item, field, value)
    item.updated_at = datetime.now(timezone.utc)
    await session.flush()
    return item


async def delete_item(session: AsyncSession, tenant_id: str, item_id: str) -> bool:
    # Ledger rows for the item are removed by the FK cascade.
    result = await session.execute(
        delete(Item).where(tenant_predicate(Item, tenant_id), Item.id == item_id)
    )
    return bool(result.rowcount)
