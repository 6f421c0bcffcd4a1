"""QR identity codec.

A QR code carries a small JSON document naming one item inside one troop::

    {"type":"item-ref","itemId":"<uuid>","tenantSlug":"<slug>","issuedAt":<epoch-ms>}

A payload is only honored by the troop that minted it: ``resolve`` compares the slug
against the requesting tenant before looking anything up.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.core.errors import MalformedPayload, NotFound, TenantMismatch
from quartermaster.domain.models import Item, Tenant
from quartermaster.persistence.repos import items as items_repo


PAYLOAD_KIND = "item-ref"
# Bound decoding work on scanner input; real payloads are well under this.
MAX_PAYLOAD_CHARS = 2048


@dataclass(frozen=True)
class ItemRef:
    item_id: str
    tenant_slug: str
    issued_at: int

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": PAYLOAD_KIND,
            "itemId": self.item_id,
            "tenantSlug": self.tenant_slug,
            "issuedAt": self.issued_at,
        }


def _epoch_ms(moment: datetime | None = None) -> int:
    moment = moment or datetime.now(timezone.utc)
    return int(moment.timestamp() * 1000)


def encode(item_id: str, tenant_slug: str, issued_at: int | None = None) -> str:
    if not item_id or not tenant_slug:
        raise ValueError("item_id and tenant_slug are required")
    ref = ItemRef(
        item_id=item_id,
        tenant_slug=tenant_slug,
        issued_at=_epoch_ms() if issued_at is None else issued_at,
    )
    return json.dumps(ref.to_wire(), separators=(",", ":"))


def _required_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MalformedPayload(f"QR payload field {key!r} is missing or invalid")
    return value


def decode(payload: str) -> ItemRef:
    if not isinstance(payload, str) or not payload.strip():
        raise MalformedPayload("QR payload is empty")
    if len(payload) > MAX_PAYLOAD_CHARS:
        raise MalformedPayload("QR payload is too large")
    try:
        data = json.loads(payload)
    except (ValueError, RecursionError) as exc:
        # Deeply nested arrays exhaust the decoder before the size cap does.
        raise MalformedPayload("QR payload is not valid JSON") from exc
    if not isinstance(data, dict):
        raise MalformedPayload("QR payload must be a JSON object")
    if data.get("type") != PAYLOAD_KIND:
        raise MalformedPayload("QR payload is not an item reference")
    issued_at = data.get("issuedAt")
    # bool is an int subclass; reject it explicitly.
    if isinstance(issued_at, bool) or not isinstance(issued_at, int) or issued_at < 0:
        raise MalformedPayload("QR payload field 'issuedAt' is missing or invalid")
    return ItemRef(
        item_id=_required_str(data, "itemId"),
        tenant_slug=_required_str(data, "tenantSlug"),
        issued_at=issued_at,
    )


async def mint(session: AsyncSession, tenant: Tenant, item_id: str) -> tuple[Item, str]:
    # Only mint for items the tenant can actually see.
    item = await items_repo.get_item(session, tenant.id, item_id)
    if item is None:
        raise NotFound("Item not found")
    return item, encode(item.id, tenant.slug)


async def resolve(session: AsyncSession, payload: str, tenant: Tenant) -> Item:
    ref = decode(payload)
    # Checked before any lookup so the result never depends on the other troop's data.
    if ref.tenant_slug != tenant.slug:
        raise TenantMismatch(
            "QR code belongs to a different troop",
            details={"tenantSlug": ref.tenant_slug},
        )
    item = await items_repo.get_item(session, tenant.id, ref.item_id)
    if item is None:
        raise NotFound("Item not found")
    return item
