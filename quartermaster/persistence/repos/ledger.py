from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.domain.models import Transaction
from quartermaster.domain.state import TransactionAction
from quartermaster.persistence.guards import tenant_predicate


async def next_sequence(session: AsyncSession, tenant_id: str, item_id: str) -> int:
    # Only safe inside the state machine's atomic unit, which already holds the item's write lock.
    result = await session.execute(
        select(func.coalesce(func.max(Transaction.sequence), 0)).where(
            tenant_predicate(Transaction, tenant_id),
            Transaction.item_id == item_id,
        )
    )
    return int(result.scalar_one()) + 1


async def append_entry(
    session: AsyncSession,
    tenant_id: str,
    item_id: str,
    *,
    action: TransactionAction,
    principal_id: str | None = None,
    performed_by_label: str | None = None,
    expected_return_at: datetime | None = None,
    notes: str | None = None,
) -> Transaction:
    # Append-only: this is the single write path into the ledger.
    entry = Transaction(
        id=str(uuid4()),
        tenant_id=tenant_id,
        item_id=item_id,
        principal_id=principal_id,
        action=action,
        performed_by_label=performed_by_label,
        expected_return_at=expected_return_at,
        notes=notes,
        occurred_at=datetime.now(timezone.utc),
        sequence=await next_sequence(session, tenant_id, item_id),
    )
    session.add(entry)
    await session.flush()
    return entry


async def list_for_item(session: AsyncSession, tenant_id: str, item_id: str) -> list[Transaction]:
    result = await session.execute(
        select(Transaction)
        .where(tenant_predicate(Transaction, tenant_id), Transaction.item_id == item_id)
        .order_by(Transaction.sequence)
    )
    return list(result.scalars().all())


async def latest_for_item(session: AsyncSession, tenant_id: str, item_id: str) -> Transaction | None:
    result = await session.execute(
        select(Transaction)
        .where(tenant_predicate(Transaction, tenant_id), Transaction.item_id == item_id)
        .order_by(Transaction.sequence.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
