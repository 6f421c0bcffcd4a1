"""Checkout/checkin state machine.

Every status flip runs as one database transaction: a compare-and-swap ``UPDATE`` on the
item row (``WHERE status = <expected>``), the ledger append, and the commit. A second
concurrent request for the same item either waits on the row lock (Postgres) or on the
database write lock (SQLite), then matches zero rows and reports ``InvalidTransition``.
The ledger can therefore never disagree with the item's status.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, NoReturn

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.core.errors import InternalError, InvalidTransition, NotFound, ValidationFailed
from quartermaster.domain.models import Item, Transaction
from quartermaster.domain.state import (
    ADMIN_TRANSITIONS,
    CIRCULATION_TRANSITIONS,
    ItemStatus,
    TransactionAction,
)
from quartermaster.persistence.db import begin_write
from quartermaster.persistence.guards import tenant_predicate
from quartermaster.persistence.repos import items as items_repo
from quartermaster.persistence.repos import ledger as ledger_repo
from quartermaster.persistence.repos import principals as principals_repo
from quartermaster.services.auth.tokens import Claims


logger = logging.getLogger(__name__)

REPAIR_CHECKIN_NOTE = "Returned for repair"


@dataclass(frozen=True)
class CheckoutRequest:
    checked_out_by: str
    principal_id: str | None = None
    expected_return_at: datetime | None = None
    notes: str | None = None


@dataclass(frozen=True)
class CheckinRequest:
    notes: str | None = None


@dataclass(frozen=True)
class TransitionResult:
    item: Item
    entry: Transaction | None


@dataclass(frozen=True)
class _LedgerAppend:
    action: TransactionAction
    principal_id: str | None
    performed_by_label: str | None = None
    expected_return_at: datetime | None = None
    notes: str | None = None


def _unavailable_message(action: TransactionAction, status: ItemStatus) -> str:
    if action is TransactionAction.CHECK_OUT:
        return f"Item not available for checkout (status: {status.value})"
    return f"Item is not checked out (status: {status.value})"


async def _explain_miss(
    session: AsyncSession,
    tenant_id: str,
    item_id: str,
    message_for: Callable[[ItemStatus], str],
) -> NoReturn:
    # The CAS matched nothing: either the item is gone (or foreign) or its status moved on.
    await session.rollback()
    current = await items_repo.get_item(session, tenant_id, item_id, refresh=True)
    # Rolling back expires the instance, so read the status first.
    status = current.status if current is not None else None
    await session.rollback()
    if status is None:
        raise NotFound("Item not found")
    raise InvalidTransition(message_for(status), details={"status": status.value})


async def _apply_transition(
    session: AsyncSession,
    tenant_id: str,
    item_id: str,
    *,
    from_status: ItemStatus,
    to_status: ItemStatus,
    ledger: _LedgerAppend | None,
    message_for: Callable[[ItemStatus], str],
    actor: Claims,
) -> TransitionResult:
    entry: Transaction | None = None
    try:
        await begin_write(session)
        result = await session.execute(
            update(Item)
            .where(
                tenant_predicate(Item, tenant_id),
                Item.id == item_id,
                Item.status == from_status,
            )
            .values(status=to_status, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await _explain_miss(session, tenant_id, item_id, message_for)
        if ledger is not None:
            entry = await ledger_repo.append_entry(
                session,
                tenant_id,
                item_id,
                action=ledger.action,
                principal_id=ledger.principal_id,
                performed_by_label=ledger.performed_by_label,
                expected_return_at=ledger.expected_return_at,
                notes=ledger.notes,
            )
        await session.commit()
    except SQLAlchemyError as exc:
        # Nothing from the unit survives a storage failure.
        await session.rollback()
        logger.exception(
            "item_transition_failed tenant_id=%s item_id=%s from=%s to=%s",
            tenant_id,
            item_id,
            from_status.value,
            to_status.value,
        )
        raise InternalError("Database error while updating item status") from exc

    item = await items_repo.get_item(session, tenant_id, item_id, refresh=True)
    if item is None:
        # Deleted between commit and re-read.
        raise NotFound("Item not found")
    logger.info(
        "item_status_changed tenant_id=%s item_id=%s actor_id=%s from=%s to=%s sequence=%s",
        tenant_id,
        item_id,
        actor.subject_id,
        from_status.value,
        to_status.value,
        entry.sequence if entry is not None else None,
    )
    return TransitionResult(item=item, entry=entry)


async def _require_tenant_principal(session: AsyncSession, tenant_id: str, principal_id: str) -> None:
    # A borrower reference must point at a member of the same troop.
    if await principals_repo.get_principal(session, tenant_id, principal_id) is None:
        raise ValidationFailed("principalId does not reference a user in this troop")


async def checkout(
    session: AsyncSession,
    tenant_id: str,
    item_id: str,
    request: CheckoutRequest,
    actor: Claims,
) -> TransitionResult:
    label = (request.checked_out_by or "").strip()
    if not label:
        raise ValidationFailed("checkedOutBy is required")
    # Walk-up borrowers have no account; only a named borrower is linked on the ledger.
    borrower_id = request.principal_id or None
    if borrower_id:
        await _require_tenant_principal(session, tenant_id, borrower_id)
    from_status, to_status = CIRCULATION_TRANSITIONS[TransactionAction.CHECK_OUT]
    return await _apply_transition(
        session,
        tenant_id,
        item_id,
        from_status=from_status,
        to_status=to_status,
        ledger=_LedgerAppend(
            action=TransactionAction.CHECK_OUT,
            principal_id=borrower_id,
            performed_by_label=label,
            expected_return_at=request.expected_return_at,
            notes=request.notes,
        ),
        message_for=lambda status: _unavailable_message(TransactionAction.CHECK_OUT, status),
        actor=actor,
    )


async def checkin(
    session: AsyncSession,
    tenant_id: str,
    item_id: str,
    request: CheckinRequest,
    actor: Claims,
) -> TransitionResult:
    from_status, to_status = CIRCULATION_TRANSITIONS[TransactionAction.CHECK_IN]
    return await _apply_transition(
        session,
        tenant_id,
        item_id,
        from_status=from_status,
        to_status=to_status,
        ledger=_LedgerAppend(
            action=TransactionAction.CHECK_IN,
            principal_id=actor.subject_id,
            notes=request.notes,
        ),
        message_for=lambda status: _unavailable_message(TransactionAction.CHECK_IN, status),
        actor=actor,
    )


async def set_status(
    session: AsyncSession,
    tenant_id: str,
    item_id: str,
    target: ItemStatus,
    actor: Claims,
    *,
    notes: str | None = None,
) -> TransitionResult:
    """Administrative status change: into ``needs_repair`` and back to ``available``.

    Sending a checked-out item to repair records a ``check_in`` in the same unit, so the
    item's latest ledger entry still agrees with its status.
    """
    item = await items_repo.get_item(session, tenant_id, item_id, refresh=True)
    if item is None:
        raise NotFound("Item not found")
    current = item.status
    if target not in ADMIN_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Cannot change status from {current.value} to {target.value}",
            details={"status": current.value},
        )
    ledger = None
    if current is ItemStatus.CHECKED_OUT:
        ledger = _LedgerAppend(
            action=TransactionAction.CHECK_IN,
            principal_id=actor.subject_id,
            notes=notes or REPAIR_CHECKIN_NOTE,
        )
    return await _apply_transition(
        session,
        tenant_id,
        item_id,
        from_status=current,
        to_status=target,
        ledger=ledger,
        message_for=lambda status: f"Item status changed concurrently (status: {status.value})",
        actor=actor,
    )
