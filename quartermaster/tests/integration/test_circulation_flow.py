from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from quartermaster.core.errors import InternalError, InvalidTransition, NotFound
from quartermaster.domain.models import Tenant
from quartermaster.domain.state import ItemStatus, Role, TransactionAction
from quartermaster.persistence.db import SessionLocal
from quartermaster.persistence.repos import items as items_repo
from quartermaster.persistence.repos import ledger as ledger_repo
from quartermaster.services import circulation
from quartermaster.services.auth.tokens import Claims
from quartermaster.tests.utils.auth import create_test_item, create_test_principal, create_test_tenant
from quartermaster.tests.utils.client import api_client, data, error_code


async def _assert_ledger_agrees(tenant: Tenant, item_id: str) -> None:
    # status == checked_out iff the most recent ledger entry is a check_out.
    async with SessionLocal() as session:
        item = await items_repo.get_item(session, tenant.id, item_id)
        latest = await ledger_repo.latest_for_item(session, tenant.id, item_id)
    latest_is_checkout = latest is not None and latest.action is TransactionAction.CHECK_OUT
    assert (item.status is ItemStatus.CHECKED_OUT) == latest_is_checkout


async def _ledger(tenant: Tenant, item_id: str):
    async with SessionLocal() as session:
        return await ledger_repo.list_for_item(session, tenant.id, item_id)


@pytest.mark.asyncio
async def test_troop_7_checkout_and_return() -> None:
    troop = await create_test_tenant("troop-7")
    _scout_id, scout = await create_test_principal(troop, role="scout")
    item = await create_test_item(troop, name="Tent A")

    async with api_client() as client:
        response = await client.post(
            f"/v1/items/{item.id}/checkout",
            headers=scout,
            json={"checkedOutBy": "Sam", "expectedReturnAt": "2026-11-01T12:00:00+00:00"},
        )
        assert response.status_code == 200
        assert data(response)["status"] == "checked_out"

        response = await client.get(f"/v1/items/{item.id}/transactions", headers=scout)
        entries = data(response)
        assert len(entries) == 1
        assert entries[0]["action"] == "check_out"
        assert entries[0]["performed_by_label"] == "Sam"
        # Walk-up checkout: no borrower account is linked.
        assert entries[0]["principal_id"] is None
        assert entries[0]["sequence"] == 1
        assert entries[0]["expected_return_at"].startswith("2026-11-01T12:00:00")
        await _assert_ledger_agrees(troop, item.id)

        # A second checkout fails and leaves the ledger alone.
        response = await client.post(
            f"/v1/items/{item.id}/checkout",
            headers=scout,
            json={"checkedOutBy": "Alex"},
        )
        assert response.status_code == 409
        assert error_code(response) == "INVALID_TRANSITION"
        assert response.json()["error"]["message"] == "Item not available for checkout (status: checked_out)"
        assert len(await _ledger(troop, item.id)) == 1

        response = await client.post(f"/v1/items/{item.id}/checkin", headers=scout, json={"notes": "Dry"})
        assert response.status_code == 200
        assert data(response)["status"] == "available"
        await _assert_ledger_agrees(troop, item.id)

        response = await client.post(f"/v1/items/{item.id}/checkin", headers=scout, json={})
        assert response.status_code == 409
        assert error_code(response) == "INVALID_TRANSITION"

    entries = await _ledger(troop, item.id)
    assert [(entry.sequence, entry.action) for entry in entries] == [
        (1, TransactionAction.CHECK_OUT),
        (2, TransactionAction.CHECK_IN),
    ]
    assert entries[1].notes == "Dry"


@pytest.mark.asyncio
async def test_checkout_input_rules() -> None:
    troop_7 = await create_test_tenant("troop-7")
    troop_9 = await create_test_tenant("troop-9")
    _scout_id, scout = await create_test_principal(troop_7, role="scout")
    _viewer_id, viewer = await create_test_principal(troop_7, role="viewer")
    borrower_id, _borrower = await create_test_principal(troop_7, role="scout")
    outsider_id, _outsider = await create_test_principal(troop_9, role="scout")
    item = await create_test_item(troop_7)

    async with api_client() as client:
        response = await client.post(f"/v1/items/{item.id}/checkout", headers=scout, json={"checkedOutBy": "  "})
        assert response.status_code == 400
        assert error_code(response) == "VALIDATION_FAILED"

        response = await client.post(f"/v1/items/{item.id}/checkout", headers=scout, json={})
        assert response.status_code == 400

        response = await client.post(
            f"/v1/items/{item.id}/checkout",
            headers=scout,
            json={"checkedOutBy": "Pat", "principalId": outsider_id},
        )
        assert response.status_code == 400

        response = await client.post(f"/v1/items/{item.id}/checkout", headers=viewer, json={"checkedOutBy": "Pat"})
        assert response.status_code == 403

        response = await client.post("/v1/items/does-not-exist/checkout", headers=scout, json={"checkedOutBy": "Pat"})
        assert response.status_code == 404

        assert await _ledger(troop_7, item.id) == []

        response = await client.post(
            f"/v1/items/{item.id}/checkout",
            headers=scout,
            json={"checked_out_by": "Pat", "principal_id": borrower_id},
        )
        assert response.status_code == 200

    entries = await _ledger(troop_7, item.id)
    assert entries[0].principal_id == borrower_id


@pytest.mark.asyncio
async def test_concurrent_checkouts_have_exactly_one_winner() -> None:
    troop = await create_test_tenant("troop-7")
    scout_a, _ = await create_test_principal(troop, role="scout")
    scout_b, _ = await create_test_principal(troop, role="scout")
    item = await create_test_item(troop)

    async def _attempt(subject_id: str, label: str):
        actor = Claims(subject_id=subject_id, tenant_id=troop.id, role=Role.SCOUT)
        async with SessionLocal() as session:
            try:
                return await circulation.checkout(
                    session,
                    troop.id,
                    item.id,
                    circulation.CheckoutRequest(checked_out_by=label),
                    actor,
                )
            except InvalidTransition as exc:
                return exc

    results = await asyncio.gather(_attempt(scout_a, "A"), _attempt(scout_b, "B"))
    winners = [result for result in results if isinstance(result, circulation.TransitionResult)]
    losers = [result for result in results if isinstance(result, InvalidTransition)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0].details == {"status": "checked_out"}

    entries = await _ledger(troop, item.id)
    assert len(entries) == 1
    assert entries[0].performed_by_label == winners[0].entry.performed_by_label
    await _assert_ledger_agrees(troop, item.id)


@pytest.mark.asyncio
async def test_repair_cycle_keeps_ledger_consistent() -> None:
    troop = await create_test_tenant("troop-7")
    _scout_id, scout = await create_test_principal(troop, role="scout")
    _leader_id, leader = await create_test_principal(troop, role="leader")
    item = await create_test_item(troop)

    async with api_client() as client:
        response = await client.put(f"/v1/items/{item.id}/status", headers=scout, json={"status": "needs_repair"})
        assert response.status_code == 403

        response = await client.post(f"/v1/items/{item.id}/checkout", headers=scout, json={"checkedOutBy": "Sam"})
        assert response.status_code == 200

        # Sending a borrowed item to repair records its return.
        response = await client.put(f"/v1/items/{item.id}/status", headers=leader, json={"status": "needs_repair"})
        assert response.status_code == 200
        assert data(response)["status"] == "needs_repair"
        await _assert_ledger_agrees(troop, item.id)
        entries = await _ledger(troop, item.id)
        assert [entry.action for entry in entries] == [TransactionAction.CHECK_OUT, TransactionAction.CHECK_IN]
        assert entries[-1].notes == circulation.REPAIR_CHECKIN_NOTE

        response = await client.post(f"/v1/items/{item.id}/checkout", headers=scout, json={"checkedOutBy": "Sam"})
        assert response.status_code == 409
        response = await client.post(f"/v1/items/{item.id}/checkin", headers=scout, json={})
        assert response.status_code == 409

        response = await client.put(f"/v1/items/{item.id}/status", headers=leader, json={"status": "checked_out"})
        assert response.status_code == 409
        assert error_code(response) == "INVALID_TRANSITION"

        response = await client.put(f"/v1/items/{item.id}/status", headers=leader, json={"status": "available"})
        assert response.status_code == 200
        assert data(response)["status"] == "available"

        # available -> needs_repair appends nothing.
        response = await client.put(f"/v1/items/{item.id}/status", headers=leader, json={"status": "needs_repair"})
        assert response.status_code == 200
        assert len(await _ledger(troop, item.id)) == 2

        response = await client.put(f"/v1/items/{item.id}/status", headers=leader, json={"status": "needs_repair"})
        assert response.status_code == 409


@pytest.mark.asyncio
async def test_storage_failure_rolls_back_the_whole_unit(monkeypatch: pytest.MonkeyPatch) -> None:
    troop = await create_test_tenant("troop-7")
    scout_id, _ = await create_test_principal(troop, role="scout")
    item = await create_test_item(troop)
    actor = Claims(subject_id=scout_id, tenant_id=troop.id, role=Role.SCOUT)

    async def _broken_append(*_args, **_kwargs):
        raise OperationalError("INSERT INTO transactions", {}, Exception("disk I/O error"))

    monkeypatch.setattr(ledger_repo, "append_entry", _broken_append)
    async with SessionLocal() as session:
        with pytest.raises(InternalError):
            await circulation.checkout(
                session,
                troop.id,
                item.id,
                circulation.CheckoutRequest(checked_out_by="Sam"),
                actor,
            )

    async with SessionLocal() as session:
        current = await items_repo.get_item(session, troop.id, item.id)
    assert current.status is ItemStatus.AVAILABLE
    assert await _ledger(troop, item.id) == []


@pytest.mark.asyncio
async def test_checkout_of_foreign_item_is_not_found() -> None:
    troop_7 = await create_test_tenant("troop-7")
    troop_9 = await create_test_tenant("troop-9")
    scout_id, _ = await create_test_principal(troop_9, role="scout")
    item = await create_test_item(troop_7)
    actor = Claims(subject_id=scout_id, tenant_id=troop_9.id, role=Role.SCOUT)

    async with SessionLocal() as session:
        with pytest.raises(NotFound):
            await circulation.checkout(
                session,
                troop_9.id,
                item.id,
                circulation.CheckoutRequest(checked_out_by="Sam"),
                actor,
            )
    assert await _ledger(troop_7, item.id) == []


@pytest.mark.asyncio
async def test_idempotent_checkout_replays_stored_response() -> None:
    troop = await create_test_tenant("troop-7")
    _scout_id, scout = await create_test_principal(troop, role="scout")
    item = await create_test_item(troop)
    headers = {**scout, "Idempotency-Key": "checkout-1"}

    async with api_client() as client:
        first = await client.post(f"/v1/items/{item.id}/checkout", headers=headers, json={"checkedOutBy": "Sam"})
        assert first.status_code == 200

        replay = await client.post(f"/v1/items/{item.id}/checkout", headers=headers, json={"checkedOutBy": "Sam"})
        assert replay.status_code == 200
        assert replay.headers["Idempotency-Replayed"] == "true"
        assert replay.json() == first.json()

        conflict = await client.post(f"/v1/items/{item.id}/checkout", headers=headers, json={"checkedOutBy": "Alex"})
        assert conflict.status_code == 409
        assert error_code(conflict) == "IDEMPOTENCY_KEY_CONFLICT"

    assert len(await _ledger(troop, item.id)) == 1


@pytest.mark.asyncio
async def test_deleting_item_removes_its_ledger() -> None:
    troop = await create_test_tenant("troop-7")
    _scout_id, scout = await create_test_principal(troop, role="scout")
    _admin_id, admin = await create_test_principal(troop, role="admin")
    item = await create_test_item(troop)

    async with api_client() as client:
        response = await client.post(f"/v1/items/{item.id}/checkout", headers=scout, json={"checkedOutBy": "Sam"})
        assert response.status_code == 200
        response = await client.delete(f"/v1/items/{item.id}", headers=admin)
        assert response.status_code == 204

    assert await _ledger(troop, item.id) == []


@pytest.mark.asyncio
async def test_rejected_transitions_report_current_status() -> None:
    troop = await create_test_tenant("troop-7")
    scout_id, _ = await create_test_principal(troop, role="scout")
    item = await create_test_item(troop)
    actor = Claims(subject_id=scout_id, tenant_id=troop.id, role=Role.SCOUT)

    async with SessionLocal() as session:
        with pytest.raises(InvalidTransition) as excinfo:
            await circulation.checkin(session, troop.id, item.id, circulation.CheckinRequest(), actor)
    assert excinfo.value.details == {"status": "available"}
    assert excinfo.value.message == "Item is not checked out (status: available)"

    async with SessionLocal() as session:
        await circulation.checkout(
            session, troop.id, item.id, circulation.CheckoutRequest(checked_out_by="Sam"), actor
        )

    async with SessionLocal() as session:
        with pytest.raises(InvalidTransition) as excinfo:
            await circulation.checkout(
                session, troop.id, item.id, circulation.CheckoutRequest(checked_out_by="Alex"), actor
            )
    assert excinfo.value.details == {"status": "checked_out"}
    assert len(await _ledger(troop, item.id)) == 1


@pytest.mark.asyncio
async def test_checkout_links_borrower_only_when_named() -> None:
    troop = await create_test_tenant("troop-7")
    leader_id, leader = await create_test_principal(troop, role="leader")
    borrower_id, _ = await create_test_principal(troop, role="scout")
    walk_up = await create_test_item(troop, name="Lantern")
    named = await create_test_item(troop, name="Stove")

    async with api_client() as client:
        response = await client.post(
            f"/v1/items/{walk_up.id}/checkout",
            headers=leader,
            json={"checkedOutBy": "Visitor"},
        )
        assert response.status_code == 200
        response = await client.post(
            f"/v1/items/{named.id}/checkout",
            headers=leader,
            json={"checkedOutBy": "Pat", "principalId": borrower_id},
        )
        assert response.status_code == 200
        response = await client.post(f"/v1/items/{walk_up.id}/checkin", headers=leader, json={})
        assert response.status_code == 200

    walk_up_entries = await _ledger(troop, walk_up.id)
    assert walk_up_entries[0].principal_id is None
    assert walk_up_entries[0].performed_by_label == "Visitor"
    # The check-in is recorded against whoever returned the item.
    assert walk_up_entries[1].principal_id == leader_id
    assert (await _ledger(troop, named.id))[0].principal_id == borrower_id
