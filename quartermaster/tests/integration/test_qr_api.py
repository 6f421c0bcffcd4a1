from __future__ import annotations

import json

import pytest

from quartermaster.persistence.db import SessionLocal
from quartermaster.persistence.repos import items as items_repo
from quartermaster.services import qr
from quartermaster.tests.utils.auth import create_test_item, create_test_principal, create_test_tenant
from quartermaster.tests.utils.client import api_client, data, error_code


@pytest.mark.asyncio
async def test_mint_and_scan_within_troop() -> None:
    troop = await create_test_tenant("troop-7")
    _viewer_id, viewer = await create_test_principal(troop, role="viewer")
    _scout_id, scout = await create_test_principal(troop, role="scout")
    item = await create_test_item(troop, name="Tent A")

    async with api_client() as client:
        response = await client.get(f"/v1/qr/{item.id}", headers=viewer)
        assert response.status_code == 200
        minted = data(response)
        assert minted["item_id"] == item.id
        wire = json.loads(minted["qr_data"])
        assert wire["type"] == "item-ref"
        assert wire["itemId"] == item.id
        assert wire["tenantSlug"] == "troop-7"

        response = await client.post("/v1/qr/scan", headers=scout, json={"qrData": minted["qr_data"]})
        assert response.status_code == 200
        assert data(response)["id"] == item.id
        assert data(response)["name"] == "Tent A"

        # Viewers may print labels but not scan for circulation.
        response = await client.post("/v1/qr/scan", headers=viewer, json={"qrData": minted["qr_data"]})
        assert response.status_code == 403


@pytest.mark.asyncio
async def test_scan_from_other_troop_is_a_tenant_mismatch() -> None:
    troop_7 = await create_test_tenant("troop-7")
    troop_9 = await create_test_tenant("troop-9")
    _scout_id, scout_9 = await create_test_principal(troop_9, role="scout")
    item = await create_test_item(troop_7)
    payload = qr.encode(item.id, "troop-7")

    async with api_client() as client:
        response = await client.post("/v1/qr/scan", headers=scout_9, json={"qrData": payload})
        assert response.status_code == 403
        assert error_code(response) == "TENANT_MISMATCH"

        # Same answer whether or not the referenced item exists.
        ghost = qr.encode("no-such-item", "troop-7")
        response = await client.post("/v1/qr/scan", headers=scout_9, json={"qrData": ghost})
        assert response.status_code == 403
        assert error_code(response) == "TENANT_MISMATCH"

        response = await client.get(f"/v1/qr/{item.id}", headers=scout_9)
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_scan_rejects_malformed_and_stale_payloads() -> None:
    troop = await create_test_tenant("troop-7")
    _scout_id, scout = await create_test_principal(troop, role="scout")
    item = await create_test_item(troop)
    payload = qr.encode(item.id, "troop-7")

    async with api_client() as client:
        response = await client.post("/v1/qr/scan", headers=scout, json={"qrData": "garbage"})
        assert response.status_code == 400
        assert error_code(response) == "MALFORMED_PAYLOAD"

        response = await client.post("/v1/qr/scan", headers=scout, json={"qrData": '{"type":"item-ref"}'})
        assert response.status_code == 400

        response = await client.post("/v1/qr/scan", headers=scout, json={})
        assert response.status_code == 400
        assert error_code(response) == "VALIDATION_FAILED"

        async with SessionLocal() as session:
            await items_repo.delete_item(session, troop.id, item.id)
            await session.commit()

        response = await client.post("/v1/qr/scan", headers=scout, json={"qrData": payload})
        assert response.status_code == 404
        assert error_code(response) == "NOT_FOUND"
