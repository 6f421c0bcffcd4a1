from __future__ import annotations

import pytest

from quartermaster.persistence.db import SessionLocal
from quartermaster.persistence.repos import ledger as ledger_repo
from quartermaster.tests.utils.auth import (
    TEST_PASSWORD,
    auth_headers,
    create_test_item,
    create_test_principal,
    create_test_tenant,
)
from quartermaster.tests.utils.client import api_client, data, error_code


@pytest.mark.asyncio
async def test_user_administration_by_role() -> None:
    troop = await create_test_tenant("troop-7")
    _admin_id, admin = await create_test_principal(troop, role="admin")
    _leader_id, leader = await create_test_principal(troop, role="leader")
    _scout_id, scout = await create_test_principal(troop, role="scout")
    new_user = {"username": "casey", "email": "casey@troop7.org", "password": "long-enough-pw", "role": "scout"}

    async with api_client() as client:
        response = await client.get("/v1/users", headers=leader)
        assert response.status_code == 200
        assert len(data(response)) == 3
        assert all("credential_hash" not in user for user in data(response))

        response = await client.get("/v1/users", headers=scout)
        assert response.status_code == 403

        response = await client.post("/v1/users", headers=leader, json=new_user)
        assert response.status_code == 403

        response = await client.post("/v1/users", headers=admin, json=new_user)
        assert response.status_code == 201
        casey = data(response)
        assert casey["role"] == "scout"

        response = await client.post("/v1/users", headers=admin, json={**new_user, "email": "CASEY@troop7.org"})
        assert response.status_code == 409
        assert error_code(response) == "CONFLICT"

        response = await client.put(f"/v1/users/{casey['id']}", headers=admin, json={"role": "leader"})
        assert response.status_code == 200
        assert data(response)["role"] == "leader"

        response = await client.get(f"/v1/users/{casey['id']}", headers=leader)
        assert data(response)["role"] == "leader"

        response = await client.put(f"/v1/users/{casey['id']}", headers=admin, json={"role": "overlord"})
        assert response.status_code == 400

        response = await client.delete(f"/v1/users/{casey['id']}", headers=admin)
        assert response.status_code == 204
        response = await client.get(f"/v1/users/{casey['id']}", headers=admin)
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_admin_cannot_demote_or_delete_self() -> None:
    troop = await create_test_tenant("troop-7")
    admin_id, admin = await create_test_principal(troop, role="admin")

    async with api_client() as client:
        response = await client.put(f"/v1/users/{admin_id}", headers=admin, json={"role": "leader"})
        assert response.status_code == 403
        assert error_code(response) == "FORBIDDEN"

        response = await client.delete(f"/v1/users/{admin_id}", headers=admin)
        assert response.status_code == 403

        # Renaming oneself is fine.
        response = await client.put(f"/v1/users/{admin_id}", headers=admin, json={"username": "chief", "role": "admin"})
        assert response.status_code == 200
        assert data(response)["username"] == "chief"


@pytest.mark.asyncio
async def test_users_of_other_troops_are_not_found() -> None:
    troop_7 = await create_test_tenant("troop-7")
    troop_9 = await create_test_tenant("troop-9")
    _admin_id, admin_7 = await create_test_principal(troop_7, role="admin")
    outsider_id, _outsider = await create_test_principal(troop_9, role="scout")

    async with api_client() as client:
        response = await client.get(f"/v1/users/{outsider_id}", headers=admin_7)
        assert response.status_code == 404
        response = await client.put(f"/v1/users/{outsider_id}", headers=admin_7, json={"role": "admin"})
        assert response.status_code == 404
        response = await client.delete(f"/v1/users/{outsider_id}", headers=admin_7)
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_change_own_password() -> None:
    troop = await create_test_tenant("troop-7")
    _scout_id, scout = await create_test_principal(troop, role="scout", email="sam@troop7.org")

    async with api_client() as client:
        response = await client.put(
            "/v1/users/me/password",
            headers=scout,
            json={"currentPassword": "not-my-password", "newPassword": "brand-new-secret"},
        )
        assert response.status_code == 400

        response = await client.put(
            "/v1/users/me/password",
            headers=scout,
            json={"currentPassword": TEST_PASSWORD, "newPassword": "tiny"},
        )
        assert response.status_code == 400

        response = await client.put(
            "/v1/users/me/password",
            headers=scout,
            json={"currentPassword": TEST_PASSWORD, "newPassword": "brand-new-secret"},
        )
        assert response.status_code == 200
        assert data(response) == {"changed": True}

        response = await client.post(
            "/v1/auth/login",
            headers=auth_headers(troop),
            json={"email": "sam@troop7.org", "password": "brand-new-secret"},
        )
        assert response.status_code == 200

        response = await client.post(
            "/v1/auth/login",
            headers=auth_headers(troop),
            json={"email": "sam@troop7.org", "password": TEST_PASSWORD},
        )
        assert response.status_code == 401


@pytest.mark.asyncio
async def test_deleting_a_user_keeps_their_ledger_history() -> None:
    troop = await create_test_tenant("troop-7")
    _admin_id, admin = await create_test_principal(troop, role="admin")
    scout_id, scout = await create_test_principal(troop, role="scout")
    item = await create_test_item(troop)

    async with api_client() as client:
        response = await client.post(
            f"/v1/items/{item.id}/checkout",
            headers=scout,
            json={"checkedOutBy": "Sam", "principalId": scout_id},
        )
        assert response.status_code == 200
        response = await client.delete(f"/v1/users/{scout_id}", headers=admin)
        assert response.status_code == 204

        response = await client.get("/v1/items", headers=scout)
        assert response.status_code == 401

    async with SessionLocal() as session:
        entries = await ledger_repo.list_for_item(session, troop.id, item.id)
    assert len(entries) == 1
    assert entries[0].principal_id is None
    assert entries[0].performed_by_label == "Sam"
