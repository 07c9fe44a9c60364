"""
Tests for the dashboard capsule endpoints.
"""

import pytest
from fastapi.testclient import TestClient
from solders.pubkey import Pubkey

from capsule_service.dependencies import get_enhanced_history, get_ledger_client, get_settings
from capsule_service.main import app
from capsule_service.services.ledger.rpc_client import TransientRpcError


@pytest.fixture
def client(fake_ledger, test_settings):
    app.dependency_overrides[get_ledger_client] = lambda: fake_ledger
    app.dependency_overrides[get_enhanced_history] = lambda: None
    app.dependency_overrides[get_settings] = lambda: test_settings
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_list_capsules(client, fake_ledger, make_capsule):
    address = fake_ledger.add_capsule(make_capsule(last_activity=0))

    response = client.get("/api/capsules")

    assert response.status_code == 200
    body = response.json()
    assert [c["capsuleAddress"] for c in body["capsules"]] == [address]
    assert body["capsules"][0]["status"] == "Expired"
    assert body["capsules"][0]["isActive"] is True
    assert body["summary"]["expired"] == 1
    assert body["summary"]["successRate"] == 0.0
    assert body["truncated"] is False


def test_list_capsules_rpc_failure(client, fake_ledger):
    async def broken(program_id):
        raise TransientRpcError("getProgramAccounts timed out", method="getProgramAccounts")

    fake_ledger.get_program_accounts = broken

    response = client.get("/api/capsules")

    assert response.status_code == 503


def test_get_capsule_detail(client, fake_ledger, make_capsule, test_settings):
    address = fake_ledger.add_capsule(
        make_capsule(last_activity=0), owner=test_settings.DELEGATION_PROGRAM_ID
    )

    response = client.get(f"/api/capsules/{address}")

    assert response.status_code == 200
    body = response.json()
    assert body["capsule"]["capsuleAddress"] == address
    assert body["accountOwner"] == test_settings.DELEGATION_PROGRAM_ID
    assert body["delegated"] is True


def test_get_capsule_not_found(client):
    response = client.get(f"/api/capsules/{Pubkey.new_unique()}")

    assert response.status_code == 404


def test_get_capsule_invalid_address(client):
    response = client.get("/api/capsules/not-an-address")

    assert response.status_code == 422


def test_get_capsule_malformed_record(client, fake_ledger):
    address = str(Pubkey.new_unique())
    fake_ledger.add_raw_account(address, b"\x00" * 20)

    response = client.get(f"/api/capsules/{address}")

    assert response.status_code == 422
