"""
HTTP API tests through the FastAPI test client.

Database, ledger, cipher and notifier dependencies are overridden with the
test fixtures; authentication runs for real against SECRET_KEY.
"""

import pytest
from fastapi.testclient import TestClient

from inheritx.core.auth import ROLE_ADMIN, create_access_token
from inheritx.core.database import get_db
from inheritx.core.errors import ALREADY_CLAIMED_MESSAGE, INVALID_CLAIM_DETAILS, NOT_YET_CLAIMABLE
from inheritx.main import create_app
from inheritx.modules.claims.cipher import get_cipher
from inheritx.modules.ledger.client import get_ledger_client
from inheritx.shared.services.notifications import get_notification_service


OWNER = "0xOwner000000000000000000000000000000000001"


def _auth(subject=OWNER, role="owner"):
    return {"Authorization": f"Bearer {create_access_token(subject, role=role)}"}


@pytest.fixture
def client(session_factory, db, ledger, cipher, notifier):
    app = create_app(enable_scheduler=False)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ledger_client] = lambda: ledger
    app.dependency_overrides[get_cipher] = lambda: cipher
    app.dependency_overrides[get_notification_service] = lambda: notifier
    return TestClient(app)


def _plan_body(**overrides):
    body = {
        "name": "Family plan",
        "description": "For the kids",
        "asset_type": "ERC20_TOKEN1",
        "asset_amount": "1",
        "asset_amount_wei": "1000000",
        "distribution_method": "LUMP_SUM",
        "transfer_date": "2020-01-01T00:00:00Z",
        "owner_email": "owner@example.com",
        "beneficiaries": [
            {"name": "Alice Smith", "email": "alice@example.com", "relationship": "Daughter",
             "allocated_percentage": 6000, "claim_code": "ALICE1"},
            {"name": "Bob Smith", "email": "bob@example.com", "relationship": "Son",
             "allocated_percentage": 4000, "claim_code": "BOB222"},
        ],
    }
    body.update(overrides)
    return body


def _create(client, **overrides):
    response = client.post("/api/v1/plans", json=_plan_body(**overrides), headers=_auth())
    assert response.status_code == 201, response.text
    return response.json()


def _verify_body(plan_id, **overrides):
    body = {
        "plan_id": plan_id,
        "claim_code": "BOB222",
        "beneficiary_name": "Bob Smith",
        "beneficiary_email": "bob@example.com",
        "beneficiary_relationship": "Son",
    }
    body.update(overrides)
    return body


# ============================================================================
# Health and auth
# ============================================================================

def test_health(client):
    health = client.get("/api/health").json()
    assert health["status"] == "healthy"
    assert health["scheduler_running"] is False


def test_owner_routes_require_token(client):
    assert client.post("/api/v1/plans", json=_plan_body()).status_code == 401
    assert client.get("/api/v1/plans", headers={"Authorization": "Bearer nonsense"}).status_code == 401


def test_admin_token_cannot_act_as_owner(client):
    response = client.get("/api/v1/plans", headers=_auth("admin", role=ROLE_ADMIN))
    assert response.status_code == 403


def test_admin_login(client):
    assert client.post("/api/v1/auth/admin/login", json={"password": "wrong"}).status_code == 401

    response = client.post("/api/v1/auth/admin/login", json={"password": "test-admin-password"})
    assert response.status_code == 200
    token = response.json()["access_token"]

    verify = client.get("/api/v1/auth/verify", headers={"Authorization": f"Bearer {token}"})
    assert verify.json()["role"] == ROLE_ADMIN


# ============================================================================
# Plans
# ============================================================================

def test_create_plan_returns_codes_once(client, ledger, notifier):
    created = _create(client)

    assert created["claim_codes"] == [
        {"beneficiary_index": 1, "claim_code": "ALICE1"},
        {"beneficiary_index": 2, "claim_code": "BOB222"},
    ]
    plan = created["plan"]
    assert plan["status"] == "ACTIVE"
    assert plan["escrow"]["fee_amount"] == "50000"
    assert ledger.locks == [(plan["id"], "ERC20_TOKEN1", 1_050_000)]
    notifier.send_plan_created.assert_called_once()

    details = client.get(f"/api/v1/plans/{plan['id']}", headers=_auth()).json()
    assert "claim_codes" not in details
    assert "ALICE1" not in str(details)


def test_invalid_percentages_rejected_with_public_message(client):
    body = _plan_body()
    body["beneficiaries"][1]["allocated_percentage"] = 3999
    response = client.post("/api/v1/plans", json=body, headers=_auth())
    assert response.status_code == 400
    assert "10000" in response.json()["detail"]


def test_foreign_plan_looks_missing(client):
    plan_id = _create(client)["plan"]["id"]
    response = client.get(f"/api/v1/plans/{plan_id}", headers=_auth("0xsomeone-else"))
    assert response.status_code == 404
    assert response.json() == {"detail": "Plan not found"}


def test_list_plans_filters_by_owner(client):
    _create(client)
    assert client.get("/api/v1/plans", headers=_auth()).json()["count"] == 1
    assert client.get("/api/v1/plans", headers=_auth("0xother")).json()["count"] == 0


def test_owner_recovers_claim_codes(client):
    plan_id = _create(client)["plan"]["id"]
    response = client.get(f"/api/v1/plans/{plan_id}/claim-codes", headers=_auth())
    assert [c["claim_code"] for c in response.json()["claim_codes"]] == ["ALICE1", "BOB222"]


def test_pause_then_cancel(client, ledger):
    plan_id = _create(client)["plan"]["id"]
    url = f"/api/v1/plans/{plan_id}/status"

    assert client.put(url, json={"action": "pause"}, headers=_auth()).json()["status"] == "PAUSED"
    assert client.put(url, json={"action": "pause"}, headers=_auth()).status_code == 409

    cancelled = client.put(url, json={"action": "cancel"}, headers=_auth()).json()
    assert cancelled["status"] == "CANCELLED"
    assert cancelled["escrow"]["status"] == "REFUNDED"
    assert ledger.refunds == [plan_id]


def test_attach_contract_ids(client):
    plan_id = _create(client)["plan"]["id"]
    response = client.put(
        f"/api/v1/plans/{plan_id}/contract",
        json={"global_plan_id": 42, "user_plan_id": 3, "tx_hash": "0xfeed"},
        headers=_auth(),
    )
    assert response.status_code == 200
    assert response.json()["global_plan_id"] == 42

    info = client.get("/api/v1/claims/global/42").json()
    assert info["plan_id"] == plan_id
    assert info["is_claimable"] is True
    assert client.get("/api/v1/claims/global/43").status_code == 404


def test_check_in_requires_proof_of_life(client):
    plan_id = _create(client)["plan"]["id"]
    assert client.post(f"/api/v1/plans/{plan_id}/check-in", headers=_auth()).status_code == 400


# ============================================================================
# Claims
# ============================================================================

def test_verify_and_complete_claim(client):
    plan_id = _create(client)["plan"]["id"]

    verified = client.post("/api/v1/claims/verify", json=_verify_body(plan_id))
    assert verified.status_code == 200
    assert verified.json()["verified"] is True
    assert verified.json()["beneficiary_index"] == 2
    assert verified.json()["allocated_amount"] == "400000"

    completed = client.post("/api/v1/claims/complete", json={
        "plan_id": plan_id, "beneficiary_index": 2, "claimer_address": "0xbob",
        "tx_hash": "0xtx", "claimed_amount": "400000",
    })
    assert completed.json()["all_beneficiaries_claimed"] is False

    replay = client.post("/api/v1/claims/verify", json=_verify_body(plan_id))
    assert replay.status_code == 400
    assert replay.json()["detail"] == ALREADY_CLAIMED_MESSAGE


def test_wrong_details_get_generic_error(client):
    plan_id = _create(client)["plan"]["id"]
    response = client.post("/api/v1/claims/verify", json=_verify_body(plan_id, beneficiary_relationship="Nephew"))
    assert response.status_code == 400
    assert response.json()["detail"] == INVALID_CLAIM_DETAILS


def test_future_plan_not_yet_claimable(client):
    plan_id = _create(client, transfer_date="2099-01-01T00:00:00Z")["plan"]["id"]

    response = client.post("/api/v1/claims/verify", json=_verify_body(plan_id))
    assert response.status_code == 400
    assert response.json()["detail"] == NOT_YET_CLAIMABLE

    info = client.get(f"/api/v1/claims/plan/{plan_id}").json()
    assert info["is_claimable"] is False
    assert info["seconds_until_claimable"] > 0


def test_execute_relays_release(client, ledger):
    plan_id = _create(client)["plan"]["id"]
    response = client.post("/api/v1/claims/execute", json={**_verify_body(plan_id), "claimer_address": "0xbob"})
    assert response.status_code == 200
    assert response.json()["tx_hash"].startswith("0x")
    assert ledger.releases == [(plan_id, 2, 400_000)]


def test_execute_ledger_failure_is_502(client, ledger):
    plan_id = _create(client)["plan"]["id"]
    ledger.fail_next("release")
    response = client.post("/api/v1/claims/execute", json={**_verify_body(plan_id), "claimer_address": "0xbob"})
    assert response.status_code == 502


def test_my_claims(client):
    _create(client)
    response = client.get("/api/v1/claims/my-claims", params={"email": "bob@example.com"})
    claims = response.json()["claims"]
    assert len(claims) == 1
    assert claims[0]["allocated_amount"] == "400000"
    assert claims[0]["is_claimable"] is True


# ============================================================================
# Proof of life and admin
# ============================================================================

def test_confirm_unknown_token(client):
    response = client.post("/api/v1/proof-of-life/confirm", json={"token": "missing"})
    assert response.status_code == 400


def test_admin_routes_require_admin(client):
    assert client.get("/api/v1/admin/stats", headers=_auth()).status_code == 403


def test_admin_stats_and_activity(client):
    _create(client)
    admin = _auth("admin", role=ROLE_ADMIN)

    stats = client.get("/api/v1/admin/stats", headers=admin).json()
    assert stats["plans"]["total"] == 1
    assert stats["claims"]["outstanding"] == 2

    activity = client.get("/api/v1/admin/activity", headers=admin, params={"activity_type": "PLAN_CREATED"}).json()
    assert activity["count"] == 1


def test_admin_updates_creation_fee(client):
    admin = _auth("admin", role=ROLE_ADMIN)

    bad = client.put("/api/v1/admin/settings/creation_fee_bps", json={"value": "20000"}, headers=admin)
    assert bad.status_code == 400

    good = client.put("/api/v1/admin/settings/creation_fee_bps", json={"value": "100"}, headers=admin)
    assert good.status_code == 200
    assert good.json()["value_type"] == "int"

    plan = _create(client)["plan"]
    assert plan["escrow"]["fee_bps"] == 100


def test_admin_retry_unknown_distribution(client):
    response = client.post("/api/v1/admin/distributions/999/retry", headers=_auth("admin", role=ROLE_ADMIN))
    assert response.status_code == 404
