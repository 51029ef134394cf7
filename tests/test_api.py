"""
Ops API endpoints over a temporary store with mock collaborators.
"""

from datetime import timedelta

import pytest
from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from conftest import NOW, make_record
from pay2ping.api import main
from pay2ping.core import heartbeat
from pay2ping.core.errors import StoreUnavailableError
from pay2ping.core.reconciler import Reconciler
from pay2ping.core.schema import StakeStatus
from pay2ping.services.mock import MockAttendanceVerifier, MockDisbursementClient

STAKE = {
    "escrow_id": "E1",
    "initializer_id": "I1",
    "beneficiary_id": "B1",
    "vault_id": "V1",
    "stake_amount": 10,
    "attendee_contact": "a@x.com",
    "meeting_id": "M1",
    "meeting_end_time": "2024-05-01T11:50:00Z",
}


@pytest.fixture
def reconciler(store):
    return Reconciler(store, MockAttendanceVerifier(reports={"M1": ["A@X.COM"]}), MockDisbursementClient(),
                      owner="api-test", clock=lambda: NOW)


@pytest.fixture
def client(store, reconciler):
    """Create test client with the store and reconciler overridden."""
    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_reconciler] = lambda: reconciler
    heartbeat.tasks.clear()
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


def park(store, escrow_id, status):
    store.claim(escrow_id, "w", NOW, timedelta(minutes=10))
    store.update_status(escrow_id, status, owner="w", detail="parked by test")


class TestHealth:
    def test_health(self, client, store):
        """Test health reports store state and per-status counts."""
        store.append(make_record())

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["db_health"] is True
        assert data["stake_counts"] == {"scheduled": 1}
        assert data["heartbeat"] == "disabled"


class TestStakes:
    """Registration and inspection."""

    def test_create_stake(self, client):
        """Test registering a stake."""
        response = client.post("/stakes", json=STAKE)

        assert response.status_code == 201
        data = response.json()
        assert data["escrow_id"] == "E1"
        assert data["status"] == "scheduled"
        assert data["meeting_end_time"] == "2024-05-01T11:50:00Z"
        assert "lease_owner" not in data

    def test_create_duplicate(self, client):
        """Test a second registration of the same escrow is refused."""
        client.post("/stakes", json=STAKE)
        response = client.post("/stakes", json=STAKE)
        assert response.status_code == 409

    @pytest.mark.parametrize("field,value", [
        ("stake_amount", 0),
        ("escrow_id", "  "),
        ("meeting_end_time", "yesterday-ish"),
    ])
    def test_create_invalid(self, client, field, value):
        """Test malformed stakes are rejected."""
        response = client.post("/stakes", json={**STAKE, field: value})
        assert response.status_code == 422

    def test_get_stake_with_history(self, client):
        """Test a record is returned with its transitions."""
        client.post("/stakes", json=STAKE)

        response = client.get("/stakes/E1")

        assert response.status_code == 200
        data = response.json()
        assert data["stake"]["escrow_id"] == "E1"
        assert [e["to_status"] for e in data["history"]] == ["scheduled"]

    def test_get_missing_stake(self, client):
        """Test unknown ids return 404."""
        assert client.get("/stakes/nope").status_code == 404

    def test_list_by_status(self, client, store):
        """Test listing filtered by status."""
        store.append(make_record("a"))
        store.append(make_record("b"))
        park(store, "b", StakeStatus.ERROR_CHECKING)

        response = client.get("/stakes", params={"status": "error_checking"})

        assert response.status_code == 200
        assert [s["escrow_id"] for s in response.json()["items"]] == ["b"]
        assert client.get("/stakes").json()["count"] == 2

    def test_list_unknown_status(self, client):
        """Test an unknown status filter is a client error."""
        assert client.get("/stakes", params={"status": "lost"}).status_code == 400


class TestReviewQueue:
    """Operator endpoints."""

    def test_review_route_not_shadowed(self, client, store):
        """Test /stakes/review is not treated as an escrow id."""
        store.append(make_record("parked"))
        park(store, "parked", StakeStatus.NEEDS_REVIEW)

        response = client.get("/stakes/review")

        assert response.status_code == 200
        assert [s["escrow_id"] for s in response.json()["items"]] == ["parked"]

    def test_correct_and_requeue(self, client, store):
        """Test the fix-and-retry flow."""
        store.append(make_record(vault_id=None))
        park(store, "esc-1", StakeStatus.ERROR_RELEASE_MISSING_DATA)

        response = client.patch("/stakes/esc-1", json={"vault_id": "V9"})
        assert response.status_code == 200
        assert response.json()["vault_id"] == "V9"

        response = client.post("/stakes/esc-1/requeue")
        assert response.status_code == 200
        assert response.json()["status"] == "ended"
        assert response.json()["attempts"] == 0

    def test_correct_not_allowed_while_active(self, client, store):
        """Test a record still owned by the loop cannot be edited."""
        store.append(make_record())
        response = client.patch("/stakes/esc-1", json={"vault_id": "V9"})
        assert response.status_code == 409

    def test_correct_empty_body(self, client, store):
        """Test a correction with nothing to change is rejected."""
        store.append(make_record())
        park(store, "esc-1", StakeStatus.NEEDS_REVIEW)
        assert client.patch("/stakes/esc-1", json={}).status_code == 422

    def test_requeue_missing(self, client):
        """Test requeue of an unknown record."""
        assert client.post("/stakes/nope/requeue").status_code == 404

    def test_resolve_unknown_release(self, client, store):
        """Test closing an ambiguous release with the ledger reference."""
        store.append(make_record())
        park(store, "esc-1", StakeStatus.ERROR_RELEASE_UNKNOWN)

        response = client.post("/stakes/esc-1/resolve", json={"status": "refunded", "confirmation_ref": "sig-ledger"})

        assert response.status_code == 200
        assert response.json()["status"] == "refunded"
        assert response.json()["last_confirmation_ref"] == "sig-ledger"

    def test_resolve_terminal_refused(self, client, store):
        """Test a finished record cannot be resolved again."""
        store.append(make_record())
        park(store, "esc-1", StakeStatus.CLAIMED)

        response = client.post("/stakes/esc-1/resolve", json={"status": "refunded", "confirmation_ref": "sig"})
        assert response.status_code == 409

    def test_resolve_rejects_non_terminal_status(self, client, store):
        """Test resolution only accepts refunded or claimed."""
        store.append(make_record())
        park(store, "esc-1", StakeStatus.ERROR_RELEASE_UNKNOWN)

        response = client.post("/stakes/esc-1/resolve", json={"status": "ended", "confirmation_ref": "sig"})
        assert response.status_code == 422


class TestReconcileEndpoints:
    """Status and manual ticks."""

    def test_status_before_first_tick(self, client):
        """Test status without a completed tick."""
        response = client.get("/reconcile/status")
        assert response.status_code == 200
        assert response.json()["last_report"] is None
        assert response.json()["heartbeat"]["status"] == "disabled"

    def test_manual_tick_requires_debug(self, client, monkeypatch):
        """Test manual ticks are refused outside debug mode."""
        monkeypatch.setenv("DEBUG", "false")
        assert client.post("/reconcile/run").status_code == 403

    def test_manual_tick(self, client, store, monkeypatch):
        """Test a manual tick reconciles and reports."""
        monkeypatch.setenv("DEBUG", "true")
        client.post("/stakes", json=STAKE)

        response = client.post("/reconcile/run")

        assert response.status_code == 200
        data = response.json()
        assert data["selected"] == 1
        assert data["refunded"] == 1
        assert store.get("E1").status == StakeStatus.REFUNDED

        status = client.get("/reconcile/status").json()
        assert status["last_report"]["refunded"] == 1


class TestStoreFailures:
    def test_unavailable_store_returns_503(self, client):
        """Test a store outage surfaces as 503 rather than a crash."""
        broken = MagicMock()
        broken.list_records.side_effect = StoreUnavailableError("database is locked")
        main.app.dependency_overrides[main.get_store] = lambda: broken

        response = client.get("/stakes")

        assert response.status_code == 503
        assert response.json()["detail"] == "Stake store unavailable"
