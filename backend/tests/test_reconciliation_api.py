"""
API Tests for the reconciliation router

Uses FastAPI's TestClient with the services swapped for ones backed by the
in-memory repository.

Run with: pytest tests/test_reconciliation_api.py -v
"""

import pytest
from datetime import date

from fastapi import FastAPI
from fastapi.testclient import TestClient

from config import get_settings
from reconciliation.endpoints.reconciliation_api import (
    get_reconciliation_service,
    get_repair_service,
    router,
)
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.repair_service import RepairService
from reconciliation.services.repository import RepositoryError
from helpers import FakeRepository, make_invoice, make_settings, make_transaction, make_writer

API_KEY = "test-internal-key"
HEADERS = {"X-Internal-Api-Key": API_KEY}


@pytest.fixture
def repo():
    return FakeRepository(
        [
            make_transaction("t1", amount="250.00", order_id="abc1234-5"),
            make_transaction("b1", source="bankinter-eur", amount="900.00", day=date(2025, 3, 20),
                             reconciled=True, disbursement_date="2025-03-01", match_type="disbursement"),
        ],
        [make_invoice("i1", "250.00", order_id="abc1234")],
    )


@pytest.fixture
def settings():
    return make_settings(INTERNAL_API_KEY=API_KEY)


@pytest.fixture
def client(repo, settings):
    app = FastAPI()
    app.include_router(router, prefix="/api")
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_reconciliation_service] = lambda: ReconciliationService(
        settings=settings, repository=repo, writer=make_writer(repo)
    )
    app.dependency_overrides[get_repair_service] = lambda: RepairService(
        settings=settings, repository=repo, writer=make_writer(repo)
    )
    return TestClient(app)


class TestPublicEndpoints:

    def test_status(self, client):
        response = client.get("/api/reconciliation/status")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "operational"
        assert "bankinter-eur" in data["sources_enabled"]

    def test_sources(self, client):
        response = client.get("/api/reconciliation/sources")
        assert response.status_code == 200
        kinds = {s["source"]: s["kind"] for s in response.json()["sources"]}
        assert kinds["stripe-eur"] == "GATEWAY"
        assert kinds["ledger-actuals"] == "LEDGER"


class TestAuthentication:

    def test_missing_key(self, client):
        response = client.post("/api/reconciliation/run", json={})
        assert response.status_code == 401

    def test_wrong_key(self, client):
        response = client.post("/api/reconciliation/run", json={}, headers={"X-Internal-Api-Key": "nope"})
        assert response.status_code == 403

    def test_keys_not_configured(self, client, repo):
        client.app.dependency_overrides[get_settings] = lambda: make_settings()
        response = client.post("/api/reconciliation/run", json={}, headers=HEADERS)
        assert response.status_code == 503


class TestRuns:

    def test_run_is_dry_by_default(self, client, repo):
        response = client.post("/api/reconciliation/run", json={}, headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["dry_run"] is True
        assert data["matching"]["matched"] == 1
        assert data["write"]["written"] == 0
        assert repo.writes == 0

    def test_run_apply(self, client, repo):
        response = client.post("/api/reconciliation/run", json={"apply": True}, headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["write"]["written"] == 1
        assert repo.transactions["t1"].reconciled is True

    def test_unknown_source_is_bad_request(self, client):
        response = client.post(
            "/api/reconciliation/run", json={"sources": ["paypal"]}, headers=HEADERS
        )
        assert response.status_code == 400
        assert "paypal" in response.json()["detail"]

    def test_held_lease_is_conflict(self, client, repo):
        repo.lease_holder = "another-run"
        response = client.post("/api/reconciliation/run", json={"apply": True}, headers=HEADERS)
        assert response.status_code == 409

    def test_store_failure_is_unavailable(self, client, repo):
        async def broken(*args, **kwargs):
            raise RepositoryError("connection refused")

        repo.load_invoices = broken
        response = client.post("/api/reconciliation/ledger-codes", json={}, headers=HEADERS)
        assert response.status_code == 503

    def test_internal_value_error_is_server_error(self, client, repo):
        async def broken(*args, **kwargs):
            raise ValueError("confidence out of range")

        repo.load_invoices = broken
        response = client.post("/api/reconciliation/run", json={}, headers=HEADERS)
        assert response.status_code == 500
        assert response.json()["detail"] == "Reconciliation run failed"

    def test_classify_and_disbursements(self, client):
        classify = client.post("/api/reconciliation/classify-bank", json={}, headers=HEADERS)
        disbursements = client.post("/api/reconciliation/disbursements", json={"sample": 0}, headers=HEADERS)

        assert classify.status_code == 200
        assert classify.json()["dry_run"] is True
        assert disbursements.status_code == 200
        assert disbursements.json()["disbursements"]["sample"] == []

    def test_sweep(self, client, repo):
        response = client.post(
            "/api/reconciliation/sweep", json={"apply": True, "max_days": 10}, headers=HEADERS
        )

        assert response.status_code == 200
        data = response.json()
        assert data["max_days"] == 10
        assert data["reset"] == 1
        assert repo.transactions["b1"].reconciled is False

    def test_invalid_sample_rejected(self, client):
        response = client.post("/api/reconciliation/run", json={"sample": -1}, headers=HEADERS)
        assert response.status_code == 422


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
