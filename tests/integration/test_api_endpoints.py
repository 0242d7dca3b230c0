"""
API 엔드포인트 테스트 (TestClient + dependency_overrides)
"""
import uuid

import pytest
from fastapi.testclient import TestClient

from autolister.api.deps import get_adapter_provider, get_orchestrator_factory
from autolister.db import get_session
from autolister.exceptions import AuthenticationError, ConfigurationError
from autolister.main import app
from autolister.models import Listing, Product
from autolister.services.job_ledger import JobLedger
from autolister.services.orchestrator_service import PipelineSummary


VALID_PRODUCT = {
    "title": "Wedding Planner Printable",
    "description": "A complete printable wedding planner.",
    "price": 12.5,
    "tags": ["wedding", "planner"],
}


@pytest.fixture
def adapters(fake_adapter_cls):
    return {
        "etsy": fake_adapter_cls("etsy"),
        "shopify": fake_adapter_cls("shopify", available=False),
    }


@pytest.fixture
def client(test_session, adapters):
    def _provider(name):
        key = name.strip().lower()
        if key not in adapters:
            raise ConfigurationError(f"Unsupported marketplace: {name}", setting="marketplace")
        return adapters[key]

    def _session():
        yield test_session

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_adapter_provider] = lambda: _provider
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.mark.integration
class TestListingEndpoints:
    def test_create_listing(self, client):
        response = client.post("/api/listings", json={"marketplace": "Etsy", "product": VALID_PRODUCT})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["listingId"] == "etsy_123"
        assert body["data"]["marketplace"] == "etsy"
        assert body["data"]["timestamp"]

    def test_missing_fields(self, client):
        response = client.post("/api/listings", json={"marketplace": "etsy"})
        assert response.status_code == 400
        assert response.json()["error"] == "Marketplace and product are required"

        assert client.post("/api/listings").status_code == 400

    def test_invalid_marketplace(self, client):
        response = client.post("/api/listings", json={"marketplace": "ebay", "product": VALID_PRODUCT})
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid marketplace"}

    def test_unavailable_marketplace(self, client):
        response = client.post("/api/listings", json={"marketplace": "shopify", "product": VALID_PRODUCT})
        assert response.status_code == 500
        assert response.json()["error"] == "shopify marketplace not available"

    def test_validation_errors_are_returned(self, client):
        product = {**VALID_PRODUCT, "title": "Short", "tags": []}
        response = client.post("/api/listings", json={"marketplace": "etsy", "product": product})

        assert response.status_code == 400
        assert response.json()["details"] == [
            "Title must be at least 10 characters long",
            "At least one tag is required",
        ]

    def test_auth_failure_maps_to_401(self, client, adapters):
        adapters["etsy"].list_errors = [AuthenticationError("etsy", "etsy unauthorized (401)", status_code=401)]

        response = client.post("/api/listings", json={"marketplace": "etsy", "product": VALID_PRODUCT})

        assert response.status_code == 401
        assert response.json() == {"error": "Failed to create listing", "details": "etsy unauthorized (401)"}

    def test_update_and_delete(self, client, adapters):
        response = client.put(
            "/api/listings", json={"marketplace": "etsy", "listingId": "etsy_123", "product": {"price": 15.0}}
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "updated"
        assert adapters["etsy"].update_calls == [{"listing_id": "etsy_123", "price": 15.0}]

        response = client.request("DELETE", "/api/listings", json={"marketplace": "etsy", "listingId": "etsy_123"})
        assert response.status_code == 200
        assert response.json()["data"]["deleted"] is True

        response = client.request("DELETE", "/api/listings", json={"marketplace": "etsy"})
        assert response.status_code == 400

    def test_recent_listings(self, client, test_session):
        product = Product(title="Aura Candle Labels", price=9.99, origin_keyword="aura candle")
        test_session.add(product)
        test_session.flush()
        test_session.add(Listing(product_id=product.id, marketplace="etsy", remote_id="etsy_1", status="success", price=9.99))
        test_session.add(Listing(product_id=product.id, marketplace="shopify", status="failed", error="rejected"))
        test_session.commit()

        response = client.get("/api/listings", params={"marketplace": "ETSY"})

        assert response.status_code == 200
        [row] = response.json()["data"]
        assert row["remoteId"] == "etsy_1"
        assert row["productId"] == str(product.id)


@pytest.mark.integration
class TestJobEndpoints:
    def test_list_jobs_by_status(self, client, test_session):
        ledger = JobLedger(test_session)
        done = ledger.begin("scrape:etsy:r1", "SCRAPE")
        ledger.complete(done.id, {"trends": 1})
        ledger.begin("generate:candle:r1", "GENERATE")

        response = client.get("/api/jobs", params={"status": "running"})

        assert response.status_code == 200
        assert [j["jobKey"] for j in response.json()["data"]] == ["generate:candle:r1"]

        response = client.get("/api/jobs", params={"stage": "scrape", "status": "success"})
        assert [j["jobKey"] for j in response.json()["data"]] == ["scrape:etsy:r1"]

        response = client.get(f"/api/jobs/{done.id}")
        assert response.json()["data"]["result"] == {"trends": 1}

    def test_bad_filters_and_missing_job(self, client):
        assert client.get("/api/jobs", params={"status": "DONE"}).status_code == 400
        assert client.get("/api/jobs", params={"stage": "PUBLISH"}).status_code == 400
        assert client.get(f"/api/jobs/{uuid.uuid4()}").status_code == 404


@pytest.mark.integration
class TestPipelineEndpoints:
    def test_run_is_accepted_and_executed_in_background(self, client):
        calls = []

        class StubOrchestrator:
            async def run_full_pipeline(self, run_id=None, analyze=False):
                calls.append((run_id, analyze))
                return PipelineSummary(success=True, run_id=run_id)

        app.dependency_overrides[get_orchestrator_factory] = lambda: (lambda db: StubOrchestrator())

        response = client.post("/api/pipeline/run", json={"analyze": True, "runId": "manual-1"})

        assert response.status_code == 202
        assert response.json() == {"status": "accepted", "runId": "manual-1", "analyze": True}
        assert calls == [("manual-1", True)]

    def test_recovery_status(self, client):
        response = client.get("/api/pipeline/recovery")

        assert response.status_code == 200
        assert response.json()["strategiesLoaded"] == 6

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}
