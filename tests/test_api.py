"""
Tests for the FastAPI application.
"""

import pytest
from fastapi.testclient import TestClient

from coverline.api import routes
from coverline.api.routes import app
from coverline.config import settings

HEADERS = {"X-API-Key": settings.coverline_api_key}


@pytest.fixture(autouse=True)
def reset_rate_limits():
    routes._rate_limit_windows.clear()
    yield
    routes._rate_limit_windows.clear()


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


class TestAuth:
    """API key enforcement and rate limiting."""

    def test_wrong_key_rejected(self, client):
        response = client.get("/v1/health", headers={"X-API-Key": "nope"})
        assert response.status_code == 403

    def test_missing_key_rejected(self, client):
        assert client.get("/v1/health").status_code == 422

    def test_rate_limit(self, client, monkeypatch):
        monkeypatch.setattr(routes, "_RATE_LIMIT_MAX", 2)
        assert client.get("/v1/health", headers=HEADERS).status_code == 200
        assert client.get("/v1/health", headers=HEADERS).status_code == 200
        assert client.get("/v1/health", headers=HEADERS).status_code == 429


class TestSystemEndpoints:
    """Health and metrics."""

    def test_health(self, client):
        body = client.get("/v1/health", headers=HEADERS).json()
        assert body["status"] == "ok"
        assert body["carriers_loaded"] == 6
        assert body["fallbacks_loaded"] == 2
        assert body["directory_version"] == 1

    def test_metrics_count_runs(self, client, auto_payload):
        client.post("/v1/quotes", json=auto_payload, headers=HEADERS)
        body = client.get("/v1/metrics", headers=HEADERS).json()

        assert body["runs"] == 1
        assert body["quotes_returned"] == 4
        assert "gateway" in body["stages"]
        assert body["carriers"]["guardian_auto"]["success"] == 1


class TestQuotes:
    """POST /v1/quotes."""

    def test_auto_quotes(self, client, auto_payload):
        response = client.post("/v1/quotes", json=auto_payload, headers=HEADERS)
        assert response.status_code == 200

        body = response.json()
        assert [q["carrier_id"] for q in body["quotes"]] == [
            "guardian_auto",
            "reliable_coverage",
            "premier_ins",
            "budget_auto",
        ]
        assert body["issues"] == []
        assert body["decision"]["approved"] is True
        assert body["decision"]["risk_score"] == pytest.approx(39.8)
        assert body["metrics"]["total_quotes"] == 4
        assert body["request_id"].startswith("req_")

    def test_declined_applicant_still_quoted(self, client, home_payload):
        body = client.post("/v1/quotes", json=home_payload, headers=HEADERS).json()
        assert body["decision"]["approved"] is False
        assert body["issues"][0]["type"] == "underwriting"
        assert len(body["quotes"]) == 3

    def test_invalid_submission(self, client, auto_payload):
        auto_payload["coverage_type"] = "boat"
        response = client.post("/v1/quotes", json=auto_payload, headers=HEADERS)
        assert response.status_code == 422


class TestCarriers:
    """Directory listing and hot reload."""

    def test_list_all(self, client):
        body = client.get("/v1/carriers", headers=HEADERS).json()
        assert body["version"] == 1
        assert len(body["carriers"]) == 8
        assert [c["fallback"] for c in body["carriers"]][-2:] == [True, True]

    def test_list_by_coverage(self, client):
        body = client.get("/v1/carriers", params={"coverage": "life"}, headers=HEADERS).json()
        assert {c["id"] for c in body["carriers"]} == {
            "secure_life",
            "national_general",
            "carrier-fallback-001",
            "carrier-fallback-002",
        }

    def test_reload_from_file(self, client):
        body = client.post("/v1/carriers/reload", headers=HEADERS).json()
        assert body["version"] == 2
        assert body["carriers"] == 6
        assert body["fallbacks"] == 2

    def test_reload_with_body(self, client):
        carrier = {
            "id": "harbor_mutual",
            "name": "Harbor Mutual",
            "min_risk_score": 0,
            "max_risk_score": 100,
            "commission_rate": 0.1,
            "accepted_states": ["ALL"],
            "supported_coverage_types": ["renters"],
            "turnaround_time": 1,
            "acceptance_rate": 0.9,
        }
        response = client.post("/v1/carriers/reload", json={"carriers": [carrier]}, headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["carriers"] == 1

        listing = client.get("/v1/carriers", headers=HEADERS).json()
        assert [c["id"] for c in listing["carriers"]][0] == "harbor_mutual"

    def test_reload_duplicate_ids_conflict(self, client):
        carrier = {
            "id": "twin",
            "name": "Twin",
            "min_risk_score": 0,
            "max_risk_score": 100,
            "commission_rate": 0.1,
            "accepted_states": ["ALL"],
            "supported_coverage_types": ["auto"],
            "turnaround_time": 1,
            "acceptance_rate": 0.9,
        }
        response = client.post("/v1/carriers/reload", json={"carriers": [carrier, carrier]}, headers=HEADERS)
        assert response.status_code == 409

        health = client.get("/v1/health", headers=HEADERS).json()
        assert health["directory_version"] == 1


class TestCarrierHealth:
    """Per-carrier status and connectivity checks."""

    def test_status_after_quote(self, client, auto_payload):
        client.post("/v1/quotes", json=auto_payload, headers=HEADERS)
        response = client.get("/v1/carriers/guardian_auto/status", headers=HEADERS)
        assert response.status_code == 200

        body = response.json()
        assert body["display_name"] == "Guardian Auto Insurance"
        assert body["operational_status"] == "up"
        assert body["total_calls"] == 1
        assert body["success"] == 1
        assert body["success_rate_percent"] == 100.0
        assert body["error_rate_percent"] == 0.0
        assert body["avg_response_time_ms"] >= 0
        assert body["last_successful_quote"] is not None
        assert "auto" in body["supported_products"]

    def test_status_without_calls(self, client):
        body = client.get("/v1/carriers/secure_life/status", headers=HEADERS).json()
        assert body["operational_status"] == "unknown"
        assert body["total_calls"] == 0
        assert body["last_successful_quote"] is None

    def test_status_unknown_carrier(self, client):
        response = client.get("/v1/carriers/ghost/status", headers=HEADERS)
        assert response.status_code == 404

    def test_connectivity_check(self, client):
        response = client.post("/v1/carriers/premier_ins/test", headers=HEADERS)
        assert response.status_code == 200

        body = response.json()
        assert body["carrier_id"] == "premier_ins"
        assert body["success"] is True
        assert body["test_type"] == "connectivity"
        assert body["kind"] is None
        assert body["response_time_ms"] >= 0

    def test_check_with_test_type(self, client):
        response = client.post("/v1/carriers/budget_auto/test", json={"test_type": "quote_format"}, headers=HEADERS)
        assert response.json()["test_type"] == "quote_format"

    def test_check_unknown_carrier(self, client):
        response = client.post("/v1/carriers/ghost/test", headers=HEADERS)
        assert response.status_code == 404
