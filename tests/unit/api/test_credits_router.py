"""Unit tests for the credits API router."""

import pytest
from fastapi.testclient import TestClient

from src.api.dependencies import get_credits

TEST_SUBSCRIBER_ID = "sub-123"
ADMIN_ID = "admin-1"
PREFIX = "/api/v1/credits"


@pytest.fixture
def client(service):
    """Create test client with the credit service overridden."""
    from src.api.app import create_app
    app = create_app()
    app.dependency_overrides[get_credits] = lambda: service
    return TestClient(app)


@pytest.fixture
def headers():
    """Default headers with subscriber ID."""
    return {"X-Subscriber-ID": TEST_SUBSCRIBER_ID}


@pytest.fixture
def admin_headers():
    return {"X-Subscriber-ID": ADMIN_ID, "X-Is-Admin": "true"}


@pytest.fixture
def funded(client, admin_headers):
    """Create the test subscriber and credit its purchased balance."""

    def _fund(amount: int) -> None:
        response = client.post(f"{PREFIX}/subscribers/{TEST_SUBSCRIBER_ID}", headers=admin_headers)
        assert response.status_code == 200
        if amount:
            response = client.post(
                f"{PREFIX}/adjust",
                json={"subscriber_id": TEST_SUBSCRIBER_ID, "amount": amount, "reason": "test funding"},
                headers=admin_headers,
            )
            assert response.status_code == 200

    return _fund


class TestHealthEndpoints:
    """Tests for /health and / endpoints."""

    def test_health_memory_backend(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["components"]["ledger_store"]["backend"] == "memory"
        assert data["components"]["balance_sync"]["channels"] == 0

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["service"] == "Credit Metering Service"

    def test_request_id_header(self, client):
        response = client.get("/")

        assert "X-Request-ID" in response.headers


class TestBalanceEndpoint:
    """Tests for GET /balance endpoint."""

    def test_missing_header(self, client):
        response = client.get(f"{PREFIX}/balance")

        assert response.status_code == 400
        assert response.json()["error"] == "X-Subscriber-ID header required"

    def test_unknown_subscriber(self, client, headers):
        response = client.get(f"{PREFIX}/balance", headers=headers)

        assert response.status_code == 404
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "subscriber_not_found"

    def test_fresh_balance(self, client, headers, funded):
        funded(5000)

        response = client.get(f"{PREFIX}/balance", params={"fresh": True}, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["purchased_balance"] == 5000
        assert data["monthly_allowance"] == 100000
        assert data["cached"] is False

    def test_logout_evicts_cached_balance(self, client, headers, funded, service):
        funded(5000)
        client.get(f"{PREFIX}/balance", headers=headers)

        response = client.post(f"{PREFIX}/logout", headers=headers)

        assert response.json()["evicted"] is True
        assert service.cache.peek(TEST_SUBSCRIBER_ID) is None


class TestGuardEndpoint:
    """Tests for POST /guard endpoint."""

    def test_low_balance_rejected(self, client, headers, funded):
        funded(500)

        response = client.post(f"{PREFIX}/guard", json={"feature": "chat_message"}, headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["approved"] is False
        assert data["reason"] == "LOW_BALANCE_BLOCK"
        assert data["purchased_balance"] == 500

    def test_approved_after_top_up(self, client, headers, admin_headers, funded):
        funded(500)
        client.post(
            f"{PREFIX}/adjust",
            json={"subscriber_id": TEST_SUBSCRIBER_ID, "amount": 5000, "reason": "top-up"},
            headers=admin_headers,
        )

        response = client.post(f"{PREFIX}/guard", json={"feature": "chat_message"}, headers=headers)

        assert response.json()["approved"] is True

    def test_advisory(self, client, headers, funded):
        funded(5000)

        response = client.post(
            f"{PREFIX}/guard", json={"feature": "chat_message", "advisory": True}, headers=headers
        )

        data = response.json()
        assert data["approved"] is True
        assert data["advisory"] is True


class TestMeteredEndpoint:
    """Tests for POST /metered endpoint."""

    def test_charges_output_units(self, client, headers, funded):
        funded(5000)

        response = client.post(
            f"{PREFIX}/metered",
            json={"feature": "chat_message", "prompt": "three word prompt", "output_units": 120},
            headers=headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["realized_cost"] == 120
        assert data["input_units"] == 3
        assert data["shortfall"] is False
        assert data["purchased_balance"] == 4880

    def test_below_buffer_returns_402(self, client, headers, funded):
        funded(500)

        response = client.post(
            f"{PREFIX}/metered", json={"feature": "chat_message", "output_units": 10}, headers=headers
        )

        assert response.status_code == 402
        data = response.json()
        assert data["error"] == "low_balance_block"
        assert data["category"] == "remedy"

    def test_shortfall_reported(self, client, headers, funded):
        funded(2500)

        response = client.post(
            f"{PREFIX}/metered", json={"feature": "chat_message", "output_units": 3000}, headers=headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["shortfall"] is True
        assert data["purchased_balance"] is None

    def test_rate_limited_returns_429(self, client, headers, funded, service):
        funded(5000)
        service.rate_limiter.max_requests = 1
        body = {"feature": "chat_message", "output_units": 1}

        assert client.post(f"{PREFIX}/metered", json=body, headers=headers).status_code == 200
        response = client.post(f"{PREFIX}/metered", json=body, headers=headers)

        assert response.status_code == 429
        assert response.json()["category"] == "transient"
        assert int(response.headers["Retry-After"]) >= 1

    def test_negative_output_units_rejected(self, client, headers):
        response = client.post(
            f"{PREFIX}/metered", json={"feature": "chat_message", "output_units": -1}, headers=headers
        )

        assert response.status_code == 422


class TestAdminEndpoints:
    """Tests for administrative endpoints."""

    def test_adjust_requires_admin(self, client, headers, funded):
        funded(0)

        response = client.post(
            f"{PREFIX}/adjust",
            json={"subscriber_id": TEST_SUBSCRIBER_ID, "amount": 5000, "reason": "free credits"},
            headers=headers,
        )

        assert response.status_code == 403
        assert response.json()["error"] == "admin_required"

    def test_adjust_blank_reason_rejected(self, client, admin_headers, funded):
        funded(0)

        response = client.post(
            f"{PREFIX}/adjust",
            json={"subscriber_id": TEST_SUBSCRIBER_ID, "amount": 5000, "reason": "   "},
            headers=admin_headers,
        )

        assert response.status_code == 422

    def test_adjust_monthly_allowance(self, client, admin_headers, funded):
        funded(0)

        response = client.post(
            f"{PREFIX}/adjust",
            json={
                "subscriber_id": TEST_SUBSCRIBER_ID,
                "target": "monthly_allowance",
                "amount": 1000,
                "reason": "bonus",
            },
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["monthly_allowance"] == 101000

    def test_purchase_is_idempotent(self, client, admin_headers):
        body = {"subscriber_id": TEST_SUBSCRIBER_ID, "order_id": "ord_1042", "amount": 10000}

        first = client.post(f"{PREFIX}/purchase", json=body, headers=admin_headers)
        second = client.post(f"{PREFIX}/purchase", json=body, headers=admin_headers)

        assert first.json()["applied"] is True
        assert second.json()["applied"] is False
        assert second.json()["purchased_balance"] == 10000

    def test_reset_monthly_all(self, client, admin_headers, funded):
        funded(0)

        response = client.post(f"{PREFIX}/reset-monthly", json={}, headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["reset"] == 1

    def test_reset_monthly_single(self, client, admin_headers, funded):
        funded(0)

        response = client.post(
            f"{PREFIX}/reset-monthly", json={"subscriber_id": TEST_SUBSCRIBER_ID}, headers=admin_headers
        )

        assert response.json()["reset"] == 1


class TestAuditEndpoints:
    """Tests for audit trail and usage breakdown endpoints."""

    def test_audit_trail(self, client, headers, funded):
        funded(5000)
        client.post(f"{PREFIX}/metered", json={"feature": "chat_message", "output_units": 50}, headers=headers)

        response = client.get(f"{PREFIX}/audit", headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert len(data["usage_events"]) == 1
        assert len(data["adjustments"]) == 1
        assert data["adjustments"][0]["actor"] == ADMIN_ID

    def test_audit_limit_validated(self, client, headers):
        response = client.get(f"{PREFIX}/audit", params={"limit": 0}, headers=headers)

        assert response.status_code == 422

    def test_usage_breakdown_percentages(self, client, headers, funded):
        funded(5000)
        for feature, units in (("chat_message", 300), ("rewrite_copy", 100)):
            client.post(f"{PREFIX}/metered", json={"feature": feature, "output_units": units}, headers=headers)

        response = client.get(f"{PREFIX}/usage/breakdown", headers=headers)

        data = response.json()
        assert data["total_cost"] == 400
        assert data["percentages"] == {"chat_message": 75.0, "rewrite_copy": 25.0}
