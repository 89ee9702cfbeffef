"""
Integration tests for the HTTP API.
"""
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from conftest import FakeGateway
from storefront_payments.api.main import app
from storefront_payments.api.routes import (
    get_db_session_factory,
    get_gateway_config,
    get_http_client,
)
from storefront_payments.config import GatewayConfig
from storefront_payments.exceptions import GENERIC_USER_MESSAGE, ConfigurationError


@pytest_asyncio.fixture
async def client(
    session_factory, http_client: httpx.AsyncClient, gateway_config: GatewayConfig
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """API client wired to the test database and the fake gateway."""
    app.dependency_overrides[get_db_session_factory] = lambda: session_factory
    app.dependency_overrides[get_http_client] = lambda: http_client
    app.dependency_overrides[get_gateway_config] = lambda: gateway_config

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def payment_body() -> dict[str, Any]:
    return {
        "order_id": "order_123",
        "amount": "100.00",
        "user_id": "user_42",
        "customer_info": {"name": "Asha Rao", "email": "asha@example.com", "phone": "9999999999"},
    }


class TestPaymentsApi:
    """Test suite for the payments endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_and_callback_flow(
        self, client: httpx.AsyncClient, payment_body: dict[str, Any]
    ) -> None:
        """Test create, callback and status lookup for a successful payment."""
        created = await client.post("/payments", json=payment_body)
        assert created.status_code == 201
        body = created.json()
        assert body["redirect_url"].startswith("https://pay.gateway.test/checkout/")
        assert "X-Request-ID" in created.headers

        status_before = await client.get(f"/payments/{body['transaction_id']}")
        assert status_before.json()["status"] == "processing"

        completed = await client.post(
            "/payments/complete", json={"gateway_order_id": body["gateway_order_id"]}
        )
        assert completed.status_code == 200
        assert completed.json() == {
            "transaction_id": body["transaction_id"],
            "order_id": "order_123",
            "status": "succeeded",
            "already_final": False,
            "message": "Payment successful.",
        }

        status_after = await client.get(f"/payments/{body['transaction_id']}")
        assert status_after.json()["status"] == "succeeded"
        assert status_after.json()["amount"] == "100.00"

        repeat = await client.post(
            "/payments/complete", json={"gateway_order_id": body["gateway_order_id"]}
        )
        assert repeat.json()["already_final"] is True
        assert repeat.json()["status"] == "succeeded"

        events = await client.get(f"/payments/{body['transaction_id']}/events")
        assert [e["event_type"] for e in events.json()["events"]] == [
            "transaction.initiated",
            "transaction.processing",
            "transaction.succeeded",
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_client_reported_status_ignored(
        self, client: httpx.AsyncClient, fake_gateway: FakeGateway, payment_body: dict[str, Any]
    ) -> None:
        """Test that the browser cannot claim a payment succeeded."""
        created = (await client.post("/payments", json=payment_body)).json()
        fake_gateway.status_state = "FAILED"

        completed = await client.post(
            "/payments/complete",
            json={"gateway_order_id": created["gateway_order_id"], "status": "SUCCESS"},
        )

        assert completed.status_code == 200
        assert completed.json()["status"] == "failed"
        assert completed.json()["message"] == GENERIC_USER_MESSAGE

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_failure_is_502_without_payload(
        self, client: httpx.AsyncClient, fake_gateway: FakeGateway, payment_body: dict[str, Any]
    ) -> None:
        """Test that provider details stay out of the response."""
        fake_gateway.pay_status_code = 400
        fake_gateway.pay_body = {"code": "BAD_REQUEST", "message": "merchant misconfigured"}

        response = await client.post("/payments", json=payment_body)

        assert response.status_code == 502
        assert response.json()["detail"] == {
            "code": "gateway_error",
            "message": GENERIC_USER_MESSAGE,
        }
        assert "merchant misconfigured" not in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_amount_is_400(
        self, client: httpx.AsyncClient, payment_body: dict[str, Any]
    ) -> None:
        """Test that a sub-paisa amount is rejected."""
        payment_body["amount"] = "10.005"

        response = await client.post("/payments", json=payment_body)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "validation_error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_checkout_is_400(
        self, client: httpx.AsyncClient, payment_body: dict[str, Any]
    ) -> None:
        """Test a second checkout while the first is in flight."""
        assert (await client.post("/payments", json=payment_body)).status_code == 201

        response = await client.post("/payments", json=payment_body)

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_ids_are_404(self, client: httpx.AsyncClient) -> None:
        """Test lookups and callbacks for unknown ids."""
        completed = await client.post("/payments/complete", json={"gateway_order_id": "unknown"})
        assert completed.status_code == 404
        assert completed.json()["detail"]["message"] == "Payment not found."

        assert (await client.get("/payments/missing")).status_code == 404
        assert (await client.get("/payments/missing/events")).status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_credentials_is_500(
        self, client: httpx.AsyncClient, payment_body: dict[str, Any]
    ) -> None:
        """Test the error handler for configuration errors raised by dependencies."""

        def no_credentials() -> GatewayConfig:
            raise ConfigurationError("Gateway credentials are not configured for the test environment")

        app.dependency_overrides[get_gateway_config] = no_credentials

        response = await client.post("/payments", json=payment_body)

        assert response.status_code == 500
        assert response.json()["detail"]["code"] == "configuration_error"


class TestMonitoringApi:
    """Test suite for health and metrics endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        """Test the overall health check against the test database."""
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["outbox"]["pending_events"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness_and_readiness(self, client: httpx.AsyncClient) -> None:
        """Test the Kubernetes probes."""
        assert (await client.get("/health/live")).json()["status"] == "alive"
        assert (await client.get("/health/ready")).status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient, payment_body: dict[str, Any]) -> None:
        """Test that transaction metrics are exported."""
        await client.post("/payments", json=payment_body)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "transaction_initiations_total" in response.text
        assert "gateway_api_requests_total" in response.text
