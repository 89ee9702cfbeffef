"""
Tests for callback reconciliation.
"""
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select

from conftest import FakeGateway
from storefront_payments.config import GatewayConfig
from storefront_payments.core.orchestrator import TransactionOrchestrator
from storefront_payments.core.reconciler import CallbackReconciler
from storefront_payments.database.models import OutboxEvent
from storefront_payments.database.transaction_store import TransactionStore
from storefront_payments.domain.models import InitiationResult, OrderRequest
from storefront_payments.domain.state_machine import GatewayStatus, TransactionStatus
from storefront_payments.exceptions import GatewayError, NotFoundError, ValidationError


@pytest_asyncio.fixture
async def initiated(
    orchestrator: TransactionOrchestrator,
    gateway_config: GatewayConfig,
    sample_order: OrderRequest,
) -> InitiationResult:
    return await orchestrator.initiate(sample_order, gateway_config)


async def _outbox(session_factory) -> list:
    async with session_factory() as db:
        result = await db.execute(select(OutboxEvent))
        return list(result.scalars().all())


class TestComplete:
    """Test suite for CallbackReconciler.complete."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_settles_and_enqueues_order_update(
        self,
        reconciler: CallbackReconciler,
        store: TransactionStore,
        gateway_config: GatewayConfig,
        initiated: InitiationResult,
        session_factory,
    ) -> None:
        """Test that a provider success marks the transaction succeeded."""
        result = await reconciler.complete(initiated.gateway_order_id, gateway_config)

        assert result.status is TransactionStatus.SUCCEEDED
        assert result.succeeded
        assert result.gateway_status is GatewayStatus.SUCCESS
        assert result.already_final is False
        assert result.order_id == "order_123"

        record = await store.get(initiated.transaction_id)
        assert record.status is TransactionStatus.SUCCEEDED
        assert record.amount == Decimal("100.00")
        assert record.gateway_response["state"] == "COMPLETED"

        outbox = await _outbox(session_factory)
        assert len(outbox) == 1
        assert outbox[0].event_type == "order.payment_succeeded"
        assert outbox[0].aggregate_id == initiated.transaction_id
        details = outbox[0].payload["payment_details"]
        assert outbox[0].payload["order_id"] == "order_123"
        assert details["paymentId"] == f"TXN-{initiated.gateway_order_id}"
        assert details["merchantOrderId"] == initiated.merchant_order_id
        assert details["amount"] == "100.00"
        assert details["status"] == "completed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_complete_is_idempotent(
        self,
        reconciler: CallbackReconciler,
        store: TransactionStore,
        gateway_config: GatewayConfig,
        fake_gateway: FakeGateway,
        initiated: InitiationResult,
        session_factory,
    ) -> None:
        """Test that repeating the callback returns the same result without side effects."""
        first = await reconciler.complete(initiated.gateway_order_id, gateway_config)
        status_calls = fake_gateway.status_calls
        second = await reconciler.complete(initiated.gateway_order_id, gateway_config)

        assert second.already_final is True
        assert (second.transaction_id, second.status, second.gateway_response) == (
            first.transaction_id,
            first.status,
            first.gateway_response,
        )
        assert fake_gateway.status_calls == status_calls

        events = await store.list_events(initiated.transaction_id)
        assert [e["event_type"] for e in events].count("transaction.succeeded") == 1
        assert len(await _outbox(session_factory)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_queried_by_merchant_order_id(
        self,
        reconciler: CallbackReconciler,
        gateway_config: GatewayConfig,
        fake_gateway: FakeGateway,
        initiated: InitiationResult,
    ) -> None:
        """Test that the provider is asked about our merchant order id."""
        await reconciler.complete(initiated.gateway_order_id, gateway_config)

        status_request = fake_gateway.requests[-1]
        assert status_request.url.path.endswith(
            f"/checkout/v2/order/{initiated.merchant_order_id}/status"
        )
        assert initiated.gateway_order_id not in status_request.url.path

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_order_id_checkout_round_trip(
        self,
        orchestrator: TransactionOrchestrator,
        reconciler: CallbackReconciler,
        store: TransactionStore,
        gateway_config: GatewayConfig,
        fake_gateway: FakeGateway,
    ) -> None:
        """Test a checkout whose pay response names the order providerOrderId."""
        fake_gateway.pay_body = {"redirectUrl": "https://pay/x", "providerOrderId": "G1"}

        created = await orchestrator.initiate(OrderRequest("O1", Decimal("250.00")), gateway_config)
        assert created.redirect_url == "https://pay/x"
        assert created.gateway_order_id == "G1"
        assert (await store.get(created.transaction_id)).status is TransactionStatus.PROCESSING

        first = await reconciler.complete("G1", gateway_config)
        second = await reconciler.complete("G1", gateway_config)

        assert first.status is TransactionStatus.SUCCEEDED
        assert first.already_final is False
        assert second.status is TransactionStatus.SUCCEEDED
        assert second.already_final is True
        assert (await store.get(created.transaction_id)).amount == Decimal("250.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_failure_marks_failed(
        self,
        reconciler: CallbackReconciler,
        store: TransactionStore,
        gateway_config: GatewayConfig,
        fake_gateway: FakeGateway,
        initiated: InitiationResult,
        session_factory,
    ) -> None:
        """Test that a declined payment is settled as failed with no order update."""
        fake_gateway.status_state = "FAILED"

        result = await reconciler.complete(initiated.gateway_order_id, gateway_config)

        assert result.status is TransactionStatus.FAILED
        assert result.gateway_status is GatewayStatus.FAILED
        assert (await store.get(initiated.transaction_id)).status is TransactionStatus.FAILED
        assert await _outbox(session_factory) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_stays_processing(
        self,
        reconciler: CallbackReconciler,
        store: TransactionStore,
        gateway_config: GatewayConfig,
        fake_gateway: FakeGateway,
        initiated: InitiationResult,
    ) -> None:
        """Test that a pending payment keeps the transaction open with the latest payload."""
        fake_gateway.status_state = "PENDING"

        result = await reconciler.complete(initiated.gateway_order_id, gateway_config)

        assert result.status is TransactionStatus.PROCESSING
        assert result.gateway_status is GatewayStatus.PENDING
        record = await store.get(initiated.transaction_id)
        assert record.status is TransactionStatus.PROCESSING
        assert record.gateway_response["state"] == "PENDING"

        fake_gateway.status_state = "COMPLETED"
        settled = await reconciler.complete(initiated.gateway_order_id, gateway_config)
        assert settled.status is TransactionStatus.SUCCEEDED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_query_error_marks_failed_and_reraises(
        self,
        reconciler: CallbackReconciler,
        store: TransactionStore,
        gateway_config: GatewayConfig,
        fake_gateway: FakeGateway,
        initiated: InitiationResult,
    ) -> None:
        """Test that an unreachable provider fails the transaction."""
        fake_gateway.status_timeout = True

        with pytest.raises(GatewayError, match="timed out"):
            await reconciler.complete(initiated.gateway_order_id, gateway_config)

        record = await store.get(initiated.transaction_id)
        assert record.status is TransactionStatus.FAILED
        assert record.gateway_response["success"] is False
        assert "timed out" in record.gateway_response["error"]

        # Terminal now: a later callback is answered from the store
        fake_gateway.status_timeout = False
        again = await reconciler.complete(initiated.gateway_order_id, gateway_config)
        assert again.status is TransactionStatus.FAILED
        assert again.already_final is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_status_marks_failed(
        self,
        reconciler: CallbackReconciler,
        store: TransactionStore,
        gateway_config: GatewayConfig,
        fake_gateway: FakeGateway,
        initiated: InitiationResult,
    ) -> None:
        """Test that an unknown provider state is treated as a gateway error."""
        fake_gateway.status_state = "SOMETHING_NEW"

        with pytest.raises(GatewayError, match="unknown state"):
            await reconciler.complete(initiated.gateway_order_id, gateway_config)

        assert (await store.get(initiated.transaction_id)).status is TransactionStatus.FAILED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_gateway_order_id(
        self,
        reconciler: CallbackReconciler,
        store: TransactionStore,
        gateway_config: GatewayConfig,
        fake_gateway: FakeGateway,
    ) -> None:
        """Test that an unknown id is not found and creates nothing."""
        with pytest.raises(NotFoundError):
            await reconciler.complete("unknown", gateway_config)

        assert fake_gateway.requests == []
        assert await store.list_by_status(TransactionStatus.INITIATED) == []
        assert await store.list_by_status(TransactionStatus.FAILED) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_environment_mismatch_rejected(
        self,
        reconciler: CallbackReconciler,
        store: TransactionStore,
        production_config: GatewayConfig,
        fake_gateway: FakeGateway,
        initiated: InitiationResult,
    ) -> None:
        """Test that a test-mode transaction is never checked with production credentials."""
        status_calls = fake_gateway.status_calls

        with pytest.raises(ValidationError, match="test environment"):
            await reconciler.complete(initiated.gateway_order_id, production_config)

        assert fake_gateway.status_calls == status_calls
        assert (await store.get(initiated.transaction_id)).status is TransactionStatus.PROCESSING
