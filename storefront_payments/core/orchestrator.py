"""
Checkout initiation.

Orchestrates the payment-initiation flow:
1. Validate the order
2. Reject a second active attempt for the same order
3. Persist the transaction as initiated
4. Call the gateway
5. Persist processing (gateway ok) or failed (gateway error)

Each step commits on its own, so a crash between steps leaves an
auditable initiated row rather than a lost payment.
"""
import dataclasses
import secrets
import time
import uuid
from decimal import Decimal, InvalidOperation
from typing import Optional

import structlog

from storefront_payments.config import GatewayConfig, get_settings
from storefront_payments.database.transaction_store import TransactionStore
from storefront_payments.domain.models import InitiationResult, OrderRequest, to_minor_units
from storefront_payments.domain.state_machine import TransactionStatus
from storefront_payments.exceptions import GatewayError, PersistenceError, ValidationError
from storefront_payments.integrations.gateway_client import GatewayClient, PaymentRequest
from storefront_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def generate_merchant_order_id(prefix: str) -> str:
    """Build a merchant order id of the form <prefix>_<epoch-ms>_<random>."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class TransactionOrchestrator:
    """
    Starts payment attempts for storefront orders.

    Never leaves a transaction in initiated on a normal return or a
    gateway error; only a store failure after the gateway accepted the
    payment can.
    """

    def __init__(
        self,
        store: TransactionStore,
        gateway_client: GatewayClient,
        merchant_order_prefix: Optional[str] = None,
    ) -> None:
        """
        Initialize transaction orchestrator.

        Args:
            store: Transaction store
            gateway_client: Payment gateway client
            merchant_order_prefix: Prefix for merchant order ids
                (defaults to settings.merchant_order_prefix)
        """
        self.store = store
        self.gateway_client = gateway_client
        self.merchant_order_prefix = (
            merchant_order_prefix or get_settings().merchant_order_prefix
        )

    @staticmethod
    def _validate_order(order: OrderRequest) -> int:
        """
        Validate an order and return its amount in minor units.

        Raises:
            ValidationError: If the order id is empty or the amount is invalid
        """
        if not order.order_id or not str(order.order_id).strip():
            raise ValidationError("Order ID is required")

        try:
            amount = Decimal(str(order.amount))
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {order.amount!r}") from None
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Amount must be positive")

        try:
            return to_minor_units(amount)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    async def initiate(self, order: OrderRequest, config: GatewayConfig) -> InitiationResult:
        """
        Start a payment attempt for an order.

        Args:
            order: Order to pay for
            config: Gateway configuration for this attempt

        Returns:
            InitiationResult: Where to redirect the shopper

        Raises:
            ValidationError: If the order is invalid or already has an active attempt
            GatewayError: If the gateway rejected or failed the request
                (the transaction is persisted as failed first)
            PersistenceError: If the store is unavailable
        """
        start_time = time.time()
        correlation_id = str(uuid.uuid4())
        environment = config.environment.value

        try:
            amount_minor = self._validate_order(order)
        except ValidationError:
            metrics.record_initiation("rejected", environment, 0, time.time() - start_time)
            raise

        order = dataclasses.replace(order, order_id=str(order.order_id).strip())
        existing = await self.store.find_active_by_order_id(order.order_id)
        if existing is not None:
            metrics.record_initiation("rejected", environment, amount_minor, time.time() - start_time)
            logger.warning(
                "transaction_already_active",
                order_id=order.order_id,
                transaction_id=existing.id,
                status=existing.status.value,
            )
            raise ValidationError(f"An active transaction already exists for order {order.order_id}")

        merchant_order_id = generate_merchant_order_id(self.merchant_order_prefix)
        transaction_id = await self.store.create(
            {
                "order_id": order.order_id,
                "user_id": order.user_id,
                "merchant_order_id": merchant_order_id,
                "amount": order.amount,
                "currency": config.currency,
                "environment": environment,
                "provider": config.provider,
                "status": TransactionStatus.INITIATED,
                "gateway_response": {},
                "customer_info": order.customer_info,
            },
            correlation_id=correlation_id,
        )

        logger.info(
            "transaction_initiated",
            transaction_id=transaction_id,
            order_id=order.order_id,
            merchant_order_id=merchant_order_id,
            amount_minor=amount_minor,
            environment=environment,
            correlation_id=correlation_id,
        )

        request = PaymentRequest(
            merchant_order_id=merchant_order_id,
            amount_minor=amount_minor,
            redirect_url=order.redirect_url or config.redirect_url,
            customer_info=dict(order.customer_info),
        )

        try:
            initiation = await self.gateway_client.pay(config, request)
        except GatewayError as e:
            logger.error(
                "gateway_pay_failed",
                transaction_id=transaction_id,
                merchant_order_id=merchant_order_id,
                reason=e.reason,
                status_code=e.status_code,
                payload=e.payload,
            )
            await self.store.update(
                transaction_id,
                {"status": TransactionStatus.FAILED, "gateway_response": e.as_response()},
                expected_status=TransactionStatus.INITIATED,
                correlation_id=correlation_id,
            )
            metrics.record_initiation("failed", environment, amount_minor, time.time() - start_time)
            raise

        try:
            applied = await self.store.update(
                transaction_id,
                {
                    "status": TransactionStatus.PROCESSING,
                    "gateway_order_id": initiation.gateway_order_id,
                    "gateway_response": initiation.payload,
                },
                expected_status=TransactionStatus.INITIATED,
                correlation_id=correlation_id,
            )
        except PersistenceError:
            # The provider has the order; this row stays initiated until
            # someone reconciles it by hand from the sweep report.
            logger.error(
                "transaction_stuck_initiated",
                transaction_id=transaction_id,
                merchant_order_id=merchant_order_id,
                gateway_order_id=initiation.gateway_order_id,
            )
            raise

        if not applied:
            raise PersistenceError(
                f"Transaction {transaction_id} changed while its payment was being initiated"
            )

        metrics.record_initiation("processing", environment, amount_minor, time.time() - start_time)
        logger.info(
            "transaction_processing",
            transaction_id=transaction_id,
            gateway_order_id=initiation.gateway_order_id,
            duration_seconds=time.time() - start_time,
        )

        return InitiationResult(
            transaction_id=transaction_id,
            redirect_url=initiation.redirect_url,
            gateway_order_id=initiation.gateway_order_id,
            merchant_order_id=merchant_order_id,
        )
