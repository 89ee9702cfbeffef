"""
Callback reconciliation.

When the shopper returns from the hosted payment page, the storefront
calls complete() with the gateway order id it saved before redirecting.
The provider is asked for the authoritative state; anything the browser
claims about the outcome is ignored.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

import structlog

from storefront_payments.config import GatewayConfig
from storefront_payments.database.transaction_store import TransactionStore
from storefront_payments.domain.models import CompletionResult, TransactionRecord
from storefront_payments.domain.state_machine import (
    GATEWAY_STATUS_TO_TRANSACTION,
    GatewayStatus,
    TransactionStatus,
)
from storefront_payments.exceptions import GatewayError, NotFoundError, ValidationError
from storefront_payments.integrations.gateway_client import GatewayClient, GatewayStatusResult
from storefront_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ORDER_PAYMENT_SUCCEEDED = "order.payment_succeeded"

# Stored status → the gateway status it was settled from
STORED_GATEWAY_STATUS: Dict[TransactionStatus, GatewayStatus] = {
    TransactionStatus.SUCCEEDED: GatewayStatus.SUCCESS,
    TransactionStatus.FAILED: GatewayStatus.FAILED,
    TransactionStatus.PROCESSING: GatewayStatus.PENDING,
}


def stored_result(record: TransactionRecord, already_final: bool = True) -> CompletionResult:
    """Build a completion result from what the store already holds."""
    return CompletionResult(
        transaction_id=record.id,
        order_id=record.order_id,
        status=record.status,
        gateway_status=STORED_GATEWAY_STATUS.get(record.status),
        gateway_response=record.gateway_response,
        already_final=already_final,
    )


def order_paid_event(record: TransactionRecord, status: GatewayStatusResult) -> Dict[str, Any]:
    """Outbox event that tells the order service an order is paid."""
    payload = status.payload
    payment_id = payload.get("transactionId")
    if payment_id is None:
        details = payload.get("paymentDetails")
        if isinstance(details, list) and details and isinstance(details[0], dict):
            payment_id = details[0].get("transactionId")

    return {
        "event_type": ORDER_PAYMENT_SUCCEEDED,
        "payload": {
            "order_id": record.order_id,
            "transaction_id": record.id,
            "payment_details": {
                "paymentId": payment_id or record.gateway_order_id,
                "merchantOrderId": record.merchant_order_id,
                "gatewayOrderId": record.gateway_order_id,
                "amount": str(record.amount),
                "currency": record.currency,
                "status": "completed",
                "paidAt": datetime.now(timezone.utc).isoformat(),
            },
        },
    }


class CallbackReconciler:
    """
    Finalizes transactions from the provider's authoritative status.

    complete() is idempotent: a terminal transaction is answered from the
    store without touching the provider, and concurrent callers race on a
    conditional write so exactly one of them settles the transaction.
    """

    def __init__(self, store: TransactionStore, gateway_client: GatewayClient) -> None:
        """
        Initialize callback reconciler.

        Args:
            store: Transaction store
            gateway_client: Payment gateway client
        """
        self.store = store
        self.gateway_client = gateway_client

    async def _winner(self, transaction_id: str) -> CompletionResult:
        """Result written by whichever caller won the conditional write."""
        record = await self.store.get(transaction_id)
        if record is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        metrics.record_reconciliation("already_final")
        return stored_result(record, already_final=record.is_terminal)

    async def complete(self, gateway_order_id: str, config: GatewayConfig) -> CompletionResult:
        """
        Reconcile one transaction against the provider.

        Args:
            gateway_order_id: Provider-assigned order id
            config: Gateway configuration (must match the transaction's environment)

        Returns:
            CompletionResult: Settled (or still processing) outcome

        Raises:
            NotFoundError: If no transaction has this gateway order id
            ValidationError: If the config is for another environment
            GatewayError: If the status query failed (the transaction is
                marked failed first)
            PersistenceError: If the store is unavailable
        """
        if not gateway_order_id:
            raise ValidationError("Gateway order ID is required")

        record = await self.store.find_by_gateway_order_id(gateway_order_id)
        if record is None:
            metrics.record_reconciliation("not_found")
            logger.warning("reconcile_unknown_order", gateway_order_id=gateway_order_id)
            raise NotFoundError(f"No transaction for gateway order {gateway_order_id}")

        if record.environment != config.environment.value:
            logger.error(
                "reconcile_environment_mismatch",
                transaction_id=record.id,
                stored_environment=record.environment,
                requested_environment=config.environment.value,
            )
            raise ValidationError(
                f"Transaction {record.id} belongs to the {record.environment} environment"
            )

        if record.is_terminal:
            metrics.record_reconciliation("already_final")
            logger.info(
                "reconcile_already_final",
                transaction_id=record.id,
                status=record.status.value,
            )
            return stored_result(record)

        correlation_id = str(uuid.uuid4())

        try:
            status = await self.gateway_client.query_status(config, record.merchant_order_id)
        except GatewayError as e:
            logger.error(
                "gateway_status_failed",
                transaction_id=record.id,
                gateway_order_id=gateway_order_id,
                reason=e.reason,
                status_code=e.status_code,
                payload=e.payload,
            )
            applied = await self.store.update(
                record.id,
                {"status": TransactionStatus.FAILED, "gateway_response": e.as_response()},
                expected_status=record.status,
                correlation_id=correlation_id,
            )
            if not applied:
                winner = await self._winner(record.id)
                if winner.already_final:
                    return winner
            else:
                metrics.record_reconciliation("failed")
            raise

        if status.status is GatewayStatus.PENDING:
            applied = await self.store.update(
                record.id,
                {"gateway_response": status.payload},
                expected_status=record.status,
                correlation_id=correlation_id,
            )
            if not applied:
                return await self._winner(record.id)

            metrics.record_reconciliation("processing")
            logger.info(
                "reconcile_pending",
                transaction_id=record.id,
                gateway_order_id=gateway_order_id,
            )
            return CompletionResult(
                transaction_id=record.id,
                order_id=record.order_id,
                status=TransactionStatus.PROCESSING,
                gateway_status=GatewayStatus.PENDING,
                gateway_response=status.payload,
            )

        target = GATEWAY_STATUS_TO_TRANSACTION[status.status]
        outbox_events: List[Dict[str, Any]] = []
        if target is TransactionStatus.SUCCEEDED:
            outbox_events.append(order_paid_event(record, status))

        applied = await self.store.update(
            record.id,
            {"status": target, "gateway_response": status.payload},
            expected_status=record.status,
            outbox_events=outbox_events,
            correlation_id=correlation_id,
        )
        if not applied:
            logger.info(
                "reconcile_lost_race",
                transaction_id=record.id,
                attempted_status=target.value,
            )
            return await self._winner(record.id)

        metrics.record_reconciliation(target.value)
        logger.info(
            "transaction_reconciled",
            transaction_id=record.id,
            gateway_order_id=gateway_order_id,
            status=target.value,
            provider_state=status.provider_state,
        )

        return CompletionResult(
            transaction_id=record.id,
            order_id=record.order_id,
            status=target,
            gateway_status=status.status,
            gateway_response=status.payload,
        )
