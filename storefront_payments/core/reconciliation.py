"""
Stale transaction sweep.

Catches transactions whose shopper never came back through the callback:
- processing past the cutoff: reconciled against the provider
- initiated past the cutoff: reported only (the gateway may or may not
  hold an order for them, and there is no gateway order id to ask about)
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import structlog

from storefront_payments.config import GatewayConfig, GatewayEnvironment
from storefront_payments.core.reconciler import CallbackReconciler
from storefront_payments.database.transaction_store import TransactionStore
from storefront_payments.domain.state_machine import TransactionStatus
from storefront_payments.exceptions import (
    ConfigurationError,
    GatewayError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from storefront_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ConfigResolver = Callable[[GatewayEnvironment], GatewayConfig]


class ReconciliationSweep:
    """
    Periodic sweep over non-terminal transactions.

    Reconciliation goes through CallbackReconciler.complete(), so a sweep
    racing a live callback settles the transaction exactly once.
    """

    def __init__(
        self,
        store: TransactionStore,
        reconciler: CallbackReconciler,
        config_resolver: ConfigResolver,
        stale_after_seconds: int = 1800,
        batch_size: int = 100,
    ):
        """
        Initialize reconciliation sweep.

        Args:
            store: Transaction store
            reconciler: Callback reconciler
            config_resolver: Builds the gateway config for an environment
            stale_after_seconds: Age after which a transaction is stale
            batch_size: Max transactions per status per run
        """
        self.store = store
        self.reconciler = reconciler
        self.config_resolver = config_resolver
        self.stale_after_seconds = stale_after_seconds
        self.batch_size = batch_size

    async def _count_settled(self, transaction_id: str, summary: Dict[str, Any]) -> None:
        """Count a transaction that complete() settled before re-raising."""
        try:
            current = await self.store.get(transaction_id)
        except PersistenceError as e:
            logger.error("sweep_status_read_failed", transaction_id=transaction_id, error=e.message)
            return
        if current is not None and current.is_terminal:
            summary["reconciled"][current.status.value] += 1

    async def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run one sweep.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            Dict[str, Any]: Counts per outcome and the stuck initiated ids
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.stale_after_seconds)

        logger.info("sweep_started", cutoff=cutoff.isoformat())

        summary: Dict[str, Any] = {
            "reconciled": {status.value: 0 for status in TransactionStatus},
            "errors": 0,
            "stuck_initiated": [],
        }
        configs: Dict[str, GatewayConfig] = {}

        stale = await self.store.list_by_status(
            TransactionStatus.PROCESSING, older_than=cutoff, limit=self.batch_size
        )
        for record in stale:
            if not record.gateway_order_id:
                continue

            try:
                if record.environment not in configs:
                    configs[record.environment] = self.config_resolver(
                        GatewayEnvironment(record.environment)
                    )
                result = await self.reconciler.complete(
                    record.gateway_order_id, configs[record.environment]
                )
            except (
                ConfigurationError,
                GatewayError,
                NotFoundError,
                PersistenceError,
                ValidationError,
            ) as e:
                summary["errors"] += 1
                logger.error(
                    "sweep_reconcile_failed",
                    transaction_id=record.id,
                    gateway_order_id=record.gateway_order_id,
                    error_type=type(e).__name__,
                    error=e.message,
                )
                if isinstance(e, GatewayError):
                    await self._count_settled(record.id, summary)
                continue

            summary["reconciled"][result.status.value] += 1

        stuck = await self.store.list_by_status(
            TransactionStatus.INITIATED, older_than=cutoff, limit=self.batch_size
        )
        for record in stuck:
            summary["stuck_initiated"].append(record.id)
            logger.error(
                "transaction_stuck_initiated",
                transaction_id=record.id,
                order_id=record.order_id,
                merchant_order_id=record.merchant_order_id,
                environment=record.environment,
                created_at=record.created_at.isoformat(),
            )

        metrics.set_sweep_metrics(len(stale), len(stuck))
        logger.info(
            "sweep_completed",
            stale_processing=len(stale),
            stuck_initiated=len(stuck),
            errors=summary["errors"],
        )
        return summary
