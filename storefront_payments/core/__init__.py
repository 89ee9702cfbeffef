"""Core payment-transaction lifecycle logic."""
from .orchestrator import TransactionOrchestrator
from .outbox import OutboxPublisher
from .reconciler import CallbackReconciler
from .reconciliation import ReconciliationSweep

__all__ = [
    "CallbackReconciler",
    "OutboxPublisher",
    "ReconciliationSweep",
    "TransactionOrchestrator",
]
