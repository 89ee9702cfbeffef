"""
Transaction lifecycle states.

State machine:
INITIATED → PROCESSING → SUCCEEDED
    ↓            ↓
  FAILED       FAILED

SUCCEEDED and FAILED are terminal. Status never moves backwards.
"""
from enum import Enum
from typing import Dict, FrozenSet

from storefront_payments.exceptions import InvalidTransitionError


class TransactionStatus(str, Enum):
    """Stored transaction status."""

    INITIATED = "initiated"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class GatewayStatus(str, Enum):
    """Normalized provider payment state."""

    SUCCESS = "SUCCESS"
    PENDING = "PENDING"
    FAILED = "FAILED"


TERMINAL_STATUSES: FrozenSet[TransactionStatus] = frozenset(
    {TransactionStatus.SUCCEEDED, TransactionStatus.FAILED}
)

ACTIVE_STATUSES: FrozenSet[TransactionStatus] = frozenset(
    {TransactionStatus.INITIATED, TransactionStatus.PROCESSING}
)

LEGAL_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.INITIATED: frozenset(
        {TransactionStatus.PROCESSING, TransactionStatus.FAILED}
    ),
    TransactionStatus.PROCESSING: frozenset(
        {TransactionStatus.SUCCEEDED, TransactionStatus.FAILED}
    ),
    TransactionStatus.SUCCEEDED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
}

# Provider reconciliation outcome → stored terminal status
GATEWAY_STATUS_TO_TRANSACTION: Dict[GatewayStatus, TransactionStatus] = {
    GatewayStatus.SUCCESS: TransactionStatus.SUCCEEDED,
    GatewayStatus.FAILED: TransactionStatus.FAILED,
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    """Check whether current → target is a legal transition."""
    return TransactionStatus(target) in LEGAL_TRANSITIONS[TransactionStatus(current)]


def ensure_transition(current: TransactionStatus, target: TransactionStatus) -> None:
    """
    Raise if current → target is not a legal transition.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Illegal status transition: {TransactionStatus(current).value} "
            f"-> {TransactionStatus(target).value}"
        )
