"""Transaction lifecycle domain types."""
from .models import (
    CompletionResult,
    InitiationResult,
    OrderRequest,
    TransactionRecord,
    from_minor_units,
    to_minor_units,
)
from .state_machine import (
    TERMINAL_STATUSES,
    GatewayStatus,
    TransactionStatus,
    can_transition,
    ensure_transition,
)

__all__ = [
    "CompletionResult",
    "GatewayStatus",
    "InitiationResult",
    "OrderRequest",
    "TERMINAL_STATUSES",
    "TransactionRecord",
    "TransactionStatus",
    "can_transition",
    "ensure_transition",
    "from_minor_units",
    "to_minor_units",
]
