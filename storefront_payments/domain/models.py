"""
Value objects passed between the orchestrator, reconciler and store.

Amounts are Decimal at the edges and integer minor units (paisa/cents)
on the wire and in storage.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from storefront_payments.domain.state_machine import GatewayStatus, TransactionStatus

MINOR_UNITS = Decimal("100")


def to_minor_units(amount: Decimal) -> int:
    """
    Convert a currency amount to integer minor units.

    Raises:
        ValueError: If the amount has more than two fractional digits
    """
    try:
        minor = Decimal(str(amount)) * MINOR_UNITS
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e
    if minor != minor.to_integral_value():
        raise ValueError(f"Amount has more than two decimal places: {amount}")
    return int(minor)


def from_minor_units(amount_minor: int) -> Decimal:
    """Convert integer minor units back to a two-place Decimal."""
    return (Decimal(amount_minor) / MINOR_UNITS).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class OrderRequest:
    """A checkout the storefront wants to pay for."""

    order_id: str
    amount: Decimal
    user_id: str = "anonymous"
    customer_info: Dict[str, Any] = field(default_factory=dict)
    redirect_url: Optional[str] = None


class TransactionRecord(BaseModel):
    """Snapshot of a stored transaction."""

    model_config = ConfigDict(frozen=True)

    id: str
    order_id: str
    user_id: str
    merchant_order_id: str
    gateway_order_id: Optional[str] = None
    amount: Decimal
    currency: str
    environment: str
    provider: str
    status: TransactionStatus
    gateway_response: Dict[str, Any]
    customer_info: Dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(frozen=True)
class InitiationResult:
    """Returned by initiate(); the browser is sent to redirect_url."""

    transaction_id: str
    redirect_url: str
    gateway_order_id: str
    merchant_order_id: str


@dataclass(frozen=True)
class CompletionResult:
    """Returned by complete(); raw payload is for logging, not for shoppers."""

    transaction_id: str
    order_id: str
    status: TransactionStatus
    gateway_status: Optional[GatewayStatus]
    gateway_response: Dict[str, Any]
    already_final: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status is TransactionStatus.SUCCEEDED
