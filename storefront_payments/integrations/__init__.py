"""External integrations for payment processing."""
from .gateway_client import (
    GatewayClient,
    GatewayStatusResult,
    PaymentInitiation,
    PaymentRequest,
)
from .order_client import OrderServiceClient, OrderServiceError

__all__ = [
    "GatewayClient",
    "GatewayStatusResult",
    "OrderServiceClient",
    "OrderServiceError",
    "PaymentInitiation",
    "PaymentRequest",
]
