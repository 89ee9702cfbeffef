"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CompletePaymentRequest,
    CompletePaymentResponse,
    CreatePaymentRequest,
    CreatePaymentResponse,
    PaymentStatusResponse,
)

__all__ = [
    "app",
    "CompletePaymentRequest",
    "CompletePaymentResponse",
    "CreatePaymentRequest",
    "CreatePaymentResponse",
    "PaymentStatusResponse",
]
