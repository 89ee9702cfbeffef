"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CustomerInfo(BaseModel):
    """Shopper details forwarded to the payment page."""

    name: Optional[str] = Field(default=None, description="Customer name")
    email: Optional[str] = Field(default=None, description="Customer email")
    phone: Optional[str] = Field(default=None, description="Customer phone number")


class CreatePaymentRequest(BaseModel):
    """Request schema for starting a checkout payment."""

    order_id: str = Field(..., min_length=1, description="Storefront order id")
    amount: Decimal = Field(..., description="Amount in major units, at most two decimals (e.g. 100.00)")
    user_id: str = Field(default="anonymous", description="User identifier")
    customer_info: CustomerInfo = Field(default_factory=CustomerInfo, description="Shopper details")
    redirect_url: Optional[str] = Field(
        default=None, description="Override for the page the provider redirects back to"
    )

    @field_validator("order_id")
    @classmethod
    def validate_order_id(cls, v: str) -> str:
        """Strip surrounding whitespace."""
        return v.strip()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "order_id": "order_8f2c1d",
                    "amount": "100.00",
                    "user_id": "user_42",
                    "customer_info": {
                        "name": "Asha Rao",
                        "email": "asha@example.com",
                        "phone": "9999999999",
                    },
                }
            ]
        }
    }


class CreatePaymentResponse(BaseModel):
    """Response schema for a started checkout payment."""

    transaction_id: str = Field(..., description="Transaction ID")
    redirect_url: str = Field(..., description="Hosted payment page to send the shopper to")
    gateway_order_id: str = Field(..., description="Provider order id; keep it for the callback")
    merchant_order_id: str = Field(..., description="Merchant order id sent to the provider")


class CompletePaymentRequest(BaseModel):
    """
    Request schema for the browser redirect callback.

    Only the gateway order id is read. Any outcome the browser reports is
    dropped; the provider is always asked instead.
    """

    model_config = ConfigDict(extra="ignore")

    gateway_order_id: str = Field(..., min_length=1, description="Provider order id saved before redirect")


class CompletePaymentResponse(BaseModel):
    """Response schema for the browser redirect callback."""

    transaction_id: str = Field(..., description="Transaction ID")
    order_id: str = Field(..., description="Storefront order id")
    status: str = Field(..., description="Transaction status (processing/succeeded/failed)")
    already_final: bool = Field(..., description="True if the transaction was settled earlier")
    message: str = Field(..., description="Shopper-facing message")


class PaymentStatusResponse(BaseModel):
    """Response schema for payment status."""

    id: str = Field(..., description="Transaction ID")
    order_id: str = Field(..., description="Storefront order id")
    merchant_order_id: str = Field(..., description="Merchant order id")
    gateway_order_id: Optional[str] = Field(default=None, description="Provider order id")
    amount: str = Field(..., description="Amount in major units")
    currency: str = Field(..., description="Currency code")
    environment: str = Field(..., description="Gateway environment (test/production)")
    status: str = Field(..., description="Transaction status")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")


class TransactionEventResponse(BaseModel):
    """One audit event."""

    event_type: str = Field(..., description="Event type (e.g. transaction.succeeded)")
    event_data: Dict[str, Any] = Field(..., description="Event details")
    correlation_id: str = Field(..., description="Correlation ID")
    created_at: str = Field(..., description="Event timestamp (ISO 8601)")


class TransactionEventsResponse(BaseModel):
    """Audit trail for a transaction."""

    transaction_id: str = Field(..., description="Transaction ID")
    events: List[TransactionEventResponse] = Field(..., description="Events, oldest first")


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    payment_environment: Optional[str] = Field(default=None, description="Active gateway environment")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
