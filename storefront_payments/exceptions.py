"""
Exception hierarchy for the payment-transaction lifecycle.

Every exception carries:
- Error code (for client handling)
- User message (safe to show to shoppers)
- HTTP status code (for API responses)

The internal message and any raw provider payload stay in the logs; the
user message for anything that went wrong with a payment is always the
generic one below.
"""
from typing import Any, Dict, Optional

GENERIC_USER_MESSAGE = "Payment could not be completed. Please try again."


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    error_code = "payment_error"
    http_status = 500

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or GENERIC_USER_MESSAGE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.user_message,
            }
        }


class ValidationError(PaymentError):
    """Bad input, rejected before any side effect."""

    error_code = "validation_error"
    http_status = 400

    def __init__(self, message: str):
        # Validation messages describe the caller's own input
        super().__init__(message, user_message=message)


class GatewayError(PaymentError):
    """
    Provider unreachable, non-2xx, timed out, or returned a malformed payload.

    Always carries the raw response for audit.
    """

    error_code = "gateway_error"
    http_status = 502

    def __init__(
        self,
        reason: str,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(f"Gateway error: {reason}")
        self.reason = reason
        self.status_code = status_code
        self.payload = payload if payload is not None else {}

    def as_response(self) -> Dict[str, Any]:
        """Structured form stored in a transaction's gateway_response."""
        return {
            "success": False,
            "error": self.reason,
            "status_code": self.status_code,
            "payload": self.payload,
        }


class PersistenceError(PaymentError):
    """Backing store unavailable or a write failed."""

    error_code = "persistence_error"
    http_status = 503


class NotFoundError(PaymentError):
    """Unknown transaction or order reference."""

    error_code = "not_found"
    http_status = 404

    def __init__(self, message: str):
        super().__init__(message, user_message="Payment not found.")


class InvalidTransitionError(PaymentError):
    """A status change outside the transaction state machine was requested."""

    error_code = "invalid_transition"
    http_status = 409


class ConfigurationError(PaymentError):
    """Gateway credentials or endpoints are missing for an environment."""

    error_code = "configuration_error"
    http_status = 500
