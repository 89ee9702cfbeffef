"""
Order management service client.

Marks an order as paid once its payment transaction has succeeded. Called
only by the outbox publisher, never inline with the status write.
"""
from typing import Any, Dict, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)


class OrderServiceError(Exception):
    """Raised when the order service rejects or fails an update."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OrderServiceClient:
    """HTTP client for the order record collaborator."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize order service client.

        Args:
            base_url: Order service base URL
            timeout_seconds: Per-request timeout
            http_client: Optional shared HTTP client
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient()

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http.aclose()

    async def mark_paid(self, order_id: str, payment_details: Dict[str, Any]) -> None:
        """
        Set an order's status to paid.

        The update is a full overwrite of status and paymentDetails, so
        delivering the same event twice leaves the order unchanged.

        Args:
            order_id: Storefront order id
            payment_details: Transaction summary stored on the order

        Raises:
            OrderServiceError: If the request fails or is rejected
        """
        url = f"{self.base_url}/orders/{order_id}"
        try:
            response = await self._http.patch(
                url,
                json={"status": "paid", "paymentDetails": payment_details},
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise OrderServiceError(f"Order update request failed: {e}") from e

        if not response.is_success:
            raise OrderServiceError(
                f"Order service returned HTTP {response.status_code} for order {order_id}",
                status_code=response.status_code,
            )

        logger.info("order_marked_paid", order_id=order_id)

    async def publish(self, event_data: Dict[str, Any]) -> None:
        """
        Deliver one outbox event.

        Args:
            event_data: Outbox event ({"event_type", "payload", ...})

        Raises:
            OrderServiceError: If delivery fails or the event is not understood
        """
        event_type = event_data.get("event_type")
        payload = event_data.get("payload") or {}

        if event_type != "order.payment_succeeded":
            raise OrderServiceError(f"Unsupported outbox event type: {event_type}")

        order_id = payload.get("order_id")
        if not order_id:
            raise OrderServiceError("Outbox event payload has no order_id")

        await self.mark_paid(order_id, payload.get("payment_details", {}))
