"""
Payment gateway API client for a redirect-based "PG checkout" provider.

Implements:
- Client-credentials token fetch (per operation, never cached)
- Hosted-checkout payment initiation
- Authoritative order status lookup

Every call takes an explicit GatewayConfig. The client holds no
credentials of its own, so one instance can serve test and production
traffic side by side without either leaking into the other.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import structlog

from storefront_payments.config import GatewayConfig
from storefront_payments.domain.state_machine import GatewayStatus
from storefront_payments.exceptions import GatewayError
from storefront_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Provider order states → normalized status
PROVIDER_STATE_MAP: Dict[str, GatewayStatus] = {
    "COMPLETED": GatewayStatus.SUCCESS,
    "SUCCESS": GatewayStatus.SUCCESS,
    "PENDING": GatewayStatus.PENDING,
    "FAILED": GatewayStatus.FAILED,
    "FAILURE": GatewayStatus.FAILED,
    "DECLINED": GatewayStatus.FAILED,
    "CANCELLED": GatewayStatus.FAILED,
    "EXPIRED": GatewayStatus.FAILED,
}


@dataclass(frozen=True)
class PaymentRequest:
    """Body of a hosted-checkout payment request."""

    merchant_order_id: str
    amount_minor: int
    redirect_url: str
    customer_info: Dict[str, Any] = field(default_factory=dict)
    message: str = "Payment for your order"


@dataclass(frozen=True)
class PaymentInitiation:
    """Accepted payment request: where to send the shopper."""

    redirect_url: str
    gateway_order_id: str
    state: Optional[str]
    payload: Dict[str, Any]


@dataclass(frozen=True)
class GatewayStatusResult:
    """Normalized provider status plus the raw response."""

    status: GatewayStatus
    provider_state: str
    payload: Dict[str, Any]


def normalize_state(state: Any, payload: Dict[str, Any]) -> GatewayStatus:
    """
    Map a provider order state to SUCCESS, PENDING or FAILED.

    Raises:
        GatewayError: If the state is missing or unknown
    """
    if not isinstance(state, str) or not state:
        raise GatewayError("Malformed status response: missing state", payload=payload)
    try:
        return PROVIDER_STATE_MAP[state.upper()]
    except KeyError:
        raise GatewayError(
            f"Malformed status response: unknown state {state!r}", payload=payload
        ) from None


class GatewayClient:
    """
    HTTP client for the payment provider.

    Wraps an injected httpx.AsyncClient (shared by the API process) or owns
    one when none is given. No retries: a failed call surfaces as a
    GatewayError and the caller decides what to persist.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None) -> None:
        """
        Initialize gateway client.

        Args:
            http_client: Optional shared HTTP client
        """
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient()

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http.aclose()

    async def _request(
        self,
        config: GatewayConfig,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """
        Send one request and return the decoded JSON object.

        Raises:
            GatewayError: On timeout, transport error, non-2xx or non-JSON body
        """
        url = f"{config.base_url}{path}"
        start_time = time.time()

        try:
            response = await self._http.request(
                method, url, timeout=config.timeout_seconds, **kwargs
            )
        except httpx.TimeoutException as e:
            metrics.record_gateway_error(operation, "timeout")
            logger.error(
                "gateway_request_timeout",
                operation=operation,
                environment=config.environment.value,
                timeout_seconds=config.timeout_seconds,
            )
            raise GatewayError(f"{operation} timed out after {config.timeout_seconds}s") from e
        except httpx.HTTPError as e:
            metrics.record_gateway_error(operation, "transport")
            logger.error(
                "gateway_request_failed",
                operation=operation,
                environment=config.environment.value,
                error=str(e),
            )
            raise GatewayError(f"{operation} request failed: {e}") from e

        duration = time.time() - start_time

        try:
            payload = response.json()
        except ValueError:
            payload = None
        body: Dict[str, Any] = payload if isinstance(payload, dict) else {"raw": response.text}

        if not response.is_success:
            metrics.record_gateway_call(operation, "error", duration)
            metrics.record_gateway_error(operation, f"http_{response.status_code}")
            logger.error(
                "gateway_error_response",
                operation=operation,
                environment=config.environment.value,
                status_code=response.status_code,
                payload=body,
            )
            raise GatewayError(
                f"{operation} returned HTTP {response.status_code}",
                status_code=response.status_code,
                payload=body,
            )

        if not isinstance(payload, dict):
            metrics.record_gateway_call(operation, "error", duration)
            metrics.record_gateway_error(operation, "malformed")
            raise GatewayError(
                f"{operation} returned a non-JSON body",
                status_code=response.status_code,
                payload=body,
            )

        metrics.record_gateway_call(operation, "ok", duration)
        return payload

    async def authenticate(self, config: GatewayConfig) -> str:
        """
        Fetch an access token with client credentials.

        Args:
            config: Gateway configuration for the operation

        Returns:
            str: Access token

        Raises:
            GatewayError: If the token request fails
        """
        payload = await self._request(
            config,
            "authenticate",
            "POST",
            "/v1/oauth/token",
            data={
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "client_version": config.client_version,
                "grant_type": "client_credentials",
            },
        )

        token = payload.get("access_token")
        if not token:
            # Token responses are not stored; drop anything that looks secret
            raise GatewayError(
                "Authentication response missing access_token",
                payload={k: v for k, v in payload.items() if "token" not in k},
            )
        return str(token)

    async def pay(self, config: GatewayConfig, request: PaymentRequest) -> PaymentInitiation:
        """
        Create a hosted-checkout payment.

        Args:
            config: Gateway configuration for the operation
            request: Payment request

        Returns:
            PaymentInitiation: Redirect URL, provider order id and raw payload

        Raises:
            GatewayError: If the request fails or the response is malformed
        """
        token = await self.authenticate(config)
        customer = request.customer_info or {}
        meta_info = {
            "udf1": customer.get("name"),
            "udf2": customer.get("email"),
            "udf3": customer.get("phone"),
            "udf4": f"order_{request.merchant_order_id}",
            "udf5": "payment_for_order",
        }

        body = {
            "merchantOrderId": request.merchant_order_id,
            "amount": request.amount_minor,
            "expireAfter": config.expire_after_seconds,
            "metaInfo": {k: v for k, v in meta_info.items() if v is not None},
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "message": request.message,
                "merchantUrls": {"redirectUrl": request.redirect_url},
            },
        }

        logger.info(
            "gateway_pay_requested",
            merchant_order_id=request.merchant_order_id,
            amount_minor=request.amount_minor,
            environment=config.environment.value,
        )

        payload = await self._request(
            config,
            "pay",
            "POST",
            "/checkout/v2/pay",
            json=body,
            headers={"Authorization": f"O-Bearer {token}"},
        )

        redirect_url = payload.get("redirectUrl")
        gateway_order_id = payload.get("orderId") or payload.get("providerOrderId")
        if not redirect_url or not gateway_order_id:
            metrics.record_gateway_error("pay", "malformed")
            raise GatewayError(
                "Malformed pay response: missing redirectUrl or orderId", payload=payload
            )

        return PaymentInitiation(
            redirect_url=str(redirect_url),
            gateway_order_id=str(gateway_order_id),
            state=payload.get("state"),
            payload=payload,
        )

    async def query_status(
        self, config: GatewayConfig, merchant_order_id: str
    ) -> GatewayStatusResult:
        """
        Ask the provider for the authoritative state of an order.

        Args:
            config: Gateway configuration for the operation
            merchant_order_id: Merchant order id sent with pay()

        Returns:
            GatewayStatusResult: Normalized status and raw payload

        Raises:
            GatewayError: If the request fails or the state is missing/unknown
        """
        token = await self.authenticate(config)

        payload = await self._request(
            config,
            "query_status",
            "GET",
            f"/checkout/v2/order/{merchant_order_id}/status",
            headers={"Authorization": f"O-Bearer {token}"},
        )

        state = payload.get("state", payload.get("paymentState"))
        status = normalize_state(state, payload)

        logger.info(
            "gateway_status_received",
            merchant_order_id=merchant_order_id,
            provider_state=state,
            status=status.value,
        )
        return GatewayStatusResult(status=status, provider_state=str(state), payload=payload)
