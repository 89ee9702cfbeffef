"""
API routes for checkout payments.
"""
from typing import Any, Dict

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront_payments.config import GatewayConfig, get_settings
from storefront_payments.core.orchestrator import TransactionOrchestrator
from storefront_payments.core.reconciler import CallbackReconciler
from storefront_payments.database.connection import get_session_factory
from storefront_payments.database.transaction_store import TransactionStore
from storefront_payments.domain.models import OrderRequest
from storefront_payments.domain.state_machine import TransactionStatus
from storefront_payments.exceptions import GatewayError, NotFoundError, PaymentError
from storefront_payments.integrations.gateway_client import GatewayClient
from storefront_payments.monitoring.health import HealthCheck

from .schemas import (
    CompletePaymentRequest,
    CompletePaymentResponse,
    CreatePaymentRequest,
    CreatePaymentResponse,
    HealthCheckResponse,
    PaymentStatusResponse,
    TransactionEventsResponse,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(prefix="/payments", tags=["payments"])
monitoring_router = APIRouter(tags=["monitoring"])

COMPLETION_MESSAGES = {
    TransactionStatus.SUCCEEDED: "Payment successful.",
    TransactionStatus.PROCESSING: "Payment is still being processed.",
    TransactionStatus.FAILED: "Payment could not be completed. Please try again.",
}


def get_db_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """Session factory set up by the application lifespan."""
    factory = getattr(request.app.state, "session_factory", None)
    return factory or get_session_factory()


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Shared outbound HTTP client set up by the application lifespan."""
    client = getattr(request.app.state, "http_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "not_ready", "message": "Service is starting up"},
        )
    return client


def get_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> TransactionStore:
    return TransactionStore(session_factory)


def get_gateway_client(http_client: httpx.AsyncClient = Depends(get_http_client)) -> GatewayClient:
    return GatewayClient(http_client)


def get_gateway_config() -> GatewayConfig:
    """Gateway config for the server's configured environment, built per request."""
    return get_settings().resolve_gateway_config()


def get_orchestrator(
    store: TransactionStore = Depends(get_store),
    gateway_client: GatewayClient = Depends(get_gateway_client),
) -> TransactionOrchestrator:
    return TransactionOrchestrator(store, gateway_client)


def get_reconciler(
    store: TransactionStore = Depends(get_store),
    gateway_client: GatewayClient = Depends(get_gateway_client),
) -> CallbackReconciler:
    return CallbackReconciler(store, gateway_client)


def get_health_check(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> HealthCheck:
    return HealthCheck(session_factory)


def _http_error(error: PaymentError) -> HTTPException:
    """Map a payment error to an HTTP error carrying only the user message."""
    return HTTPException(status_code=error.http_status, detail=error.to_dict()["error"])


@payment_router.post(
    "",
    response_model=CreatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a payment",
    description="Create a transaction for an order and get the hosted payment page URL",
)
async def create_payment(
    request: CreatePaymentRequest,
    orchestrator: TransactionOrchestrator = Depends(get_orchestrator),
    config: GatewayConfig = Depends(get_gateway_config),
) -> Dict[str, Any]:
    """Start a checkout payment for an order."""
    logger.info(
        "api_create_payment_request",
        order_id=request.order_id,
        amount=str(request.amount),
        user_id=request.user_id,
    )

    order = OrderRequest(
        order_id=request.order_id,
        amount=request.amount,
        user_id=request.user_id,
        customer_info=request.customer_info.model_dump(exclude_none=True),
        redirect_url=request.redirect_url,
    )

    try:
        result = await orchestrator.initiate(order, config)
    except GatewayError as e:
        logger.error(
            "api_create_payment_gateway_error",
            order_id=request.order_id,
            reason=e.reason,
            status_code=e.status_code,
        )
        raise _http_error(e)
    except PaymentError as e:
        logger.warning(
            "api_create_payment_error",
            order_id=request.order_id,
            error_code=e.error_code,
            error=e.message,
        )
        raise _http_error(e)

    return {
        "transaction_id": result.transaction_id,
        "redirect_url": result.redirect_url,
        "gateway_order_id": result.gateway_order_id,
        "merchant_order_id": result.merchant_order_id,
    }


@payment_router.post(
    "/complete",
    response_model=CompletePaymentResponse,
    summary="Complete a payment",
    description="Reconcile a transaction with the provider after the shopper is redirected back",
)
async def complete_payment(
    request: CompletePaymentRequest,
    reconciler: CallbackReconciler = Depends(get_reconciler),
    config: GatewayConfig = Depends(get_gateway_config),
) -> Dict[str, Any]:
    """
    Browser redirect callback.

    Safe to call any number of times for the same gateway order id.
    """
    try:
        result = await reconciler.complete(request.gateway_order_id, config)
    except GatewayError as e:
        logger.error(
            "api_complete_payment_gateway_error",
            gateway_order_id=request.gateway_order_id,
            reason=e.reason,
            status_code=e.status_code,
        )
        raise _http_error(e)
    except PaymentError as e:
        logger.warning(
            "api_complete_payment_error",
            gateway_order_id=request.gateway_order_id,
            error_code=e.error_code,
            error=e.message,
        )
        raise _http_error(e)

    logger.info(
        "api_complete_payment_success",
        transaction_id=result.transaction_id,
        status=result.status.value,
        already_final=result.already_final,
    )

    return {
        "transaction_id": result.transaction_id,
        "order_id": result.order_id,
        "status": result.status.value,
        "already_final": result.already_final,
        "message": COMPLETION_MESSAGES[result.status],
    }


@payment_router.get(
    "/{transaction_id}",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Retrieve the stored status of a transaction",
)
async def get_payment_status(
    transaction_id: str,
    store: TransactionStore = Depends(get_store),
) -> Dict[str, Any]:
    """Get payment status by transaction ID."""
    try:
        record = await store.get(transaction_id)
    except PaymentError as e:
        logger.error("api_get_payment_status_error", transaction_id=transaction_id, error=e.message)
        raise _http_error(e)

    if record is None:
        raise _http_error(NotFoundError(f"Transaction {transaction_id} not found"))

    return {
        "id": record.id,
        "order_id": record.order_id,
        "merchant_order_id": record.merchant_order_id,
        "gateway_order_id": record.gateway_order_id,
        "amount": str(record.amount),
        "currency": record.currency,
        "environment": record.environment,
        "status": record.status.value,
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
    }


@payment_router.get(
    "/{transaction_id}/events",
    response_model=TransactionEventsResponse,
    summary="Get payment audit trail",
    description="List the status-change events recorded for a transaction",
)
async def get_payment_events(
    transaction_id: str,
    store: TransactionStore = Depends(get_store),
) -> Dict[str, Any]:
    """Get the audit trail for a transaction."""
    try:
        record = await store.get(transaction_id)
        if record is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        events = await store.list_events(transaction_id)
    except PaymentError as e:
        raise _http_error(e)

    return {"transaction_id": transaction_id, "events": events}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Overall health check."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    summary="Liveness probe",
    description="Kubernetes liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    summary="Readiness probe",
    description="Kubernetes readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
