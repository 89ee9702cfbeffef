"""
Pytest configuration and fixtures.
"""
import asyncio
import json
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from storefront_payments.config import GatewayConfig, GatewayEnvironment
from storefront_payments.core.orchestrator import TransactionOrchestrator
from storefront_payments.core.reconciler import CallbackReconciler
from storefront_payments.database.models import Base
from storefront_payments.database.transaction_store import TransactionStore
from storefront_payments.domain.models import OrderRequest
from storefront_payments.integrations.gateway_client import GatewayClient

GATEWAY_BASE_URL = "https://gateway.test/apis/pg-sandbox"


class FakeGateway:
    """
    In-memory payment provider served through httpx.MockTransport.

    Each pay() call gets a fresh provider order id. Status lookups are keyed
    by merchant order id, answer 404 for ids never sent to pay(), and report
    status_state unless a failure mode is switched on.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.pay_status_code = 200
        self.pay_body: Optional[Dict[str, Any]] = None
        self.pay_timeout = False
        self.status_state = "COMPLETED"
        self.status_status_code = 200
        self.status_timeout = False
        self.status_delay = 0.0
        self._next_order = 0
        self.orders: Dict[str, str] = {}

    def calls(self, suffix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(suffix))

    def register(self, merchant_order_id: str, order_id: Optional[str] = None) -> str:
        """Record an order as if pay() had accepted it."""
        if order_id is None:
            self._next_order += 1
            order_id = f"OMO{self._next_order:06d}"
        self.orders[merchant_order_id] = order_id
        return order_id

    @property
    def status_calls(self) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith("/status"))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/v1/oauth/token"):
            return httpx.Response(200, json={"access_token": "test-token", "expires_at": 9999999999})

        if path.endswith("/checkout/v2/pay"):
            if self.pay_timeout:
                raise httpx.ReadTimeout("timed out", request=request)
            merchant_order_id = json.loads(request.content)["merchantOrderId"]
            if self.pay_body is not None:
                provider_id = self.pay_body.get("orderId") or self.pay_body.get("providerOrderId")
                if self.pay_status_code < 300 and provider_id:
                    self.register(merchant_order_id, provider_id)
                return httpx.Response(self.pay_status_code, json=self.pay_body)
            order_id = self.register(merchant_order_id)
            return httpx.Response(
                self.pay_status_code,
                json={
                    "orderId": order_id,
                    "state": "PENDING",
                    "expireAt": 1760000000000,
                    "redirectUrl": f"https://pay.gateway.test/checkout/{order_id}",
                },
            )

        if "/checkout/v2/order/" in path and path.endswith("/status"):
            if self.status_delay:
                await asyncio.sleep(self.status_delay)
            if self.status_timeout:
                raise httpx.ReadTimeout("timed out", request=request)
            merchant_order_id = path.split("/")[-2]
            order_id = self.orders.get(merchant_order_id)
            if order_id is None:
                return httpx.Response(404, json={"code": "ORDER_NOT_FOUND"})
            return httpx.Response(
                self.status_status_code,
                json={
                    "orderId": order_id,
                    "merchantOrderId": merchant_order_id,
                    "state": self.status_state,
                    "amount": 10000,
                    "paymentDetails": [
                        {"transactionId": f"TXN-{order_id}", "state": self.status_state}
                    ],
                },
            )

        return httpx.Response(404, json={"code": "NOT_FOUND"})


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite database, one per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> TransactionStore:
    return TransactionStore(session_factory)


@pytest.fixture
def gateway_config() -> GatewayConfig:
    """Sandbox gateway config with fake credentials."""
    return GatewayConfig(
        environment=GatewayEnvironment.TEST,
        base_url=GATEWAY_BASE_URL,
        client_id="test-client",
        client_secret="test-secret",
        redirect_url="https://shop.test/payment/callback",
        timeout_seconds=2.0,
    )


@pytest.fixture
def production_config(gateway_config: GatewayConfig) -> GatewayConfig:
    return gateway_config.model_copy(
        update={"environment": GatewayEnvironment.PRODUCTION, "base_url": "https://gateway.test/apis/pg"}
    )


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def http_client(fake_gateway: FakeGateway) -> AsyncGenerator[httpx.AsyncClient, Any]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_gateway.handler)) as client:
        yield client


@pytest.fixture
def gateway_client(http_client: httpx.AsyncClient) -> GatewayClient:
    return GatewayClient(http_client)


@pytest.fixture
def orchestrator(store: TransactionStore, gateway_client: GatewayClient) -> TransactionOrchestrator:
    return TransactionOrchestrator(store, gateway_client, merchant_order_prefix="TEST")


@pytest.fixture
def reconciler(store: TransactionStore, gateway_client: GatewayClient) -> CallbackReconciler:
    return CallbackReconciler(store, gateway_client)


@pytest.fixture
def sample_order() -> OrderRequest:
    """Sample checkout order."""
    return OrderRequest(
        order_id="order_123",
        amount=Decimal("100.00"),
        user_id="user_42",
        customer_info={"name": "Asha Rao", "email": "asha@example.com", "phone": "9999999999"},
    )


def transaction_fields(**overrides: Any) -> Dict[str, Any]:
    """Minimal valid store.create() input."""
    fields: Dict[str, Any] = {
        "order_id": "order_123",
        "merchant_order_id": "TEST_1700000000000_abcd1234",
        "amount": Decimal("100.00"),
        "environment": "test",
    }
    fields.update(overrides)
    return fields
