"""
Pytest configuration and fixtures.
"""
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, List

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from payrecon.config import Settings
from payrecon.db.init_db import create_session_factory
from payrecon.db.models import Base
from payrecon.mocks.gateway import MockGateway
from payrecon.models.transactions import MerchantProfile, NewTransaction
from payrecon.services.gateway_client import GatewayClient
from payrecon.services.transaction_store import TransactionStore


class RecordingSleep:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        gateway_login="test_login",
        gateway_api_key="test_api_key",
        gateway_payment_url="https://gateway.test/app/?show=getpayment&mode=api8",
        gateway_status_url="https://gateway.test/app/?show=paymentstatus&mode=api8",
        gateway_refund_url="https://gateway.test/app/?show=refund&mode=api8",
        gateway_health_url="https://gateway.test/",
        order_id_prefix="SB0",
        rate_limit_delay_seconds=0.0,
        retry_base_delay_seconds=1.0,
        database_path=":memory:",
        log_level="DEBUG",
    )


@pytest.fixture
def profile() -> MerchantProfile:
    return MerchantProfile(owner_id="merchant_001", currency="ILS", language="he")


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def store(test_engine: AsyncEngine) -> TransactionStore:
    return TransactionStore(create_session_factory(test_engine))


@pytest.fixture
def new_transaction() -> Callable[..., NewTransaction]:
    """Factory for NewTransaction with sensible defaults."""
    counter = {"n": 0}

    def _make(**overrides: Any) -> NewTransaction:
        counter["n"] += 1
        data = {
            "owner_id": "merchant_001",
            "gateway_order_id": f"SB0-1760000000000-order{counter['n']:04d}",
            "amount": Decimal("100.50"),
            "currency": "ILS",
            "payment_url": f"https://mock-gateway.test/pay/{counter['n']}",
            "description": "Test payment",
        }
        data.update(overrides)
        return NewTransaction(**data)

    return _make


@pytest.fixture
def mock_gateway(test_settings: Settings) -> MockGateway:
    return MockGateway(test_settings)


@pytest_asyncio.fixture
async def gateway_http(mock_gateway: MockGateway) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client routed to the in-process mock gateway."""
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=mock_gateway.app)) as client:
        yield client


@pytest.fixture
def gateway_client(
    gateway_http: httpx.AsyncClient,
    test_settings: Settings,
    sleeper: RecordingSleep
) -> GatewayClient:
    return GatewayClient(gateway_http, test_settings, sleep=sleeper)
