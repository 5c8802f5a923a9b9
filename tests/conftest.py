"""
Pytest configuration and fixtures.

Redis is replaced by fakeredis (with Lua, for redis-py locks) and the
authoritative store by a per-test SQLite file, so the suite runs without
external services.
"""
import os
import uuid
from typing import Any, AsyncGenerator, Dict, List, Optional

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./checkout-test.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("APP_ENV", "test")

import fakeredis  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from checkout_engine.config import Settings  # noqa: E402
from checkout_engine.database.connection import build_session_factory, init_db  # noqa: E402
from checkout_engine.domain.errors import CheckoutError  # noqa: E402
from checkout_engine.domain.models import Payer  # noqa: E402
from checkout_engine.integrations.notifier import OrderNotifier  # noqa: E402
from checkout_engine.integrations.payment_gateway import (  # noqa: E402
    PaymentGateway,
    PaymentReference,
    PaymentRequest,
)
from checkout_engine.services import Services, build_services  # noqa: E402

WEBHOOK_SECRET = "whsec_test_fake_secret"

SHIPPING_ADDRESS: Dict[str, Any] = {
    "street": "12 MG Road",
    "city": "Kochi",
    "state": "Kerala",
    "pincode": "682001",
}


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O beyond fakes")
    config.addinivalue_line("markers", "integration: tests spanning several components")
    config.addinivalue_line("markers", "race: concurrency and oversell tests")


class FakePaymentGateway(PaymentGateway):
    """Gateway double: records requests, returns fresh references or a set error."""

    provider = "stripe"

    def __init__(self) -> None:
        self.requests: List[PaymentRequest] = []
        self.error: Optional[CheckoutError] = None
        self.healthy = True

    async def request_payment(self, request: PaymentRequest) -> PaymentReference:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return PaymentReference(
            reference=f"pi_test_{uuid.uuid4().hex[:16]}",
            amount_cents=request.amount_cents,
            status="requires_payment_method",
            checkout_token="pi_secret_test",
            provider=self.provider,
        )

    async def check_health(self) -> Dict[str, Any]:
        if not self.healthy:
            raise ConnectionError("payment backend down")
        return {"status": "healthy", "service": "fake_gateway"}


class RecordingNotifier(OrderNotifier):
    def __init__(self) -> None:
        self.confirmed: List[str] = []

    async def order_confirmed(self, order: Any) -> None:
        self.confirmed.append(order.id)


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}",
        redis_url="redis://localhost:6379/15",
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        currency="usd",
        app_name="checkout-engine-test",
        app_env="test",
        log_level="DEBUG",
        hold_lock_wait=1.0,
    )


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[fakeredis.FakeAsyncRedis, Any]:
    """Isolated in-memory Redis per test."""
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """SQLite file database with the schema created."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> Any:
    return build_session_factory(db_engine)


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def services(
    test_settings: Settings,
    redis_client: fakeredis.FakeAsyncRedis,
    session_factory: Any,
    gateway: FakePaymentGateway,
    notifier: RecordingNotifier,
) -> Services:
    """Fully wired checkout engine over fakes."""
    return build_services(
        test_settings,
        redis_client=redis_client,
        session_factory=session_factory,
        gateway=gateway,
        notifier=notifier,
    )


@pytest_asyncio.fixture
async def seeded(services: Services) -> Services:
    """
    Services with two products registered.

    - ``sku-oil``: 250 cents, 5 in stock
    - ``sku-rice``: 120 cents, 10 in stock
    """
    await services.register_product("sku-oil", "Coconut oil 1L", 250, 5)
    await services.register_product("sku-rice", "Matta rice 5kg", 120, 10)
    return services


@pytest.fixture
def payer() -> Payer:
    return Payer(user_id="user-1", email="asha@example.com", first_name="Asha", last_name="Nair")


@pytest.fixture
def shipping_address() -> Dict[str, Any]:
    return dict(SHIPPING_ADDRESS)
