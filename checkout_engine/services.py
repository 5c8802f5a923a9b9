"""
Service wiring.

Builds every component of the checkout engine from settings once, for the
API process and the workers alike. Tests pass their own Redis client,
session factory and gateway.
"""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout_engine.config import Settings
from checkout_engine.core.cart_service import CartService
from checkout_engine.core.hold_registry import HoldRegistry
from checkout_engine.core.order_expiry import OrderExpirySweep
from checkout_engine.core.order_orchestrator import OrderOrchestrator
from checkout_engine.core.reclaimer import ReservationReclaimer
from checkout_engine.core.reconciler import Reconciler
from checkout_engine.core.redis_client import create_redis_client
from checkout_engine.core.stock_ledger import RebuildReport, StockLedger
from checkout_engine.database.connection import get_session_factory
from checkout_engine.database.store import OrderStore, ProductStore
from checkout_engine.integrations.broker_gateway import BrokerPaymentGateway
from checkout_engine.integrations.notifier import LoggingOrderNotifier, OrderNotifier
from checkout_engine.integrations.payment_gateway import PaymentGateway
from checkout_engine.integrations.stripe_client import StripeClient, StripePaymentGateway
from checkout_engine.integrations.webhook_handler import WebhookHandler
from checkout_engine.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


def build_gateway(settings: Settings) -> PaymentGateway:
    """Payment gateway selected by ``PAYMENT_BACKEND``."""
    if settings.payment_backend == "broker":
        return BrokerPaymentGateway(
            rabbitmq_url=settings.rabbitmq_url,
            request_queue=settings.payment_request_queue,
            reply_timeout_seconds=settings.payment_reply_timeout_seconds,
        )
    return StripePaymentGateway(StripeClient(settings))


@dataclass
class Services:
    """Every long-lived component of one process."""

    settings: Settings
    redis: aioredis.Redis
    session_factory: async_sessionmaker[AsyncSession]
    ledger: StockLedger
    holds: HoldRegistry
    cart: CartService
    products: ProductStore
    orders: OrderStore
    gateway: PaymentGateway
    orchestrator: OrderOrchestrator
    reconciler: Reconciler
    reclaimer: ReservationReclaimer
    order_expiry: OrderExpirySweep
    webhooks: WebhookHandler
    health: HealthCheck

    async def register_product(
        self, product_id: str, name: str, unit_price_cents: int, stock: int
    ) -> None:
        """Create the product and seed its ledger counter from the same stock."""
        await self.products.create(product_id, name, unit_price_cents, stock)
        await self.ledger.set(product_id, stock)

    async def rebuild_ledger(self) -> RebuildReport:
        """Reset holds and counters from authoritative stock."""
        products = await self.products.list_all()
        return await self.ledger.rebuild(
            [(product.id, product.stock) for product in products], self.holds
        )

    async def close(self) -> None:
        await self.redis.aclose()


def build_services(
    settings: Settings,
    redis_client: Optional[aioredis.Redis] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[OrderNotifier] = None,
) -> Services:
    """
    Wire the checkout engine.

    Args:
        settings: Application settings
        redis_client: Redis client (built from ``REDIS_URL`` when omitted)
        session_factory: SQLAlchemy session factory (global one when omitted)
        gateway: Payment gateway (selected by ``PAYMENT_BACKEND`` when omitted)
        notifier: Order confirmation hook (logging notifier when omitted)

    Returns:
        Services: The wired components
    """
    redis_client = redis_client or create_redis_client(settings.redis_url)
    session_factory = session_factory or get_session_factory()
    gateway = gateway or build_gateway(settings)

    ledger = StockLedger(redis_client)
    holds = HoldRegistry(
        redis_client,
        lock_timeout=settings.hold_lock_timeout,
        lock_wait=settings.hold_lock_wait,
    )
    cart = CartService(ledger, holds)
    products = ProductStore(session_factory)
    orders = OrderStore(session_factory)
    reconciler = Reconciler(session_factory, orders, notifier or LoggingOrderNotifier())

    logger.info(
        "services_built",
        payment_backend=gateway.provider,
        currency=settings.currency,
    )
    return Services(
        settings=settings,
        redis=redis_client,
        session_factory=session_factory,
        ledger=ledger,
        holds=holds,
        cart=cart,
        products=products,
        orders=orders,
        gateway=gateway,
        orchestrator=OrderOrchestrator(
            products, orders, gateway, settings.currency, cart_service=cart
        ),
        reconciler=reconciler,
        reclaimer=ReservationReclaimer(ledger, holds, hold_ttl_seconds=settings.hold_ttl_seconds),
        order_expiry=OrderExpirySweep(
            orders, pending_ttl_seconds=settings.pending_order_ttl_seconds
        ),
        webhooks=WebhookHandler(
            reconciler,
            redis_client,
            webhook_secret=settings.stripe_webhook_secret,
            dedup_ttl_seconds=settings.webhook_dedup_ttl,
        ),
        health=HealthCheck(session_factory, redis_client, gateway),
    )
