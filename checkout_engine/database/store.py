"""
Authoritative store access.

ProductStore owns every change to ``products.stock``. Each decrement and each
compensating increment runs in its own short transaction so a failure on one
product never holds row locks for another.

OrderStore persists orders with their first payment and performs the
guarded stock release shared by the reconciler and the order expiry sweep.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout_engine.database.models import (
    Order,
    OrderLine,
    Payment,
    PaymentEvent,
    Product,
    utcnow,
)
from checkout_engine.domain.errors import (
    InvalidRequest,
    ProductNotFound,
    StoreUnavailable,
)
from checkout_engine.domain.status import OrderStatus, PaymentStatus, ensure_order_transition

logger = structlog.get_logger(__name__)


async def add_stock(session: AsyncSession, product_id: str, quantity: int) -> bool:
    """
    Return ``quantity`` units to a product inside the caller's transaction.

    Returns:
        bool: False if the product no longer exists
    """
    result = await session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def record_event(
    session: AsyncSession,
    order_id: str,
    event_type: str,
    event_data: Dict[str, Any],
    payment_id: Optional[uuid.UUID] = None,
    correlation_id: Optional[uuid.UUID] = None,
) -> PaymentEvent:
    """Append an audit event to the caller's transaction."""
    event = PaymentEvent(
        payment_id=payment_id,
        order_id=order_id,
        event_type=event_type,
        event_data=event_data,
        correlation_id=correlation_id or uuid.uuid4(),
    )
    session.add(event)
    return event


class ProductStore:
    """Repository for products and their authoritative stock."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, product_id: str) -> Product | None:
        try:
            async with self.session_factory() as session:
                return await session.get(Product, product_id)
        except OperationalError as e:
            raise StoreUnavailable(f"Product store unavailable: {e}") from e

    async def require(self, product_id: str) -> Product:
        product = await self.get(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        return product

    async def list_all(self) -> List[Product]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(Product).order_by(Product.id))
                return list(result.scalars().all())
        except OperationalError as e:
            raise StoreUnavailable(f"Product store unavailable: {e}") from e

    async def create(
        self, product_id: str, name: str, unit_price_cents: int, stock: int
    ) -> Product:
        """
        Register a product.

        Raises:
            InvalidRequest: If the product already exists or values are negative
        """
        if unit_price_cents < 0 or stock < 0:
            raise InvalidRequest("Price and stock must not be negative")

        async with self.session_factory() as session, session.begin():
            if await session.get(Product, product_id) is not None:
                raise InvalidRequest(f"Product {product_id} already exists")
            product = Product(
                id=product_id, name=name, unit_price_cents=unit_price_cents, stock=stock
            )
            session.add(product)

        logger.info("product_created", product_id=product_id, stock=stock)
        return product

    async def set_stock(self, product_id: str, stock: int) -> None:
        """Overwrite authoritative stock (administrative correction)."""
        if stock < 0:
            raise InvalidRequest("Stock must not be negative")
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(stock=stock)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ProductNotFound(product_id)

    async def try_decrement(self, product_id: str, quantity: int) -> bool:
        """
        Conditionally take ``quantity`` units in a single UPDATE.

        ``UPDATE products SET stock = stock - qty WHERE id = ? AND stock >= qty``

        Returns:
            bool: True if a row was updated, False if stock was insufficient
                at the time of the update
        """
        try:
            async with self.session_factory() as session, session.begin():
                result = await session.execute(
                    update(Product)
                    .where(Product.id == product_id, Product.stock >= quantity)
                    .values(stock=Product.stock - quantity)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1
        except OperationalError as e:
            raise StoreUnavailable(f"Product store unavailable: {e}") from e

    async def increment(self, product_id: str, quantity: int) -> None:
        """
        Return ``quantity`` units in its own transaction.

        Raises:
            ProductNotFound: If the product was deleted in the meantime
        """
        try:
            async with self.session_factory() as session, session.begin():
                if not await add_stock(session, product_id, quantity):
                    raise ProductNotFound(product_id)
        except OperationalError as e:
            raise StoreUnavailable(f"Product store unavailable: {e}") from e


class OrderStore:
    """Repository for orders, their lines and payments."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, order_id: str) -> Order | None:
        async with self.session_factory() as session:
            return await session.get(Order, order_id)

    async def create_pending(
        self,
        order_id: str,
        user_id: str,
        lines: Sequence[OrderLine],
        total_amount_cents: int,
        currency: str,
        shipping_address: Dict[str, Any],
        provider: str,
        receipt: str,
        correlation_id: uuid.UUID,
    ) -> Order:
        """
        Persist a pending order, its first payment and the audit event atomically.

        Args:
            order_id: Provider reference, used as the order id
            user_id: Paying user
            lines: Order lines with captured name and unit price
            total_amount_cents: Server-computed total
            currency: Deployment currency
            shipping_address: Address as a JSON-ready dict
            provider: ``stripe`` or ``broker``
            receipt: Receipt/idempotency key sent to the provider
            correlation_id: Correlation id for the audit trail

        Returns:
            Order: The persisted order
        """
        async with self.session_factory() as session, session.begin():
            order = Order(
                id=order_id,
                user_id=user_id,
                total_amount_cents=total_amount_cents,
                currency=currency,
                shipping_address=shipping_address,
                status=OrderStatus.PENDING.value,
                lines=list(lines),
            )
            payment = Payment(
                id=uuid.uuid4(),
                order=order,
                provider_reference=order_id,
                provider=provider,
                status=PaymentStatus.CREATED.value,
                amount_cents=total_amount_cents,
                receipt=receipt,
            )
            session.add(order)
            session.add(payment)
            record_event(
                session,
                order_id=order_id,
                event_type="payment.created",
                event_data={
                    "amount_cents": total_amount_cents,
                    "currency": currency,
                    "provider": provider,
                    "receipt": receipt,
                },
                payment_id=payment.id,
                correlation_id=correlation_id,
            )
        return order

    async def find_pending_older_than(self, cutoff: datetime) -> List[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order.id)
                .where(
                    Order.status == OrderStatus.PENDING.value,
                    Order.created_at < cutoff,
                )
                .order_by(Order.created_at)
            )
            return list(result.scalars().all())

    async def find_failed_unreleased(self) -> List[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order.id)
                .where(
                    Order.status == OrderStatus.FAILED.value,
                    Order.stock_released_at.is_(None),
                )
                .order_by(Order.created_at)
            )
            return list(result.scalars().all())

    async def release_stock(
        self,
        order_id: str,
        from_status: OrderStatus,
        to_status: OrderStatus,
        reason: str,
    ) -> bool:
        """
        Return an order's stock exactly once.

        Stamps ``stock_released_at`` with an UPDATE guarded on the current
        status and an empty stamp, then increments every line's product in
        the same transaction. A concurrent or repeated release matches zero
        rows and changes nothing.

        Args:
            order_id: Order to release
            from_status: Status the order must currently have
            to_status: Status after the release (may equal ``from_status``)
            reason: Recorded on the audit event

        Returns:
            bool: True if this call released the stock
        """
        if to_status != from_status:
            ensure_order_transition(from_status, to_status)

        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.status == from_status.value,
                    Order.stock_released_at.is_(None),
                )
                .values(status=to_status.value, stock_released_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            lines = (
                await session.execute(select(OrderLine).where(OrderLine.order_id == order_id))
            ).scalars().all()
            restored = []
            for line in lines:
                if await add_stock(session, line.product_id, line.quantity):
                    restored.append({"product_id": line.product_id, "quantity": line.quantity})
                else:
                    logger.error(
                        "stock_release_product_missing",
                        order_id=order_id,
                        product_id=line.product_id,
                        quantity=line.quantity,
                    )

            record_event(
                session,
                order_id=order_id,
                event_type="order.stock_released",
                event_data={
                    "reason": reason,
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                    "lines": restored,
                },
            )

        logger.info(
            "order_stock_released",
            order_id=order_id,
            from_status=from_status.value,
            to_status=to_status.value,
            reason=reason,
        )
        return True
