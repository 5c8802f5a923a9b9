"""SQLAlchemy database models for the authoritative checkout store."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from checkout_engine.domain.status import OrderStatus, PaymentStatus

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER primary keys
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_check(column: str, statuses: type, name: str) -> CheckConstraint:
    values = ", ".join(f"'{status.value}'" for status in statuses)
    return CheckConstraint(f"{column} IN ({values})", name=name)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Product(Base):
    """
    Products table.

    Holds the authoritative stock. Only the order orchestrator (conditional
    decrement) and the compensation paths (increment) change it.
    """

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("stock >= 0", name="non_negative_stock"),
        CheckConstraint("unit_price_cents >= 0", name="non_negative_price"),
    )

    def __repr__(self) -> str:
        """String representation of Product."""
        return f"<Product(id={self.id}, stock={self.stock}, price={self.unit_price_cents})>"


class Order(Base):
    """
    Orders table.

    The id is the payment provider's reference so provider events map
    straight back to the order. ``stock_released_at`` is stamped exactly once,
    when the order's stock goes back to the products table.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    total_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    shipping_address: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=OrderStatus.PENDING.value
    )
    stock_released_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    lines: Mapped[List["OrderLine"]] = relationship(
        back_populates="order", lazy="selectin", cascade="all, delete-orphan"
    )
    payments: Mapped[List["Payment"]] = relationship(
        back_populates="order", lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint("total_amount_cents >= 0", name="non_negative_total"),
        CheckConstraint("length(currency) = 3", name="valid_order_currency"),
        _status_check("status", OrderStatus, "valid_order_status"),
        Index("idx_orders_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, user_id={self.user_id}, "
            f"total={self.total_amount_cents}, status={self.status})>"
        )


class OrderLine(Base):
    """Order lines; name and unit price are captured when the order is placed."""

    __tablename__ = "order_lines"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    order: Mapped[Order] = relationship(back_populates="lines")

    __table_args__ = (CheckConstraint("quantity > 0", name="positive_line_quantity"),)

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


class Payment(Base):
    """
    Payment records table.

    One row per payment attempt against an order. ``provider_reference`` is
    unique so a provider reference never maps to two payments.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("orders.id"), nullable=False, index=True
    )
    provider_reference: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.CREATED.value
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_captured_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    receipt: Mapped[str] = mapped_column(String(255), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    order: Mapped[Order] = relationship(back_populates="payments")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="non_negative_amount"),
        CheckConstraint("amount_captured_cents >= 0", name="non_negative_captured"),
        CheckConstraint("provider IN ('stripe', 'broker')", name="valid_provider"),
        _status_check("status", PaymentStatus, "valid_payment_status"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores every event related to a payment or its order. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    payment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    order_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (Index("idx_payment_events_type", "event_type"),)

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, order_id={self.order_id}, "
            f"type={self.event_type})>"
        )
