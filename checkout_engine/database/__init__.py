"""Authoritative store: models, connection management and repositories."""
from checkout_engine.database.connection import (
    build_session_factory,
    close_db,
    get_engine,
    get_session_factory,
    init_db,
)
from checkout_engine.database.models import (
    Base,
    Order,
    OrderLine,
    Payment,
    PaymentEvent,
    Product,
)
from checkout_engine.database.store import OrderStore, ProductStore

__all__ = [
    "Base",
    "Order",
    "OrderLine",
    "OrderStore",
    "Payment",
    "PaymentEvent",
    "Product",
    "ProductStore",
    "build_session_factory",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
