"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    CartItemRequest,
    CartItemResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    OrderResponse,
)

__all__ = [
    "app",
    "create_app",
    "CartItemRequest",
    "CartItemResponse",
    "CreateOrderRequest",
    "CreateOrderResponse",
    "OrderResponse",
]
