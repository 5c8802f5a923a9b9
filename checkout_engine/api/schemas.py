"""
Pydantic schemas for API request/response models.

Bodies are camelCase on the wire; Python code uses snake_case field names.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartItemRequest(CamelModel):
    """Request schema for adding to or removing from a cart."""

    product_id: str = Field(..., description="Product identifier")
    cart_id: str = Field(..., description="Cart identifier")
    quantity: int = Field(..., description="Units to add or remove (positive integer)")

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [{"productId": "sku-coconut-oil-1l", "cartId": "cart_7f3a", "quantity": 3}]
        }
    )


class CartItemResponse(CamelModel):
    success: bool = True
    product_id: str
    cart_id: str
    held_quantity: int = Field(..., description="Units now held by the cart")
    available_stock: int = Field(..., description="Units left for other carts")


class ClearCartRequest(CamelModel):
    cart_id: str = Field(..., description="Cart identifier")


class ClearCartResponse(CamelModel):
    success: bool = True
    cart_id: str
    removed_hold_count: int


class RestoreItem(CamelModel):
    product_id: str


class RestoreCartRequest(CamelModel):
    """Request schema for abandoning a cart; omit items to restore every hold."""

    cart_id: str = Field(..., description="Cart identifier")
    items: Optional[List[RestoreItem]] = Field(default=None, description="Products to restore")


class RestoreCartResponse(CamelModel):
    success: bool = True
    cart_id: str
    restored_holds: int
    units_restored: int
    skipped: int


class StockResponse(CamelModel):
    product_id: str
    stock: int


class SetStockRequest(CamelModel):
    product_id: str
    stock: int = Field(..., ge=0)


class CreateProductRequest(CamelModel):
    """Request schema for registering a product."""

    product_id: str = Field(..., description="Product identifier")
    name: str = Field(..., min_length=1, max_length=255)
    unit_price: int = Field(..., ge=0, description="Unit price in minor units")
    stock: int = Field(..., ge=0, description="Initial authoritative stock")


class OrderItemRequest(CamelModel):
    product_id: str
    qty: int


class ShippingAddressSchema(CamelModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=1)
    country: str = Field(default="India")
    landmark: Optional[str] = None


class CreateOrderRequest(CamelModel):
    """Request schema for creating an order."""

    items: List[OrderItemRequest] = Field(..., description="Products and quantities")
    shipping_address: ShippingAddressSchema
    cart_id: Optional[str] = Field(
        default=None, description="Cart whose holds are cleared once the order is placed"
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "items": [{"productId": "sku-coconut-oil-1l", "qty": 2}],
                    "shippingAddress": {
                        "street": "12 MG Road",
                        "city": "Kochi",
                        "state": "Kerala",
                        "pincode": "682001",
                    },
                    "cartId": "cart_7f3a",
                }
            ]
        }
    )


class CreateOrderResponse(CamelModel):
    """Response schema for order creation."""

    success: bool = True
    order_reference: str = Field(..., description="Order id / payment provider reference")
    provider_checkout_token: Optional[str] = Field(
        default=None, description="What the client needs to complete payment"
    )
    total_amount: int = Field(..., description="Order total in minor units")
    currency: str


class OrderLineSchema(CamelModel):
    product_id: str
    product_name: str
    unit_price: int
    quantity: int


class PaymentSchema(CamelModel):
    reference: str
    provider: str
    status: str
    method: Optional[str] = None
    amount: int
    amount_captured: int


class OrderResponse(CamelModel):
    """Response schema for order status."""

    order_id: str
    user_id: str
    status: str
    paid_status: str
    total_amount: int
    currency: str
    shipping_address: ShippingAddressSchema
    lines: List[OrderLineSchema]
    payments: List[PaymentSchema]
    stock_released_at: Optional[datetime] = None
    created_at: datetime


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: Optional[str] = None
    event_type: Optional[str] = None


class ReclaimResponse(CamelModel):
    scanned: int
    reclaimed: int
    units_restored: int
    skipped_invalid: int
    skipped_busy: int


class ExpireOrdersResponse(CamelModel):
    pending_rolled_back: List[str]
    failed_rolled_back: List[str]
    errors: int


class RebuildResponse(CamelModel):
    counters_set: int
    holds_removed: int
