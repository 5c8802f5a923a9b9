"""
API routes for carts, orders, webhooks and administration.

Checkout failures are raised as ``CheckoutError`` subclasses and rendered by
the application-level handler, so routes only translate inputs and outputs.
"""
import time
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Header, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from checkout_engine.core.reconciler import paid_status
from checkout_engine.database.models import Order
from checkout_engine.domain.errors import OrderNotFound, PermissionDenied
from checkout_engine.domain.models import OrderItem, ShippingAddress
from checkout_engine.services import Services

from .dependencies import Capability, Principal, get_services, require_capability
from .schemas import (
    CartItemRequest,
    CartItemResponse,
    ClearCartRequest,
    ClearCartResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    CreateProductRequest,
    ExpireOrdersResponse,
    OrderResponse,
    RebuildResponse,
    ReclaimResponse,
    RestoreCartRequest,
    RestoreCartResponse,
    SetStockRequest,
    StockResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
cart_router = APIRouter(prefix="/api", tags=["cart"])
order_router = APIRouter(prefix="/api/orders", tags=["orders"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def _order_response(order: Order) -> Dict[str, Any]:
    return {
        "order_id": order.id,
        "user_id": order.user_id,
        "status": order.status,
        "paid_status": paid_status(order).value,
        "total_amount": order.total_amount_cents,
        "currency": order.currency,
        "shipping_address": order.shipping_address,
        "lines": [
            {
                "product_id": line.product_id,
                "product_name": line.product_name,
                "unit_price": line.unit_price_cents,
                "quantity": line.quantity,
            }
            for line in order.lines
        ],
        "payments": [
            {
                "reference": payment.provider_reference,
                "provider": payment.provider,
                "status": payment.status,
                "method": payment.method,
                "amount": payment.amount_cents,
                "amount_captured": payment.amount_captured_cents,
            }
            for payment in order.payments
        ],
        "stock_released_at": order.stock_released_at,
        "created_at": order.created_at,
    }


@cart_router.post(
    "/cart/add",
    response_model=CartItemResponse,
    summary="Add to cart",
    description="Reserve units of a product for a cart",
)
async def add_to_cart(
    request: CartItemRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    line = await services.cart.add_to_cart(request.product_id, request.cart_id, request.quantity)
    return {
        "product_id": line.product_id,
        "cart_id": line.cart_id,
        "held_quantity": line.held_quantity,
        "available_stock": line.available_stock,
    }


@cart_router.post(
    "/cart/remove",
    response_model=CartItemResponse,
    summary="Remove from cart",
    description="Release held units of a product back to available stock",
)
async def remove_from_cart(
    request: CartItemRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    line = await services.cart.remove_from_cart(
        request.product_id, request.cart_id, request.quantity
    )
    return {
        "product_id": line.product_id,
        "cart_id": line.cart_id,
        "held_quantity": line.held_quantity,
        "available_stock": line.available_stock,
    }


@cart_router.post(
    "/cart/clear-all-items",
    response_model=ClearCartResponse,
    summary="Clear cart holds",
    description="Drop every hold of a cart without restoring stock (after an order)",
)
async def clear_cart(
    request: ClearCartRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    removed = await services.cart.clear_cart(request.cart_id)
    return {"cart_id": request.cart_id, "removed_hold_count": removed}


@cart_router.post(
    "/cart/restore-stock",
    response_model=RestoreCartResponse,
    summary="Abandon cart",
    description="Return a cart's held units to available stock",
)
async def restore_cart(
    request: RestoreCartRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    product_ids = None
    if request.items is not None:
        product_ids = [item.product_id for item in request.items]
    report = await services.cart.restore_cart(request.cart_id, product_ids)
    return {
        "cart_id": request.cart_id,
        "restored_holds": report.restored_holds,
        "units_restored": report.units_restored,
        "skipped": report.skipped,
    }


@cart_router.get(
    "/stock/{product_id}",
    response_model=StockResponse,
    summary="Available stock",
    description="Units currently available for new reservations",
)
async def get_stock(
    product_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return {"product_id": product_id, "stock": await services.cart.get_stock(product_id)}


@cart_router.post(
    "/stock/set",
    response_model=StockResponse,
    summary="Set available stock",
    description="Overwrite a product's reservation counter",
)
async def set_stock(
    request: SetStockRequest,
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_capability(Capability.STOCK_WRITE)),
) -> Dict[str, Any]:
    await services.ledger.set(request.product_id, request.stock)
    logger.info(
        "stock_counter_set",
        product_id=request.product_id,
        stock=request.stock,
        user_id=principal.user_id,
    )
    return {"product_id": request.product_id, "stock": request.stock}


@order_router.post(
    "",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Take authoritative stock, request payment and persist a pending order",
)
async def create_order(
    request: CreateOrderRequest,
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_capability(Capability.ORDERS_CREATE)),
) -> Dict[str, Any]:
    start_time = time.time()
    logger.info(
        "api_create_order_request",
        user_id=principal.user_id,
        item_count=len(request.items),
        cart_id=request.cart_id,
    )

    receipt = await services.orchestrator.create_order(
        payer=principal.as_payer(),
        items=[OrderItem(item.product_id, item.qty) for item in request.items],
        shipping_address=ShippingAddress.from_dict(request.shipping_address.model_dump()),
        cart_id=request.cart_id,
    )

    logger.info(
        "api_create_order_success",
        order_id=receipt.order_reference,
        total_amount_cents=receipt.total_amount_cents,
        duration_seconds=time.time() - start_time,
    )
    return {
        "order_reference": receipt.order_reference,
        "provider_checkout_token": receipt.provider_checkout_token,
        "total_amount": receipt.total_amount_cents,
        "currency": receipt.currency,
    }


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order status",
    description="Retrieve an order with its payments and paid status",
)
async def get_order(
    order_id: str,
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_capability(Capability.ORDERS_READ)),
) -> Dict[str, Any]:
    order = await services.orders.get(order_id)
    if order is None:
        raise OrderNotFound(order_id)
    if order.user_id != principal.user_id and not principal.can(Capability.ORDERS_READ_ANY):
        raise PermissionDenied("Order belongs to another user")
    return _order_response(order)


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Receive and process Stripe payment events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Stripe retries deliveries that do not get a 2xx, so processing errors
    propagate as 5xx and verification errors as 400.
    """
    payload = await request.body()
    return await services.webhooks.handle(payload, stripe_signature)


@admin_router.post(
    "/products",
    status_code=status.HTTP_201_CREATED,
    summary="Register a product",
    description="Create a product and seed its reservation counter",
)
async def create_product(
    request: CreateProductRequest,
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_capability(Capability.PRODUCTS_WRITE)),
) -> Dict[str, Any]:
    await services.register_product(
        request.product_id, request.name, request.unit_price, request.stock
    )
    logger.info("api_product_registered", product_id=request.product_id, user_id=principal.user_id)
    return {"success": True, "productId": request.product_id, "stock": request.stock}


@admin_router.post(
    "/reservations/reclaim",
    response_model=ReclaimResponse,
    summary="Reclaim expired holds",
    description="Run one reservation reclaim sweep now",
)
async def reclaim_reservations(
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_capability(Capability.RESERVATIONS_RECLAIM)),
) -> Dict[str, Any]:
    logger.info("api_reclaim_request", user_id=principal.user_id)
    report = await services.reclaimer.run_once()
    return report.to_dict()


@admin_router.post(
    "/orders/expire",
    response_model=ExpireOrdersResponse,
    summary="Roll back stale orders",
    description="Release stock of abandoned pending orders and failed orders",
)
async def expire_orders(
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_capability(Capability.ORDERS_EXPIRE)),
) -> Dict[str, Any]:
    logger.info("api_expire_orders_request", user_id=principal.user_id)
    report = await services.order_expiry.run_once()
    return {
        "pending_rolled_back": report.pending_rolled_back,
        "failed_rolled_back": report.failed_rolled_back,
        "errors": report.errors,
    }


@admin_router.post(
    "/stock/rebuild",
    response_model=RebuildResponse,
    summary="Rebuild reservation counters",
    description="Drop every hold and reset counters from authoritative stock",
)
async def rebuild_stock(
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_capability(Capability.STOCK_REBUILD)),
) -> Dict[str, Any]:
    logger.warning("api_stock_rebuild_request", user_id=principal.user_id)
    report = await services.rebuild_ledger()
    return {"counters_set": report.counters_set, "holds_removed": report.holds_removed}


@monitoring_router.get(
    "/health",
    summary="Health check",
    description="Check health of all system dependencies",
)
async def health(
    response: Response,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.health.check_all()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get(
    "/health/live",
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(
    response: Response,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.health.readiness()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics for scraping",
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
