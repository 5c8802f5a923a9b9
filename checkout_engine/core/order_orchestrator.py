"""
Order orchestration: authoritative stock → payment → commit, or compensate.

Steps for ``create_order``:
1. Validate input and merge duplicate products
2. Per item: read the product, then conditionally decrement its stock in a
   short transaction of its own
3. Compute the total from authoritative prices
4. Ask the payment gateway for a payment
5. Persist the pending order, its payment and the audit event atomically

If anything after the first decrement fails, every decremented item is given
back before the original error propagates.
"""
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from checkout_engine.core.cart_service import CartService
from checkout_engine.database.models import OrderLine
from checkout_engine.database.store import OrderStore, ProductStore
from checkout_engine.domain.errors import (
    CheckoutError,
    InsufficientStock,
    InvalidRequest,
    StockConflict,
)
from checkout_engine.domain.models import (
    OrderItem,
    OrderReceipt,
    Payer,
    ShippingAddress,
    validate_identifier,
    validate_quantity,
)
from checkout_engine.integrations.payment_gateway import (
    PaymentGateway,
    PaymentRequest,
    generate_receipt,
)
from checkout_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OrderOrchestrator:
    """Creates orders without ever losing or double-counting authoritative stock."""

    def __init__(
        self,
        products: ProductStore,
        orders: OrderStore,
        gateway: PaymentGateway,
        currency: str,
        cart_service: Optional[CartService] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            products: Authoritative product store
            orders: Order repository
            gateway: Payment gateway of this deployment
            currency: Deployment currency
            cart_service: Used to clear the cart's holds after a successful order
        """
        self.products = products
        self.orders = orders
        self.gateway = gateway
        self.currency = currency
        self.cart_service = cart_service

    @staticmethod
    def _validate_items(items: Sequence[Any]) -> List[OrderItem]:
        """
        Validate order items and merge duplicates.

        Raises:
            InvalidRequest: If items are empty or malformed
        """
        if not items:
            raise InvalidRequest("Order must contain at least one item")

        merged: Dict[str, int] = {}
        for item in items:
            if isinstance(item, OrderItem):
                product_id, quantity = item.product_id, item.quantity
            elif isinstance(item, dict):
                product_id, quantity = item.get("product_id"), item.get("quantity")
            else:
                raise InvalidRequest("Each item needs a product id and a quantity")
            validate_identifier(product_id, "productId")
            try:
                validate_quantity(quantity)
            except InvalidRequest as e:
                raise InvalidRequest(
                    f"Quantity for {product_id} must be a positive integer"
                ) from e
            merged[product_id] = merged.get(product_id, 0) + quantity

        return [OrderItem(product_id, quantity) for product_id, quantity in merged.items()]

    async def create_order(
        self,
        payer: Payer,
        items: Sequence[Any],
        shipping_address: Any,
        cart_id: Optional[str] = None,
    ) -> OrderReceipt:
        """
        Create an order and request its payment.

        Args:
            payer: Authenticated customer
            items: ``OrderItem`` values (or dicts with product_id/quantity)
            shipping_address: ``ShippingAddress`` or its dict form
            cart_id: Cart whose holds are cleared once the order is committed

        Returns:
            OrderReceipt: Reference, checkout token, total and currency

        Raises:
            InvalidRequest: Malformed input
            ProductNotFound: Unknown product
            InsufficientStock: Not enough authoritative stock
            StockConflict: Lost a race for the last units
            PaymentRequestTimeout: Payment service did not answer in time
            PaymentProviderError: Payment provider refused or failed
        """
        if not payer.user_id:
            raise InvalidRequest("Payer identity is required")
        order_items = self._validate_items(items)
        if not isinstance(shipping_address, ShippingAddress):
            shipping_address = ShippingAddress.from_dict(shipping_address)
        if cart_id is not None:
            validate_identifier(cart_id, "cartId")

        correlation_id = uuid.uuid4()
        log = logger.bind(correlation_id=str(correlation_id), user_id=payer.user_id)
        log.info("order_creation_started", item_count=len(order_items))

        decremented: List[Tuple[str, int]] = []
        try:
            lines: List[OrderLine] = []
            for item in order_items:
                product = await self.products.require(item.product_id)
                if product.stock < item.quantity:
                    raise InsufficientStock(item.product_id, item.quantity, product.stock)
                if not await self.products.try_decrement(item.product_id, item.quantity):
                    raise StockConflict(item.product_id, item.quantity)
                decremented.append((item.product_id, item.quantity))

                lines.append(
                    OrderLine(
                        product_id=product.id,
                        product_name=product.name,
                        unit_price_cents=product.unit_price_cents,
                        quantity=item.quantity,
                    )
                )

            total_cents = sum(line.unit_price_cents * line.quantity for line in lines)
            receipt = generate_receipt()
            reference = await self.gateway.request_payment(
                PaymentRequest(
                    user_id=payer.user_id,
                    amount_cents=total_cents,
                    currency=self.currency,
                    payer=payer,
                    receipt=receipt,
                )
            )

            await self.orders.create_pending(
                order_id=reference.reference,
                user_id=payer.user_id,
                lines=lines,
                total_amount_cents=total_cents,
                currency=self.currency,
                shipping_address=shipping_address.to_dict(),
                provider=reference.provider,
                receipt=receipt,
                correlation_id=correlation_id,
            )
        except Exception as e:
            if decremented:
                await self._compensate(decremented, log)
            outcome = e.error_name if isinstance(e, CheckoutError) else "error"
            metrics.record_order(outcome)
            log.warning("order_creation_failed", error=str(e), error_type=type(e).__name__)
            raise

        metrics.record_order("created", total_cents)
        log.info(
            "order_created",
            order_id=reference.reference,
            total_amount_cents=total_cents,
            currency=self.currency,
        )

        if cart_id is not None and self.cart_service is not None:
            await self._clear_cart(cart_id, reference.reference, log)

        return OrderReceipt(
            order_reference=reference.reference,
            provider_checkout_token=reference.checkout_token,
            total_amount_cents=total_cents,
            currency=self.currency,
        )

    async def _compensate(
        self, decremented: List[Tuple[str, int]], log: structlog.stdlib.BoundLogger
    ) -> None:
        """Give back every decremented item; one failure never stops the rest."""
        log.warning("order_compensation_started", item_count=len(decremented))
        started = time.perf_counter()
        for product_id, quantity in decremented:
            try:
                await self.products.increment(product_id, quantity)
                metrics.record_compensation("order_creation", "success")
            except Exception as e:
                metrics.record_compensation("order_creation", "failed")
                log.error(
                    "order_compensation_failed",
                    product_id=product_id,
                    quantity=quantity,
                    error=str(e),
                )
        log.info("order_compensation_completed", duration_seconds=time.perf_counter() - started)

    async def _clear_cart(
        self, cart_id: str, order_id: str, log: structlog.stdlib.BoundLogger
    ) -> None:
        try:
            await self.cart_service.clear_cart(cart_id)
        except Exception as e:
            # Leftover holds expire through the reclaimer
            log.error("order_cart_clear_failed", cart_id=cart_id, order_id=order_id, error=str(e))
