"""
Cart service: soft reservations against the stock ledger.

Adding to a cart moves units from the product's counter into the cart's
hold; removing moves them back. Authoritative stock is never touched here.
"""
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import structlog

from checkout_engine.core.hold_registry import CorruptHold, Hold, HoldRegistry, parse_hold_key
from checkout_engine.core.stock_ledger import StockLedger
from checkout_engine.domain.errors import InsufficientStock, InvalidQuantity
from checkout_engine.domain.models import validate_identifier, validate_quantity
from checkout_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CartLine:
    """State of one (product, cart) pair after a cart mutation."""

    product_id: str
    cart_id: str
    held_quantity: int
    available_stock: int


@dataclass(frozen=True)
class RestoreReport:
    restored_holds: int
    units_restored: int
    skipped: int


class CartService:
    """
    Cart operations over the hold registry and the stock ledger.

    Mutations of one (product, cart) pair are serialized by the pair lock;
    different pairs run concurrently. Cross-cart oversell is prevented by
    verifying the counter value right before this cart's DECRBY.
    """

    def __init__(
        self,
        ledger: StockLedger,
        holds: HoldRegistry,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.holds = holds
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def add_to_cart(self, product_id: str, cart_id: str, quantity: int) -> CartLine:
        """
        Reserve ``quantity`` units of a product for a cart.

        Args:
            product_id: Product to reserve
            cart_id: Cart holding the reservation
            quantity: Units to add to the cart's hold

        Returns:
            CartLine: Held quantity and remaining counter after the add

        Raises:
            InvalidQuantity: If quantity is not a positive integer
            InsufficientStock: If the counter cannot cover the new hold total
            StoreUnavailable: If Redis fails or the pair lock is busy
        """
        validate_identifier(product_id, "productId")
        validate_identifier(cart_id, "cartId")
        validate_quantity(quantity)

        async with self.holds.locked(product_id, cart_id):
            current_hold = await self.holds.get_quantity(product_id, cart_id)
            requested_total = current_hold + quantity

            available = await self.ledger.get(product_id)
            if available < requested_total:
                metrics.record_cart_operation("add", "insufficient_stock")
                raise InsufficientStock(product_id, requested_total, available)

            remaining = await self.ledger.decrement_by(product_id, quantity)
            before_decrement = remaining + quantity
            if before_decrement < requested_total:
                # Another cart took the units between our read and our DECRBY
                await self.ledger.increment_by(product_id, quantity)
                metrics.record_cart_operation("add", "insufficient_stock")
                logger.info(
                    "cart_add_lost_race",
                    product_id=product_id,
                    cart_id=cart_id,
                    requested=requested_total,
                    available=before_decrement,
                )
                raise InsufficientStock(product_id, requested_total, before_decrement)

            try:
                held = await self.holds.add(product_id, cart_id, quantity, self._now_ms())
            except Exception:
                await self._revert_decrement(product_id, cart_id, quantity)
                metrics.record_cart_operation("add", "error")
                raise

        metrics.record_cart_operation("add", "success")
        logger.info(
            "cart_item_added",
            product_id=product_id,
            cart_id=cart_id,
            quantity=quantity,
            held_quantity=held,
            available_stock=remaining,
        )
        return CartLine(product_id, cart_id, held, remaining)

    async def _revert_decrement(self, product_id: str, cart_id: str, quantity: int) -> None:
        try:
            await self.ledger.increment_by(product_id, quantity)
        except Exception as e:
            # Counter stays low until the next ledger rebuild; never oversells
            logger.error(
                "cart_add_revert_failed",
                product_id=product_id,
                cart_id=cart_id,
                quantity=quantity,
                error=str(e),
            )

    async def remove_from_cart(self, product_id: str, cart_id: str, quantity: int) -> CartLine:
        """
        Release ``quantity`` held units back to the counter.

        Raises:
            InvalidQuantity: If quantity is not positive or exceeds the hold
            StoreUnavailable: If Redis fails or the pair lock is busy
        """
        validate_identifier(product_id, "productId")
        validate_identifier(cart_id, "cartId")
        validate_quantity(quantity)

        async with self.holds.locked(product_id, cart_id):
            current_hold = await self.holds.get_quantity(product_id, cart_id)
            if quantity > current_hold:
                metrics.record_cart_operation("remove", "invalid_quantity")
                raise InvalidQuantity(
                    "Cannot remove more than is held in the cart",
                    quantity=quantity,
                    held=current_hold,
                )

            created_at_ms = await self.holds.get_created_at(product_id, cart_id)
            held = await self.holds.decrement(product_id, cart_id, quantity)
            try:
                available = await self.ledger.increment_by(product_id, quantity)
            except Exception:
                logger.error(
                    "cart_remove_restock_failed",
                    product_id=product_id,
                    cart_id=cart_id,
                    quantity=quantity,
                )
                await self.holds.put_back(
                    product_id, cart_id, quantity, created_at_ms or self._now_ms()
                )
                metrics.record_cart_operation("remove", "error")
                raise

        metrics.record_cart_operation("remove", "success")
        logger.info(
            "cart_item_removed",
            product_id=product_id,
            cart_id=cart_id,
            quantity=quantity,
            held_quantity=held,
            available_stock=available,
        )
        return CartLine(product_id, cart_id, held, available)

    async def clear_cart(self, cart_id: str) -> int:
        """
        Delete every hold of a cart without restoring stock.

        Used once an order has been placed: the units now belong to the order.

        Returns:
            int: Number of holds removed
        """
        validate_identifier(cart_id, "cartId")
        keys = await self.holds.cart_hold_keys(cart_id)
        removed = await self.holds.unlink(keys)

        metrics.record_cart_operation("clear", "success")
        logger.info("cart_cleared", cart_id=cart_id, removed_hold_count=removed)
        return removed

    async def restore_cart(
        self, cart_id: str, product_ids: Optional[List[str]] = None
    ) -> RestoreReport:
        """
        Give a cart's held units back to the counters and drop its holds.

        Each hold is claimed atomically and the counter is incremented by the
        quantity actually held, whatever the client believes it holds.

        Args:
            cart_id: Cart being abandoned
            product_ids: Products to restore; every hold of the cart when None

        Returns:
            RestoreReport: Holds restored, units returned, products skipped
        """
        validate_identifier(cart_id, "cartId")
        if product_ids is None:
            keys = await self.holds.cart_hold_keys(cart_id)
            product_ids = [pair[0] for pair in map(parse_hold_key, keys) if pair]
        else:
            for product_id in product_ids:
                validate_identifier(product_id, "productId")

        restored = units = skipped = 0
        for product_id in dict.fromkeys(product_ids):
            async with self.holds.locked(product_id, cart_id):
                data = await self.holds.claim(product_id, cart_id)
                if data is None:
                    skipped += 1
                    continue
                try:
                    hold = Hold.from_mapping(product_id, cart_id, data)
                except CorruptHold as e:
                    logger.error(
                        "cart_restore_corrupt_hold",
                        product_id=product_id,
                        cart_id=cart_id,
                        error=str(e),
                    )
                    await self.holds.rewrite(product_id, cart_id, data)
                    skipped += 1
                    continue
                try:
                    await self.ledger.increment_by(product_id, hold.quantity)
                except Exception:
                    logger.error(
                        "cart_restore_restock_failed",
                        product_id=product_id,
                        cart_id=cart_id,
                        quantity=hold.quantity,
                    )
                    await self.holds.put_back(
                        product_id, cart_id, hold.quantity, hold.created_at_ms
                    )
                    metrics.record_cart_operation("restore", "error")
                    raise

            restored += 1
            units += hold.quantity

        metrics.record_cart_operation("restore", "success")
        logger.info(
            "cart_restored",
            cart_id=cart_id,
            restored_holds=restored,
            units_restored=units,
            skipped=skipped,
        )
        return RestoreReport(restored_holds=restored, units_restored=units, skipped=skipped)

    async def get_stock(self, product_id: str) -> int:
        """Units currently available for new reservations."""
        validate_identifier(product_id, "productId")
        return await self.ledger.get(product_id)
