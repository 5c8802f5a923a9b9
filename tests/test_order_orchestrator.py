"""
Tests for order creation.

Covers the authoritative stock decrement, payment request, persistence and
the compensation path on every failure after the first decrement.
"""
from typing import Any, Dict

import pytest
from sqlalchemy import select

from checkout_engine.database.models import Order, PaymentEvent
from checkout_engine.domain.errors import (
    InsufficientStock,
    InvalidRequest,
    PaymentProviderError,
    PaymentRequestTimeout,
    ProductNotFound,
    StockConflict,
)
from checkout_engine.domain.models import OrderItem, Payer
from checkout_engine.domain.status import OrderStatus, PaymentStatus
from checkout_engine.services import Services


async def stock_of(services: Services, product_id: str) -> int:
    return (await services.products.get(product_id)).stock


async def order_count(services: Services) -> int:
    async with services.session_factory() as session:
        return len((await session.execute(select(Order.id))).all())


class TestCreateOrder:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_successful_order_takes_stock_and_persists_pending_order(
        self,
        seeded: Services,
        gateway: Any,
        payer: Payer,
        shipping_address: Dict[str, Any],
    ) -> None:
        receipt = await seeded.orchestrator.create_order(
            payer=payer,
            items=[OrderItem("sku-oil", 5), OrderItem("sku-rice", 2)],
            shipping_address=shipping_address,
        )

        assert receipt.total_amount_cents == 5 * 250 + 2 * 120
        assert receipt.currency == "usd"
        assert receipt.provider_checkout_token == "pi_secret_test"
        assert await stock_of(seeded, "sku-oil") == 0
        assert await stock_of(seeded, "sku-rice") == 8

        request = gateway.requests[0]
        assert request.amount_cents == receipt.total_amount_cents
        assert request.user_id == "user-1"
        assert request.receipt.startswith("receipt_")

        order = await seeded.orders.get(receipt.order_reference)
        assert order.status == OrderStatus.PENDING.value
        assert order.user_id == "user-1"
        assert order.shipping_address["city"] == "Kochi"
        assert order.shipping_address["country"] == "India"
        assert {(line.product_id, line.quantity, line.unit_price_cents) for line in order.lines} == {
            ("sku-oil", 5, 250),
            ("sku-rice", 2, 120),
        }
        assert len(order.payments) == 1
        payment = order.payments[0]
        assert payment.provider_reference == receipt.order_reference
        assert payment.status == PaymentStatus.CREATED.value
        assert payment.amount_cents == receipt.total_amount_cents

        async with seeded.session_factory() as session:
            events = (
                await session.execute(
                    select(PaymentEvent.event_type).where(
                        PaymentEvent.order_id == receipt.order_reference
                    )
                )
            ).scalars().all()
        assert events == ["payment.created"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_items_are_merged(
        self, seeded: Services, payer: Payer, shipping_address: Dict[str, Any]
    ) -> None:
        receipt = await seeded.orchestrator.create_order(
            payer=payer,
            items=[{"product_id": "sku-rice", "quantity": 1}, OrderItem("sku-rice", 2)],
            shipping_address=shipping_address,
        )

        order = await seeded.orders.get(receipt.order_reference)
        assert [(line.product_id, line.quantity) for line in order.lines] == [("sku-rice", 3)]
        assert await stock_of(seeded, "sku-rice") == 7

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_placing_order_clears_cart_holds_without_restocking_counter(
        self, seeded: Services, payer: Payer, shipping_address: Dict[str, Any]
    ) -> None:
        await seeded.cart.add_to_cart("sku-oil", "cart-a", 2)

        await seeded.orchestrator.create_order(
            payer=payer,
            items=[OrderItem("sku-oil", 2)],
            shipping_address=shipping_address,
            cart_id="cart-a",
        )

        assert await seeded.holds.get("sku-oil", "cart-a") is None
        assert await seeded.ledger.get("sku-oil") == 3
        assert await stock_of(seeded, "sku-oil") == 3


class TestCompensation:
    """Every failure after a decrement gives the stock back."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_timeout_restores_all_items(
        self,
        seeded: Services,
        gateway: Any,
        payer: Payer,
        shipping_address: Dict[str, Any],
    ) -> None:
        gateway.error = PaymentRequestTimeout("No payment reply within 15s")

        with pytest.raises(PaymentRequestTimeout):
            await seeded.orchestrator.create_order(
                payer=payer,
                items=[OrderItem("sku-oil", 5), OrderItem("sku-rice", 4)],
                shipping_address=shipping_address,
            )

        assert await stock_of(seeded, "sku-oil") == 5
        assert await stock_of(seeded, "sku-rice") == 10
        assert await order_count(seeded) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_insufficient_second_item_restores_first(
        self,
        seeded: Services,
        gateway: Any,
        payer: Payer,
        shipping_address: Dict[str, Any],
    ) -> None:
        with pytest.raises(InsufficientStock):
            await seeded.orchestrator.create_order(
                payer=payer,
                items=[OrderItem("sku-rice", 4), OrderItem("sku-oil", 6)],
                shipping_address=shipping_address,
            )

        assert await stock_of(seeded, "sku-rice") == 10
        assert await stock_of(seeded, "sku-oil") == 5
        assert gateway.requests == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lost_decrement_race_raises_stock_conflict(
        self,
        seeded: Services,
        payer: Payer,
        shipping_address: Dict[str, Any],
        mocker: Any,
    ) -> None:
        real_decrement = seeded.products.try_decrement

        async def lose_on_oil(product_id: str, quantity: int) -> bool:
            if product_id == "sku-oil":
                return False
            return await real_decrement(product_id, quantity)

        mocker.patch.object(seeded.products, "try_decrement", side_effect=lose_on_oil)

        with pytest.raises(StockConflict):
            await seeded.orchestrator.create_order(
                payer=payer,
                items=[OrderItem("sku-rice", 1), OrderItem("sku-oil", 1)],
                shipping_address=shipping_address,
            )

        assert await stock_of(seeded, "sku-rice") == 10
        assert await stock_of(seeded, "sku-oil") == 5

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_persistence_failure_restores_stock(
        self,
        seeded: Services,
        payer: Payer,
        shipping_address: Dict[str, Any],
        mocker: Any,
    ) -> None:
        mocker.patch.object(
            seeded.orders, "create_pending", side_effect=RuntimeError("insert failed")
        )

        with pytest.raises(RuntimeError):
            await seeded.orchestrator.create_order(
                payer=payer,
                items=[OrderItem("sku-oil", 3)],
                shipping_address=shipping_address,
            )

        assert await stock_of(seeded, "sku-oil") == 5

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_one_failed_compensation_does_not_stop_the_rest(
        self,
        seeded: Services,
        gateway: Any,
        payer: Payer,
        shipping_address: Dict[str, Any],
        mocker: Any,
    ) -> None:
        gateway.error = PaymentProviderError("card network down")
        real_increment = seeded.products.increment

        async def fail_for_oil(product_id: str, quantity: int) -> None:
            if product_id == "sku-oil":
                raise RuntimeError("row locked")
            await real_increment(product_id, quantity)

        mocker.patch.object(seeded.products, "increment", side_effect=fail_for_oil)

        with pytest.raises(PaymentProviderError):
            await seeded.orchestrator.create_order(
                payer=payer,
                items=[OrderItem("sku-oil", 1), OrderItem("sku-rice", 1)],
                shipping_address=shipping_address,
            )

        assert await stock_of(seeded, "sku-rice") == 10


class TestValidation:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_items_rejected(
        self, seeded: Services, payer: Payer, shipping_address: Dict[str, Any]
    ) -> None:
        with pytest.raises(InvalidRequest):
            await seeded.orchestrator.create_order(payer, [], shipping_address)

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -2, 1.5, True])
    async def test_bad_quantity_rejected(
        self,
        seeded: Services,
        payer: Payer,
        shipping_address: Dict[str, Any],
        quantity: Any,
    ) -> None:
        with pytest.raises(InvalidRequest):
            await seeded.orchestrator.create_order(
                payer, [OrderItem("sku-oil", quantity)], shipping_address
            )
        assert await stock_of(seeded, "sku-oil") == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_incomplete_shipping_address_rejected(
        self, seeded: Services, payer: Payer
    ) -> None:
        with pytest.raises(InvalidRequest):
            await seeded.orchestrator.create_order(
                payer, [OrderItem("sku-oil", 1)], {"street": "12 MG Road", "city": "Kochi"}
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_product_rejected(
        self, seeded: Services, payer: Payer, shipping_address: Dict[str, Any]
    ) -> None:
        with pytest.raises(ProductNotFound):
            await seeded.orchestrator.create_order(
                payer, [OrderItem("sku-ghost", 1)], shipping_address
            )
