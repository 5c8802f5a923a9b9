"""Tests for the order expiry sweep (stock rollback of stale orders)."""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import pytest
from sqlalchemy import update

from checkout_engine.core.order_expiry import OrderExpirySweep
from checkout_engine.database.models import Order
from checkout_engine.domain.models import OrderItem, Payer
from checkout_engine.domain.status import OrderStatus
from checkout_engine.services import Services


def sweep_at(services: Services, offset: timedelta) -> OrderExpirySweep:
    return OrderExpirySweep(
        services.orders,
        pending_ttl_seconds=900,
        clock=lambda: datetime.now(timezone.utc) + offset,
    )


async def place_order(services: Services, address: Dict[str, Any], quantity: int = 2) -> str:
    receipt = await services.orchestrator.create_order(
        payer=Payer(user_id="user-1"),
        items=[OrderItem("sku-oil", quantity)],
        shipping_address=address,
    )
    return receipt.order_reference


class TestOrderExpirySweep:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stale_pending_order_releases_stock_once(
        self, seeded: Services, shipping_address: Dict[str, Any]
    ) -> None:
        order_id = await place_order(seeded, shipping_address)
        assert (await seeded.products.get("sku-oil")).stock == 3

        sweep = sweep_at(seeded, timedelta(hours=1))
        first = await sweep.run_once()
        second = await sweep.run_once()

        assert first.pending_rolled_back == [order_id]
        assert second.pending_rolled_back == []
        order = await seeded.orders.get(order_id)
        assert order.status == OrderStatus.PENDING_STOCK_ROLLEDBACK.value
        assert order.stock_released_at is not None
        assert (await seeded.products.get("sku-oil")).stock == 5

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recent_pending_order_is_kept(
        self, seeded: Services, shipping_address: Dict[str, Any]
    ) -> None:
        order_id = await place_order(seeded, shipping_address)

        report = await sweep_at(seeded, timedelta(minutes=5)).run_once()

        assert report.pending_rolled_back == []
        assert (await seeded.orders.get(order_id)).status == OrderStatus.PENDING.value
        assert (await seeded.products.get("sku-oil")).stock == 3

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_order_with_unreleased_stock_is_rolled_back(
        self, seeded: Services, shipping_address: Dict[str, Any]
    ) -> None:
        order_id = await place_order(seeded, shipping_address)
        async with seeded.session_factory() as session, session.begin():
            await session.execute(
                update(Order).where(Order.id == order_id).values(status=OrderStatus.FAILED.value)
            )

        report = await sweep_at(seeded, timedelta(0)).run_once()

        assert report.failed_rolled_back == [order_id]
        order = await seeded.orders.get(order_id)
        assert order.status == OrderStatus.FAILED_STOCK_ROLLEDBACK.value
        assert (await seeded.products.get("sku-oil")).stock == 5

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processing_order_is_never_released(
        self, seeded: Services, shipping_address: Dict[str, Any]
    ) -> None:
        order_id = await place_order(seeded, shipping_address)
        async with seeded.session_factory() as session, session.begin():
            await session.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(status=OrderStatus.PROCESSING.value)
            )

        report = await sweep_at(seeded, timedelta(days=1)).run_once()

        assert report.pending_rolled_back == []
        assert report.failed_rolled_back == []
        assert (await seeded.products.get("sku-oil")).stock == 3

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_release_error_is_counted_and_sweep_continues(
        self, seeded: Services, shipping_address: Dict[str, Any], mocker: Any
    ) -> None:
        first = await place_order(seeded, shipping_address, quantity=1)
        second = await place_order(seeded, shipping_address, quantity=1)
        real_release = seeded.orders.release_stock

        async def flaky_release(order_id: str, *args: Any, **kwargs: Any) -> bool:
            if order_id == first:
                raise RuntimeError("database hiccup")
            return await real_release(order_id, *args, **kwargs)

        mocker.patch.object(seeded.orders, "release_stock", side_effect=flaky_release)

        report = await sweep_at(seeded, timedelta(hours=1)).run_once()

        assert report.errors == 1
        assert report.pending_rolled_back == [second]
        assert (await seeded.orders.get(first)).status == OrderStatus.PENDING.value
