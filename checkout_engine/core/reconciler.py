"""
Payment reconciliation.

Applies a provider's verdict to the payment and its order, whichever
transport delivered it (Stripe webhook or broker event). Every status change
is an UPDATE guarded on the current status, so redelivered and concurrent
events are harmless:

- captured: payment created → captured, order pending → processing,
  then the confirmation hook
- failed: payment → failed and order pending|processing → failed in one
  transaction, then the order's stock goes back in a second transaction
  guarded on ``stock_released_at IS NULL``

Persistence errors propagate so the transport redelivers the event.
"""
import time
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout_engine.database.models import Order, Payment
from checkout_engine.database.store import OrderStore, record_event
from checkout_engine.domain.models import PaymentOutcome, PaymentOutcomeEvent, ReconcileResult
from checkout_engine.domain.status import (
    OrderStatus,
    PaidStatus,
    PaymentStatus,
    compute_paid_status,
    order_statuses_leading_to,
)
from checkout_engine.integrations.notifier import OrderNotifier
from checkout_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def paid_status(order: Order) -> PaidStatus:
    """Sum captured payments of an order against its total."""
    captured = sum(
        payment.amount_captured_cents
        for payment in order.payments
        if payment.status == PaymentStatus.CAPTURED.value
    )
    return compute_paid_status(order.total_amount_cents, captured)


class Reconciler:
    """Moves orders and payments to their settled states."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orders: OrderStore,
        notifier: OrderNotifier,
    ):
        self.session_factory = session_factory
        self.orders = orders
        self.notifier = notifier

    async def apply(self, event: PaymentOutcomeEvent) -> ReconcileResult:
        """
        Apply one payment outcome.

        Args:
            event: Normalized payment verdict

        Returns:
            ReconcileResult: applied, duplicate, unknown_reference or ignored
        """
        started = time.perf_counter()
        log = logger.bind(
            reference=event.reference,
            outcome=event.outcome.value,
            source=event.source,
            event_id=event.event_id,
        )
        log.info("payment_event_received")

        if event.outcome == PaymentOutcome.CAPTURED:
            result = await self._apply_captured(event, log)
        else:
            result = await self._apply_failed(event, log)

        metrics.record_payment_event(
            event.source, event.outcome.value, result.value, time.perf_counter() - started
        )
        log.info("payment_event_reconciled", result=result.value)
        return result

    async def _find_payment(self, session: AsyncSession, reference: str) -> Optional[Payment]:
        result = await session.execute(
            select(Payment).where(Payment.provider_reference == reference)
        )
        return result.scalar_one_or_none()

    async def _apply_captured(
        self, event: PaymentOutcomeEvent, log: structlog.stdlib.BoundLogger
    ) -> ReconcileResult:
        confirmed_order_id: Optional[str] = None

        async with self.session_factory() as session, session.begin():
            payment = await self._find_payment(session, event.reference)
            if payment is None:
                log.warning("payment_event_unknown_reference")
                return ReconcileResult.UNKNOWN_REFERENCE

            if payment.status == PaymentStatus.CAPTURED.value:
                return ReconcileResult.DUPLICATE
            if payment.status == PaymentStatus.FAILED.value:
                log.error(
                    "payment_captured_after_failure",
                    payment_id=str(payment.id),
                    order_id=payment.order_id,
                )
                return ReconcileResult.IGNORED

            captured_cents = (
                event.amount_cents if event.amount_cents is not None else payment.amount_cents
            )
            values = {
                "status": PaymentStatus.CAPTURED.value,
                "amount_captured_cents": captured_cents,
            }
            if event.method:
                values["method"] = event.method
            updated = await session.execute(
                update(Payment)
                .where(
                    Payment.id == payment.id,
                    Payment.status == PaymentStatus.CREATED.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                return ReconcileResult.DUPLICATE

            record_event(
                session,
                order_id=payment.order_id,
                event_type="payment.captured",
                event_data={
                    "amount_captured_cents": captured_cents,
                    "method": event.method,
                    "source": event.source,
                    "event_id": event.event_id,
                },
                payment_id=payment.id,
            )

            moved = await session.execute(
                update(Order)
                .where(
                    Order.id == payment.order_id,
                    Order.status == OrderStatus.PENDING.value,
                )
                .values(status=OrderStatus.PROCESSING.value)
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount == 1:
                confirmed_order_id = payment.order_id
            else:
                current = await session.scalar(
                    select(Order.status).where(Order.id == payment.order_id)
                )
                if current != OrderStatus.PROCESSING.value:
                    # Money arrived for an order whose stock was already released
                    log.error(
                        "payment_captured_for_inactive_order",
                        order_id=payment.order_id,
                        order_status=current,
                        amount_captured_cents=captured_cents,
                    )

        if confirmed_order_id is not None:
            await self._notify_confirmed(confirmed_order_id, log)
        return ReconcileResult.APPLIED

    async def _notify_confirmed(self, order_id: str, log: structlog.stdlib.BoundLogger) -> None:
        order = await self.orders.get(order_id)
        if order is None:
            return
        try:
            await self.notifier.order_confirmed(order)
        except Exception as e:
            log.error("order_confirmation_failed", order_id=order_id, error=str(e))

    async def _apply_failed(
        self, event: PaymentOutcomeEvent, log: structlog.stdlib.BoundLogger
    ) -> ReconcileResult:
        result = ReconcileResult.DUPLICATE

        async with self.session_factory() as session, session.begin():
            payment = await self._find_payment(session, event.reference)
            if payment is None:
                log.warning("payment_event_unknown_reference")
                return ReconcileResult.UNKNOWN_REFERENCE

            if payment.status == PaymentStatus.CAPTURED.value:
                log.error(
                    "payment_failed_after_capture",
                    payment_id=str(payment.id),
                    order_id=payment.order_id,
                )
                return ReconcileResult.IGNORED

            order_id = payment.order_id
            updated = await session.execute(
                update(Payment)
                .where(
                    Payment.id == payment.id,
                    Payment.status == PaymentStatus.CREATED.value,
                )
                .values(
                    status=PaymentStatus.FAILED.value,
                    error_message=event.error_message or "payment failed",
                )
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount == 1:
                result = ReconcileResult.APPLIED
                record_event(
                    session,
                    order_id=order_id,
                    event_type="payment.failed",
                    event_data={
                        "error_message": event.error_message,
                        "source": event.source,
                        "event_id": event.event_id,
                    },
                    payment_id=payment.id,
                )
                failable = [s.value for s in order_statuses_leading_to(OrderStatus.FAILED)]
                moved = await session.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.status.in_(failable))
                    .values(status=OrderStatus.FAILED.value)
                    .execution_options(synchronize_session=False)
                )
                if moved.rowcount != 1:
                    log.warning("payment_failed_order_not_failable", order_id=order_id)

        try:
            released = await self.orders.release_stock(
                order_id, OrderStatus.FAILED, OrderStatus.FAILED, reason="payment_failed"
            )
        except Exception:
            metrics.record_compensation("payment_failed", "failed")
            log.error("payment_failed_stock_release_error", order_id=order_id, exc_info=True)
            raise

        if released:
            metrics.record_compensation("payment_failed", "success")
            # A redelivery that finishes an interrupted release did real work
            result = ReconcileResult.APPLIED
        return result
