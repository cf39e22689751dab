"""
Fulfillment Transaction
=======================
Applies a confirmed payment to its order exactly once.

Inside one store transaction:
1. lock the order by gateway payment id
2. already PAID/SHIPPED/DELIVERED -> DUPLICATE, nothing written
3. conditionally decrement stock for every line + one ledger entry each
4. flip PENDING -> PAID

Any stock shortfall aborts the whole transaction; the order stays PENDING
and the anomaly is written to the event log for manual resolution. The
confirmation notification fires only after commit and can never undo it.
"""

import structlog

from pipeline.errors import StockShortfall
from pipeline.event_log import IEventLog
from pipeline.notifications import INotifier
from pipeline.store import IStore
from schemas.orders import (
    PAID_STATUSES,
    FulfillmentOutcome,
    FulfillmentResult,
    InventoryLedgerEntry,
    LedgerReason,
    Order,
    OrderConfirmation,
    OrderStatus,
    utcnow,
)

COMPONENT = "fulfillment"


class FulfillmentService:

    def __init__(self, store: IStore, notifier: INotifier, event_log: IEventLog):
        self.store = store
        self.notifier = notifier
        self.events = event_log
        self._logger = structlog.get_logger().bind(component=COMPONENT)

    async def fulfill_payment(self, gateway_payment_id: str) -> FulfillmentResult:
        log = self._logger.bind(gateway_payment_id=gateway_payment_id)

        try:
            async with self.store.transaction() as tx:
                order = await tx.get_order_for_update_by_payment_id(gateway_payment_id)

                if order is None:
                    outcome = FulfillmentOutcome.ORDER_NOT_FOUND
                elif order.status in PAID_STATUSES:
                    outcome = FulfillmentOutcome.DUPLICATE
                elif order.status == OrderStatus.CANCELLED:
                    outcome = FulfillmentOutcome.ORDER_CANCELLED
                else:
                    # Fixed lock order across concurrent fulfillments
                    for item in sorted(order.items, key=lambda i: i.product_id):
                        await tx.decrement_stock(item.product_id, item.quantity)
                        await tx.append_ledger(InventoryLedgerEntry(
                            product_id=item.product_id,
                            delta=-item.quantity,
                            reason=LedgerReason.ORDER,
                            order_id=order.id,
                        ))

                    paid = order.transition_to(OrderStatus.PAID)
                    await tx.save_status(paid, expected_status=OrderStatus.PENDING)
                    outcome = FulfillmentOutcome.FULFILLED

        except StockShortfall as e:
            return await self._report_shortfall(order, gateway_payment_id, e)

        if outcome == FulfillmentOutcome.ORDER_NOT_FOUND:
            await self.events.record(
                "ORDER_NOT_FOUND_FOR_PAYMENT",
                {"gateway_payment_id": gateway_payment_id},
                component=COMPONENT,
                severity="ERROR",
            )
            return FulfillmentResult(outcome=outcome, gateway_payment_id=gateway_payment_id)

        if outcome == FulfillmentOutcome.DUPLICATE:
            log.info("payment_already_applied", order_id=order.id, status=order.status.value)
            return FulfillmentResult(
                outcome=outcome,
                gateway_payment_id=gateway_payment_id,
                order_id=order.id,
            )

        if outcome == FulfillmentOutcome.ORDER_CANCELLED:
            await self.events.record(
                "PAYMENT_FOR_CANCELLED_ORDER",
                {
                    "gateway_payment_id": gateway_payment_id,
                    "total_cents": order.total_cents,
                    "requires_manual_refund": True,
                },
                order_id=order.id,
                component=COMPONENT,
                severity="CRITICAL",
            )
            return FulfillmentResult(
                outcome=outcome,
                gateway_payment_id=gateway_payment_id,
                order_id=order.id,
            )

        log.info("order_fulfilled", order_id=paid.id, total_cents=paid.total_cents)
        await self.events.record(
            "ORDER_FULFILLED",
            {"gateway_payment_id": gateway_payment_id, "total_cents": paid.total_cents},
            order_id=paid.id,
            component=COMPONENT,
        )
        await self.send_confirmation(paid)

        return FulfillmentResult(
            outcome=FulfillmentOutcome.FULFILLED,
            gateway_payment_id=gateway_payment_id,
            order_id=paid.id,
        )

    async def _report_shortfall(
        self,
        order: Order,
        gateway_payment_id: str,
        error: StockShortfall,
    ) -> FulfillmentResult:
        await self.events.record(
            "STOCK_SHORTFALL",
            {
                "gateway_payment_id": gateway_payment_id,
                "product_id": error.product_id,
                "requested": error.requested,
                "available": error.available,
                "requires_manual_intervention": True,
            },
            order_id=order.id,
            component=COMPONENT,
            severity="CRITICAL",
        )
        return FulfillmentResult(
            outcome=FulfillmentOutcome.STOCK_SHORTFALL,
            gateway_payment_id=gateway_payment_id,
            order_id=order.id,
            detail=error.details,
        )

    async def send_confirmation(self, order: Order) -> bool:
        """
        Best-effort confirmation after commit. Failures are logged and left
        for the resend task; returns True when the notifier accepted it.
        """
        try:
            await self.notifier.send_order_confirmation(OrderConfirmation.from_order(order))
        except Exception as e:
            await self.events.record(
                "CONFIRMATION_FAILED",
                {"error": str(e), "error_type": type(e).__name__},
                order_id=order.id,
                component=COMPONENT,
                severity="WARN",
            )
            return False

        await self.store.mark_confirmation_sent(order.id, utcnow())
        return True
