"""
Order Record Manager
====================
Synchronous half of checkout: price the cart, resolve the customer,
create the payment intent, then persist the order as PENDING.

The order is only ever written after the gateway has returned a payment
id, so a failed intent leaves nothing behind. Stock is not touched here;
the fulfillment transaction decrements it once payment is confirmed.

Also hosts the admin status update, which goes through the same state
machine and row lock as fulfillment.
"""

from typing import Optional

import structlog

from pipeline.customers import ICustomerDirectory, split_name
from pipeline.errors import IllegalStatusTransition, OrderNotFound, PaymentIntentCreationFailed
from pipeline.event_log import IEventLog
from pipeline.payment_gateway import IPaymentGateway
from pipeline.pricing import CartPricer
from pipeline.store import IStore
from schemas.orders import (
    CheckoutRequest,
    CheckoutResult,
    Order,
    OrderItem,
    OrderStatus,
    new_id,
)


class OrderService:
    """
    Example:
        service = OrderService(store, customers, gateway, event_log)
        result = await service.create_checkout(request)
        # storefront confirms payment with result.client_secret
    """

    def __init__(
        self,
        store: IStore,
        customers: ICustomerDirectory,
        payments: IPaymentGateway,
        event_log: IEventLog,
        currency: str = "usd",
    ):
        self.store = store
        self.customers = customers
        self.payments = payments
        self.events = event_log
        self.pricer = CartPricer(store, currency=currency)
        self._logger = structlog.get_logger().bind(component="order_service")

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        log = self._logger.bind(customer_email=request.customer_email)
        log.info("checkout_initiated", line_count=len(request.items))

        priced = await self.pricer.price(request.items)

        first_name, last_name = split_name(request.customer_name)
        customer = await self.customers.find_or_create_by_email(
            request.customer_email, first_name, last_name
        )

        try:
            intent = await self.payments.create_intent(
                priced.total_cents,
                priced.currency,
                {"customer_email": customer.email, "customer_id": customer.id},
            )
        except PaymentIntentCreationFailed as e:
            await self.events.record(
                "PAYMENT_INTENT_FAILED",
                {"total_cents": priced.total_cents, "customer_id": customer.id, **e.details},
                component="order_service",
                severity="ERROR",
            )
            raise

        order_id = new_id()
        order = Order(
            id=order_id,
            customer_id=customer.id,
            customer_email=customer.email,
            subtotal_cents=priced.subtotal_cents,
            total_cents=priced.total_cents,
            currency=priced.currency,
            gateway_payment_id=intent.gateway_payment_id,
            shipping_address=request.shipping_address,
            billing_address=request.billing_address,
            items=[
                OrderItem(
                    order_id=order_id,
                    product_id=line.product_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                    line_total_cents=line.line_total_cents,
                )
                for line in priced.lines
            ],
        )
        await self.store.insert_order(order)

        log.info(
            "checkout_created",
            order_id=order.id,
            gateway_payment_id=order.gateway_payment_id,
            total_cents=order.total_cents,
        )
        return CheckoutResult(order=order, client_secret=intent.client_secret)

    # =========================================================================
    # ADMIN
    # =========================================================================

    async def update_status(self, order_id: str, new_status: OrderStatus, actor: Optional[str] = None) -> Order:
        """Admin transition. PAID is reserved for payment confirmation."""
        async with self.store.transaction() as tx:
            order = await tx.get_order_for_update(order_id)
            if order is None:
                raise OrderNotFound(order_id)

            if new_status == OrderStatus.PAID:
                raise IllegalStatusTransition(
                    order.status.value,
                    new_status.value,
                    "PAID can only be set by a confirmed payment",
                )

            updated = order.transition_to(new_status)
            await tx.save_status(updated, expected_status=order.status)

        await self.events.record(
            "ORDER_STATUS_CHANGED",
            {
                "from_status": order.status.value,
                "to_status": new_status.value,
                "actor": actor or "admin",
            },
            order_id=order_id,
            component="order_service",
        )
        return updated
