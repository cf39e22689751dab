import pytest

from pipeline.errors import IllegalStatusTransition, OrderNotFound
from schemas.orders import ALLOWED_TRANSITIONS, Order, OrderStatus

LEGAL = [
    (OrderStatus.PENDING, OrderStatus.PAID),
    (OrderStatus.PENDING, OrderStatus.CANCELLED),
    (OrderStatus.PAID, OrderStatus.SHIPPED),
    (OrderStatus.PAID, OrderStatus.CANCELLED),
    (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
]


def make_order(status: OrderStatus) -> Order:
    return Order(
        customer_id="cust-1",
        customer_email="ada@example.com",
        status=status,
        subtotal_cents=100,
        total_cents=100,
        gateway_payment_id=f"pi_{status.value.lower()}",
    )


def test_transition_table_is_exactly_the_legal_set():
    pairs = {(src, dst) for src, targets in ALLOWED_TRANSITIONS.items() for dst in targets}
    assert pairs == set(LEGAL)


@pytest.mark.parametrize("src,dst", LEGAL)
def test_legal_transitions(src, dst):
    assert make_order(src).transition_to(dst).status == dst


@pytest.mark.parametrize("src,dst", [
    (src, dst)
    for src in OrderStatus
    for dst in OrderStatus
    if (src, dst) not in LEGAL
])
def test_illegal_transitions_raise(src, dst):
    with pytest.raises(IllegalStatusTransition) as exc:
        make_order(src).transition_to(dst)

    assert exc.value.status_code == 409
    assert exc.value.details == {"from_status": src.value, "to_status": dst.value}


def test_transition_returns_a_new_order():
    pending = make_order(OrderStatus.PENDING)

    paid = pending.transition_to(OrderStatus.PAID)

    assert pending.status == OrderStatus.PENDING
    assert pending.is_paid is False
    assert paid.is_paid is True
    assert paid.paid_at is not None
    assert paid.updated_at >= pending.updated_at


async def test_admin_ships_and_delivers_paid_order(system, checkout_request):
    checkout = await system.orders.create_checkout(checkout_request(("sku-tee", 1)))
    await system.fulfillment.fulfill_payment(checkout.order.gateway_payment_id)

    shipped = await system.orders.update_status(checkout.order.id, OrderStatus.SHIPPED)
    delivered = await system.orders.update_status(checkout.order.id, OrderStatus.DELIVERED)

    assert shipped.status == OrderStatus.SHIPPED
    assert delivered.status == OrderStatus.DELIVERED
    assert (await system.store.get_order(checkout.order.id)).status == OrderStatus.DELIVERED
    events = await system.events.recent(event_types=["ORDER_STATUS_CHANGED"])
    assert [e.payload["to_status"] for e in events] == ["DELIVERED", "SHIPPED"]


async def test_admin_cannot_skip_payment(system, checkout_request):
    checkout = await system.orders.create_checkout(checkout_request(("sku-tee", 1)))

    with pytest.raises(IllegalStatusTransition):
        await system.orders.update_status(checkout.order.id, OrderStatus.SHIPPED)

    assert (await system.store.get_order(checkout.order.id)).status == OrderStatus.PENDING


async def test_admin_cannot_mark_paid(system, checkout_request):
    checkout = await system.orders.create_checkout(checkout_request(("sku-tee", 1)))

    with pytest.raises(IllegalStatusTransition):
        await system.orders.update_status(checkout.order.id, OrderStatus.PAID)

    order = await system.store.get_order(checkout.order.id)
    assert order.status == OrderStatus.PENDING
    assert (await system.store.get_product("sku-tee")).stock == 5


async def test_cancelling_a_paid_order_keeps_stock_as_is(system, checkout_request):
    checkout = await system.orders.create_checkout(checkout_request(("sku-tee", 2)))
    await system.fulfillment.fulfill_payment(checkout.order.gateway_payment_id)

    cancelled = await system.orders.update_status(checkout.order.id, OrderStatus.CANCELLED)

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.is_paid is True
    assert (await system.store.get_product("sku-tee")).stock == 3


async def test_unknown_order_update_is_not_found(system):
    with pytest.raises(OrderNotFound):
        await system.orders.update_status("missing", OrderStatus.CANCELLED)
