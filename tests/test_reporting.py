import pytest

from pipeline.errors import OrderNotFound, ProductNotFound, QueryValidationError
from pipeline.reporting import MAX_PAGE_SIZE
from schemas.orders import OrderStatus


@pytest.fixture
async def three_orders(system, checkout_request):
    """ada: one paid, one pending; bob: one paid"""
    orders = []
    for email, paid in (("ada@example.com", True), ("ada@example.com", False), ("bob@example.com", True)):
        checkout = await system.orders.create_checkout(checkout_request(("sku-tee", 1), email=email))
        if paid:
            await system.fulfillment.fulfill_payment(checkout.order.gateway_payment_id)
        orders.append(checkout.order)
    return orders


async def test_list_is_newest_first_with_total(system, three_orders):
    page = await system.reporting.list_orders()

    assert page.total == 3
    assert [o.id for o in page.orders] == [o.id for o in reversed(three_orders)]


async def test_list_filters_and_pages(system, three_orders):
    paid = await system.reporting.list_orders(status=OrderStatus.PAID)
    ada = await system.reporting.list_orders(customer_id=three_orders[0].customer_id)
    page = await system.reporting.list_orders(limit=1, offset=1)

    assert paid.total == 2
    assert all(o.status == OrderStatus.PAID for o in paid.orders)
    assert ada.total == 2
    assert page.total == 3
    assert [o.id for o in page.orders] == [three_orders[1].id]


@pytest.mark.parametrize("limit,offset", [(0, 0), (101, 0), (10, -1)])
async def test_list_rejects_bad_paging(system, limit, offset):
    with pytest.raises(QueryValidationError):
        await system.reporting.list_orders(limit=limit, offset=offset)


async def test_stats_count_revenue_only_for_paid_orders(system, three_orders):
    stats = await system.reporting.get_stats()

    assert stats.total_orders == 3
    assert stats.total_revenue_cents == 2 * 2499
    assert stats.orders_by_status == {"PAID": 2, "PENDING": 1}


async def test_get_order(system, three_orders):
    order = await system.reporting.get_order(three_orders[0].id)

    assert order.id == three_orders[0].id
    with pytest.raises(OrderNotFound):
        await system.reporting.get_order("missing")


async def test_customer_history(system, three_orders):
    ada = await system.reporting.orders_for_customer("Ada@Example.com")
    stranger = await system.reporting.orders_for_customer("nobody@example.com")

    assert ada.total == 2
    assert {o.id for o in ada.orders} == {three_orders[0].id, three_orders[1].id}
    assert stranger.total == 0
    assert stranger.orders == []


async def test_customer_history_pages_past_the_first_page(system, three_orders):
    first = await system.reporting.orders_for_customer("ada@example.com", limit=1)
    second = await system.reporting.orders_for_customer("ada@example.com", limit=1, offset=1)

    assert first.total == second.total == 2
    assert [o.id for o in first.orders] == [three_orders[1].id]
    assert [o.id for o in second.orders] == [three_orders[0].id]
    with pytest.raises(QueryValidationError):
        await system.reporting.orders_for_customer("ada@example.com", limit=MAX_PAGE_SIZE + 1)


async def test_recent_events_filter_by_severity(system, three_orders):
    await system.fulfillment.fulfill_payment("pi_unknown")

    errors = await system.reporting.recent_events(severity="ERROR")

    assert [e.event_type for e in errors] == ["ORDER_NOT_FOUND_FOR_PAYMENT"]
    with pytest.raises(QueryValidationError):
        await system.reporting.recent_events(severity="LOUD")


async def test_product_ledger(system, three_orders):
    stock, entries = await system.reporting.ledger_for_product("sku-tee")

    assert stock == 3
    assert [e.delta for e in entries] == [-1, -1]
    with pytest.raises(ProductNotFound):
        await system.reporting.ledger_for_product("sku-nope")
