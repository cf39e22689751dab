import asyncio
import os
import uuid

import pytest

from database import Database
from pipeline.container import CheckoutSystem
from pipeline.customers import PostgresCustomerDirectory
from pipeline.errors import OrderNotFound
from pipeline.event_log import PostgresEventLog
from pipeline.postgres_store import PostgresStore, parse_uuid
from schemas.orders import FulfillmentOutcome, OrderStatus, Product, utcnow

# Tables are truncated between tests; never point this at real data
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

needs_postgres = pytest.mark.skipif(not TEST_DATABASE_URL, reason="TEST_DATABASE_URL not set")


def test_parse_uuid():
    order_id = str(uuid.uuid4())

    assert parse_uuid(order_id) == uuid.UUID(order_id)
    assert parse_uuid("missing") is None
    assert parse_uuid("") is None


@pytest.fixture
async def pg_system(gateway, notifier):
    await Database.initialize(TEST_DATABASE_URL)
    await Database.execute(
        "TRUNCATE inventory_log, order_items, orders, customers, products, system_events"
    )
    store = PostgresStore()
    await store.upsert_product(Product(id="sku-tee", name="Logo Tee", unit_price_cents=2499, stock=5))
    await store.upsert_product(Product(id="sku-mug", name="Enamel Mug", unit_price_cents=1200, stock=1))

    yield CheckoutSystem(
        store=store,
        customers=PostgresCustomerDirectory(),
        payments=gateway,
        notifier=notifier,
        event_log=PostgresEventLog(),
        store_backend="postgres",
    )

    await Database.close()


@needs_postgres
async def test_checkout_round_trips_order_and_items(pg_system, checkout_request):
    checkout = await pg_system.orders.create_checkout(
        checkout_request(("sku-tee", 2), ("sku-mug", 1))
    )

    order = await pg_system.reporting.get_order(checkout.order.id)

    assert order.status == OrderStatus.PENDING
    assert order.total_cents == 2 * 2499 + 1200
    assert [(i.product_id, i.quantity) for i in order.items] == [("sku-tee", 2), ("sku-mug", 1)]


@needs_postgres
async def test_concurrent_redeliveries_apply_once(pg_system, checkout_request):
    checkout = await pg_system.orders.create_checkout(checkout_request(("sku-tee", 2)))
    payment_id = checkout.order.gateway_payment_id

    results = await asyncio.gather(*[pg_system.fulfillment.fulfill_payment(payment_id) for _ in range(5)])

    outcomes = [r.outcome for r in results]
    assert outcomes.count(FulfillmentOutcome.FULFILLED) == 1
    assert outcomes.count(FulfillmentOutcome.DUPLICATE) == 4
    assert (await pg_system.store.get_product("sku-tee")).stock == 3
    assert [e.delta for e in await pg_system.store.get_ledger("sku-tee")] == [-2]


@needs_postgres
async def test_last_unit_is_sold_once(pg_system, checkout_request):
    first = await pg_system.orders.create_checkout(checkout_request(("sku-mug", 1)))
    second = await pg_system.orders.create_checkout(
        checkout_request(("sku-mug", 1), email="bob@example.com")
    )

    results = await asyncio.gather(
        pg_system.fulfillment.fulfill_payment(first.order.gateway_payment_id),
        pg_system.fulfillment.fulfill_payment(second.order.gateway_payment_id),
    )

    assert sorted(r.outcome.value for r in results) == ["FULFILLED", "STOCK_SHORTFALL"]
    assert (await pg_system.store.get_product("sku-mug")).stock == 0
    assert len(await pg_system.store.get_ledger("sku-mug")) == 1
    statuses = sorted(
        (await pg_system.store.get_order(c.order.id)).status.value for c in (first, second)
    )
    assert statuses == ["PAID", "PENDING"]


@needs_postgres
async def test_shortfall_rolls_back_every_line(pg_system, checkout_request):
    checkout = await pg_system.orders.create_checkout(checkout_request(("sku-tee", 2), ("sku-mug", 1)))
    await pg_system.store.upsert_product(
        Product(id="sku-mug", name="Enamel Mug", unit_price_cents=1200, stock=0)
    )

    result = await pg_system.fulfillment.fulfill_payment(checkout.order.gateway_payment_id)

    assert result.outcome == FulfillmentOutcome.STOCK_SHORTFALL
    assert (await pg_system.store.get_product("sku-tee")).stock == 5
    assert await pg_system.store.get_ledger("sku-tee") == []
    assert (await pg_system.store.get_order(checkout.order.id)).status == OrderStatus.PENDING


@needs_postgres
async def test_non_uuid_ids_are_not_found(pg_system):
    assert await pg_system.store.get_order("missing") is None
    with pytest.raises(OrderNotFound):
        await pg_system.reporting.get_order("missing")
    with pytest.raises(OrderNotFound):
        await pg_system.orders.update_status("abc", OrderStatus.CANCELLED)

    page = await pg_system.reporting.list_orders(customer_id="x")
    assert page.total == 0
    assert page.orders == []


@needs_postgres
async def test_abandoned_orders_leave_the_resend_queue(pg_system, notifier, checkout_request):
    notifier.fail = True
    checkout = await pg_system.orders.create_checkout(checkout_request(("sku-tee", 1)))
    await pg_system.fulfillment.fulfill_payment(checkout.order.gateway_payment_id)

    assert [o.id for o in await pg_system.store.get_unconfirmed_paid_orders(utcnow())] == [checkout.order.id]

    await pg_system.store.mark_confirmation_abandoned(checkout.order.id, utcnow())

    assert await pg_system.store.get_unconfirmed_paid_orders(utcnow()) == []
