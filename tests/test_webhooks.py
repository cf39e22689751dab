import json
import time

import pytest

from pipeline.errors import WebhookSignatureInvalid
from schemas.orders import OrderStatus


async def test_signed_success_event_fulfills_order(system, checkout_request, webhook_event):
    checkout = await system.orders.create_checkout(checkout_request(("sku-tee", 2)))
    payload, header = webhook_event(checkout.order.gateway_payment_id, event_id="evt_ok")

    ack = await system.webhooks.receive(payload, header)

    assert ack == {
        "received": True,
        "event_id": "evt_ok",
        "event_type": "payment_intent.succeeded",
        "outcome": "FULFILLED",
    }
    assert (await system.store.get_order(checkout.order.id)).status == OrderStatus.PAID
    assert (await system.store.get_product("sku-tee")).stock == 3


async def test_redelivered_event_is_acknowledged_as_duplicate(system, checkout_request, webhook_event):
    checkout = await system.orders.create_checkout(checkout_request(("sku-tee", 2)))
    payload, header = webhook_event(checkout.order.gateway_payment_id)

    await system.webhooks.receive(payload, header)
    ack = await system.webhooks.receive(payload, header)

    assert ack["received"] is True
    assert ack["outcome"] == "DUPLICATE"
    assert (await system.store.get_product("sku-tee")).stock == 3


async def test_tampered_payload_is_rejected_without_side_effects(system, checkout_request, webhook_event):
    checkout = await system.orders.create_checkout(checkout_request(("sku-tee", 2)))
    payload, header = webhook_event(checkout.order.gateway_payment_id)
    tampered = payload.replace(b"evt_test_1", b"evt_forged")

    with pytest.raises(WebhookSignatureInvalid):
        await system.webhooks.receive(tampered, header)

    assert (await system.store.get_order(checkout.order.id)).status == OrderStatus.PENDING
    assert (await system.store.get_product("sku-tee")).stock == 5
    [event] = await system.events.recent(event_types=["WEBHOOK_SIGNATURE_REJECTED"])
    assert event.severity == "WARN"


async def test_wrong_secret_is_rejected(system, checkout_request, webhook_event):
    checkout = await system.orders.create_checkout(checkout_request(("sku-tee", 1)))
    payload, header = webhook_event(checkout.order.gateway_payment_id, secret="whsec_attacker")

    with pytest.raises(WebhookSignatureInvalid):
        await system.webhooks.receive(payload, header)

    assert (await system.store.get_order(checkout.order.id)).status == OrderStatus.PENDING


async def test_missing_signature_is_rejected(system, webhook_event):
    payload, _ = webhook_event("pi_fake_000001")

    with pytest.raises(WebhookSignatureInvalid):
        await system.webhooks.receive(payload, None)


async def test_stale_signature_is_rejected(system, webhook_event):
    payload, header = webhook_event("pi_fake_000001", timestamp=int(time.time()) - 3600)

    with pytest.raises(WebhookSignatureInvalid):
        await system.webhooks.receive(payload, header)


async def test_payment_failure_is_logged_and_order_left_pending(system, checkout_request, webhook_event):
    checkout = await system.orders.create_checkout(checkout_request(("sku-tee", 1)))
    payload, header = webhook_event(
        checkout.order.gateway_payment_id,
        event_type="payment_intent.payment_failed",
        last_payment_error={"code": "card_declined", "decline_code": "insufficient_funds"},
    )

    ack = await system.webhooks.receive(payload, header)

    assert ack["received"] is True
    assert ack["outcome"] == "PAYMENT_FAILED_LOGGED"
    assert (await system.store.get_order(checkout.order.id)).status == OrderStatus.PENDING
    [event] = await system.events.recent(event_types=["PAYMENT_FAILED"])
    assert event.payload["decline_code"] == "insufficient_funds"


async def test_unhandled_event_types_are_accepted_and_ignored(system, webhook_event):
    payload, header = webhook_event("pi_fake_000001", event_type="charge.refunded")

    ack = await system.webhooks.receive(payload, header)

    assert ack["received"] is True
    assert ack["outcome"] == "IGNORED"


async def test_success_for_unknown_payment_is_acknowledged(system, webhook_event):
    payload, header = webhook_event("pi_never_created")

    ack = await system.webhooks.receive(payload, header)

    assert ack["received"] is True
    assert ack["outcome"] == "ORDER_NOT_FOUND"


def test_router_lists_supported_events(system):
    assert set(system.webhooks.router.supported_events) == {
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
    }


@pytest.mark.parametrize("body", [
    {"id": "evt_bare", "type": "payment_intent.succeeded"},
    {"id": "evt_empty", "type": "payment_intent.succeeded", "data": {}},
    {"id": "evt_no_id", "type": "payment_intent.succeeded", "data": {"object": {"object": "payment_intent"}}},
])
async def test_success_event_without_payment_intent_is_ignored(system, gateway, body):
    payload = json.dumps(body).encode()
    header = gateway.sign_payload(payload, timestamp=int(time.time()))

    ack = await system.webhooks.receive(payload, header)

    assert ack["received"] is True
    assert ack["outcome"] == "IGNORED"
    assert await system.events.recent() == []


async def test_failure_event_without_payment_intent_is_still_logged(system, gateway):
    payload = json.dumps({"id": "evt_bare", "type": "payment_intent.payment_failed"}).encode()
    header = gateway.sign_payload(payload, timestamp=int(time.time()))

    ack = await system.webhooks.receive(payload, header)

    assert ack["outcome"] == "PAYMENT_FAILED_LOGGED"
    [event] = await system.events.recent(event_types=["PAYMENT_FAILED"])
    assert event.payload["gateway_payment_id"] is None
