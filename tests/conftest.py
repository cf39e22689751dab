import json
import time
from typing import Optional

import pytest

from pipeline.container import build_in_memory_system
from pipeline.notifications import INotifier
from pipeline.payment_gateway import FakePaymentGateway
from schemas.orders import CartLine, CheckoutRequest, OrderConfirmation, Product

WEBHOOK_SECRET = "whsec_test_secret"


class RecordingNotifier(INotifier):
    """Collects confirmations; flip ``fail`` to simulate a broker outage"""

    def __init__(self):
        self.sent: list[OrderConfirmation] = []
        self.fail = False

    async def send_order_confirmation(self, confirmation: OrderConfirmation) -> None:
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.sent.append(confirmation)


@pytest.fixture
def gateway():
    return FakePaymentGateway(WEBHOOK_SECRET)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def system(gateway, notifier):
    system = build_in_memory_system(payments=gateway, notifier=notifier)
    system.store.add_product(Product(id="sku-tee", name="Logo Tee", unit_price_cents=2499, stock=5))
    system.store.add_product(Product(id="sku-mug", name="Enamel Mug", unit_price_cents=1200, stock=1))
    system.store.add_product(
        Product(id="sku-hat", name="Retired Hat", unit_price_cents=900, stock=10, is_active=False)
    )
    return system


@pytest.fixture
def checkout_request():
    def build(*lines, email="ada@example.com", name="Ada King Lovelace"):
        return CheckoutRequest(
            items=[CartLine(product_id=pid, quantity=qty) for pid, qty in lines],
            customer_email=email,
            customer_name=name,
        )
    return build


@pytest.fixture
def webhook_event():
    """Build a (payload, signature header) pair for a gateway event"""
    def build(
        payment_id: str,
        event_type: str = "payment_intent.succeeded",
        event_id: str = "evt_test_1",
        secret: str = WEBHOOK_SECRET,
        timestamp: Optional[int] = None,
        last_payment_error: Optional[dict] = None,
    ) -> tuple[bytes, str]:
        intent = {"id": payment_id, "object": "payment_intent"}
        if last_payment_error:
            intent["last_payment_error"] = last_payment_error
        payload = json.dumps({
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": intent},
        }).encode()
        signer = FakePaymentGateway(secret)
        header = signer.sign_payload(payload, timestamp=timestamp or int(time.time()))
        return payload, header
    return build
