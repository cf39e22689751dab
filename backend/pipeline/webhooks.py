"""
Webhook Receiver
================
Authenticates inbound payment-gateway events and routes them by type.

- Signature verified BEFORE anything else; failures never reach handlers
- payment_intent.succeeded -> fulfillment transaction
- payment_intent.payment_failed -> logged, order untouched
- Anything else is accepted and ignored

Processing is inline: an infrastructure exception propagates so the
gateway sees a 5xx and redelivers; idempotency absorbs the retry.
"""

from typing import Any, Awaitable, Callable, Optional

import structlog

from pipeline.errors import WebhookSignatureInvalid
from pipeline.event_log import IEventLog
from pipeline.fulfillment import FulfillmentService
from pipeline.payment_gateway import IPaymentGateway

WebhookHandler = Callable[[dict], Awaitable[Optional[dict[str, Any]]]]


def _event_object(event: dict) -> dict:
    """``data.object`` of a gateway event, or an empty dict when absent"""
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    return obj if isinstance(obj, dict) else {}


class WebhookRouter:
    """
    Routes verified events to handlers registered per event type.
    Separates routing logic from business logic.
    """

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, event: dict) -> Optional[dict[str, Any]]:
        event_type = event.get("type", "unknown")

        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.info("event_ignored", event_type=event_type)
            return None

        return await handler(event)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


class WebhookReceiver:
    """
    Example:
        receiver = WebhookReceiver(gateway, fulfillment, event_log)
        ack = await receiver.receive(await request.body(), request.headers.get("stripe-signature"))
    """

    def __init__(
        self,
        payments: IPaymentGateway,
        fulfillment: FulfillmentService,
        event_log: IEventLog,
    ):
        self.payments = payments
        self.fulfillment = fulfillment
        self.events = event_log
        self.router = WebhookRouter()
        self._logger = structlog.get_logger().bind(component="webhook_receiver")
        self._register_handlers()

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register("payment_intent.succeeded")
        async def handle_payment_succeeded(event: dict):
            return await self._on_payment_succeeded(event)

        @self.router.register("payment_intent.payment_failed")
        async def handle_payment_failed(event: dict):
            return await self._on_payment_failed(event)

    async def receive(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        """Verify, dispatch and acknowledge; raises WebhookSignatureInvalid"""
        try:
            event = self.payments.verify_signature(payload, signature)
        except WebhookSignatureInvalid as e:
            await self.events.record(
                "WEBHOOK_SIGNATURE_REJECTED",
                {"reason": e.message, "payload_bytes": len(payload)},
                component="webhook_receiver",
                severity="WARN",
            )
            raise

        event_type = event.get("type", "unknown")
        event_id = event.get("id", "unknown")
        self._logger.info("webhook_received", event_type=event_type, event_id=event_id)

        result = await self.router.route(event)

        return {
            "received": True,
            "event_id": event_id,
            "event_type": event_type,
            "outcome": result.get("outcome") if result else "IGNORED",
        }

    async def _on_payment_succeeded(self, event: dict) -> Optional[dict[str, Any]]:
        payment_intent = _event_object(event)
        if not payment_intent.get("id"):
            self._logger.warning("event_without_payment_intent", event_id=event.get("id"))
            return None
        result = await self.fulfillment.fulfill_payment(payment_intent["id"])
        return {"outcome": result.outcome.value, "order_id": result.order_id}

    async def _on_payment_failed(self, event: dict) -> dict[str, Any]:
        payment_intent = _event_object(event)
        error = payment_intent.get("last_payment_error") or {}

        await self.events.record(
            "PAYMENT_FAILED",
            {
                "gateway_payment_id": payment_intent.get("id"),
                "error_code": error.get("code"),
                "decline_code": error.get("decline_code"),
                "message": error.get("message"),
            },
            component="webhook_receiver",
            severity="WARN",
        )
        return {"outcome": "PAYMENT_FAILED_LOGGED"}
