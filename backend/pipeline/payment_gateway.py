"""
Payment Gateway Adapter
=======================
Thin capability interface over Stripe PaymentIntents.

- create_intent: amount (cents) + currency + metadata -> payment id + client secret
- verify_signature: raw webhook body + Stripe-Signature header -> parsed event
- StripePaymentGateway: live Stripe API (blocking SDK calls run off the loop)
- FakePaymentGateway: deterministic ids for tests and local development,
  verifying the same signed-header scheme Stripe uses

pip install stripe structlog
"""

import asyncio
import hashlib
import hmac
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import stripe
import structlog

from pipeline.errors import PaymentIntentCreationFailed, WebhookSignatureInvalid
from schemas.orders import PaymentIntentResult


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentGateway(ABC):
    """What the checkout pipeline needs from a payment provider"""

    name: str = "abstract"

    @abstractmethod
    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
    ) -> PaymentIntentResult:
        pass

    @abstractmethod
    def verify_signature(self, payload: bytes, signature_header: Optional[str]) -> dict[str, Any]:
        """Return the parsed event or raise WebhookSignatureInvalid"""
        pass


class _StripeSignedWebhooks:
    """Webhook verification via the Stripe SDK, shared by both gateways"""

    def __init__(self, webhook_secret: str, tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance
        self._logger = structlog.get_logger().bind(component="webhook_verifier")

    def verify_signature(self, payload: bytes, signature_header: Optional[str]) -> dict[str, Any]:
        # CRITICAL: Verify signature BEFORE parsing
        if not signature_header:
            self._logger.warning("webhook_signature_missing")
            raise WebhookSignatureInvalid("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(
                payload, signature_header, self._webhook_secret, tolerance=self._tolerance
            )
        except stripe.SignatureVerificationError as e:
            self._logger.warning("webhook_signature_invalid", error=str(e))
            raise WebhookSignatureInvalid() from e
        except ValueError as e:
            self._logger.warning("webhook_payload_invalid", error=str(e))
            raise WebhookSignatureInvalid("Malformed webhook payload") from e

        return json.loads(payload)


# =============================================================================
# STRIPE
# =============================================================================

class StripePaymentGateway(_StripeSignedWebhooks, IPaymentGateway):
    """Live Stripe PaymentIntents"""

    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str):
        super().__init__(webhook_secret)
        stripe.api_key = secret_key
        self._logger = structlog.get_logger().bind(component="stripe_gateway")

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
    ) -> PaymentIntentResult:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount_cents,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            self._logger.error(
                "payment_intent_failed",
                error=str(e),
                error_type=type(e).__name__,
                amount_cents=amount_cents,
            )
            raise PaymentIntentCreationFailed(
                "Payment provider rejected the request",
                {"provider_error": type(e).__name__},
            ) from e

        self._logger.info("payment_intent_created", gateway_payment_id=intent.id, amount_cents=amount_cents)
        return PaymentIntentResult(gateway_payment_id=intent.id, client_secret=intent.client_secret)


# =============================================================================
# FAKE (tests / local development)
# =============================================================================

class FakePaymentGateway(_StripeSignedWebhooks, IPaymentGateway):
    """
    Offline gateway. Intents get sequential ids (``pi_fake_000001``) and
    webhooks are signed with the Stripe header scheme, so signature
    checks run through the real SDK verifier.

    Example:
        gateway = FakePaymentGateway("whsec_test")
        body = json.dumps(event).encode()
        header = gateway.sign_payload(body)
    """

    name = "fake"

    def __init__(self, webhook_secret: str = "whsec_fake"):
        super().__init__(webhook_secret)
        self._counter = 0
        self._fail_next = False
        self.intents: list[dict[str, Any]] = []

    def fail_next(self) -> None:
        """Make the next create_intent call fail like a provider outage"""
        self._fail_next = True

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
    ) -> PaymentIntentResult:
        if self._fail_next:
            self._fail_next = False
            raise PaymentIntentCreationFailed(
                "Payment provider rejected the request",
                {"provider_error": "FakeGatewayFailure"},
            )

        self._counter += 1
        payment_id = f"pi_fake_{self._counter:06d}"
        secret = hashlib.sha256(f"{payment_id}:{self._webhook_secret}".encode()).hexdigest()[:24]
        self.intents.append({
            "id": payment_id,
            "amount": amount_cents,
            "currency": currency,
            "metadata": dict(metadata),
        })
        return PaymentIntentResult(
            gateway_payment_id=payment_id,
            client_secret=f"{payment_id}_secret_{secret}",
        )

    def sign_payload(self, payload: bytes, timestamp: Optional[int] = None) -> str:
        """Build a Stripe-Signature header for ``payload``"""
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
        signature = hmac.new(self._webhook_secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"
