"""
Checkout Errors
===============
Exception taxonomy for the checkout and fulfillment pipeline.

Every error the storefront can see carries an HTTP status code and a
details dict; the API layer renders them as
``{"error": {"type", "message", "details"}}``.
"""

from typing import Any, Optional


class CheckoutError(Exception):
    """Base class for pipeline errors that map to an HTTP response"""

    status_code: int = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# CART VALIDATION
# =============================================================================

class CartValidationError(CheckoutError):
    status_code = 400


class ProductNotFound(CheckoutError):
    status_code = 404

    def __init__(self, product_id: str):
        super().__init__(
            f"Product not found: {product_id}",
            {"product_id": product_id},
        )
        self.product_id = product_id


class ProductInactive(CheckoutError):
    status_code = 400

    def __init__(self, product_id: str, product_name: str):
        super().__init__(
            f"Product is not available: {product_name}",
            {"product_id": product_id},
        )
        self.product_id = product_id


class InsufficientStock(CheckoutError):
    status_code = 409

    def __init__(self, product_id: str, product_name: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for {product_name}",
            {"product_id": product_id, "requested": requested, "available": available},
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


# =============================================================================
# PAYMENT GATEWAY
# =============================================================================

class PaymentIntentCreationFailed(CheckoutError):
    status_code = 502


class WebhookSignatureInvalid(CheckoutError):
    status_code = 400

    def __init__(self, reason: str = "Invalid webhook signature"):
        super().__init__(reason)


# =============================================================================
# ORDERS
# =============================================================================

class OrderNotFound(CheckoutError):
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}", {"order_id": order_id})
        self.order_id = order_id


class IllegalStatusTransition(CheckoutError):
    status_code = 409

    def __init__(self, from_status: str, to_status: str, reason: Optional[str] = None):
        super().__init__(
            reason or f"Cannot transition order from {from_status} to {to_status}",
            {"from_status": from_status, "to_status": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class ConcurrentStatusChange(CheckoutError):
    """The order's status moved underneath a compare-and-set write"""

    status_code = 409

    def __init__(self, order_id: str, expected_status: str):
        super().__init__(
            f"Order {order_id} changed status concurrently",
            {"order_id": order_id, "expected_status": expected_status},
        )


class QueryValidationError(CheckoutError):
    status_code = 400


# =============================================================================
# FULFILLMENT (internal)
# =============================================================================

class StockShortfall(CheckoutError):
    """
    Raised inside the fulfillment transaction when a conditional stock
    decrement finds less stock than the order needs. Aborts the whole
    transaction; reported as an outcome, never to the storefront.
    """

    status_code = 409

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            f"Stock shortfall for {product_id}: requested {requested}, available {available}",
            {"product_id": product_id, "requested": requested, "available": available},
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class DuplicatePaymentId(CheckoutError):
    """An order already references this gateway payment id"""

    status_code = 409

    def __init__(self, gateway_payment_id: str):
        super().__init__(
            f"Payment id already attached to an order: {gateway_payment_id}",
            {"gateway_payment_id": gateway_payment_id},
        )
