"""
Cart Pricing & Validation
=========================
Turns a cart into priced line items against the live catalog.

- Duplicate product lines are merged before any check
- Missing, inactive and under-stocked products are rejected
- Integer cents throughout; total == subtotal (no tax/shipping)

No side effects: nothing is reserved or written here.
"""

from typing import Iterable

import structlog

from pipeline.errors import (
    CartValidationError,
    InsufficientStock,
    ProductInactive,
    ProductNotFound,
)
from pipeline.store import ICatalogStore
from schemas.orders import CartLine, PricedCart, PricedLine


def merge_cart_lines(lines: Iterable[CartLine]) -> list[CartLine]:
    """Sum quantities of repeated product ids, keeping first-seen order"""
    merged: dict[str, int] = {}
    for line in lines:
        merged[line.product_id] = merged.get(line.product_id, 0) + line.quantity
    return [CartLine(product_id=pid, quantity=qty) for pid, qty in merged.items()]


class CartPricer:
    """Validates a cart against the catalog and prices it"""

    def __init__(self, catalog: ICatalogStore, currency: str = "usd"):
        self._catalog = catalog
        self._currency = currency
        self._logger = structlog.get_logger().bind(component="cart_pricer")

    async def price(self, lines: list[CartLine]) -> PricedCart:
        if not lines:
            raise CartValidationError("Cart is empty")

        cart = merge_cart_lines(lines)
        products = await self._catalog.get_products([line.product_id for line in cart])

        priced: list[PricedLine] = []
        for line in cart:
            product = products.get(line.product_id)
            if product is None:
                raise ProductNotFound(line.product_id)
            if not product.is_active:
                raise ProductInactive(product.id, product.name)
            if line.quantity > product.stock:
                self._logger.info(
                    "insufficient_stock",
                    product_id=product.id,
                    requested=line.quantity,
                    available=product.stock,
                )
                raise InsufficientStock(product.id, product.name, line.quantity, product.stock)

            priced.append(PricedLine(
                product_id=product.id,
                product_name=product.name,
                quantity=line.quantity,
                unit_price_cents=product.unit_price_cents,
                line_total_cents=product.unit_price_cents * line.quantity,
            ))

        subtotal = sum(line.line_total_cents for line in priced)
        return PricedCart(
            lines=priced,
            subtotal_cents=subtotal,
            total_cents=subtotal,
            currency=self._currency,
        )
