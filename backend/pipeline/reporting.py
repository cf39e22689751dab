"""
Order Query & Reporting
=======================
Read-only views for the admin panel and the customer's order history.
"""

from typing import Optional

from pipeline.customers import ICustomerDirectory
from pipeline.errors import OrderNotFound, ProductNotFound, QueryValidationError
from pipeline.event_log import IEventLog
from pipeline.store import IStore
from schemas.orders import (
    InventoryLedgerEntry,
    Order,
    OrderPage,
    OrderStats,
    OrderStatus,
    SystemEvent,
)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
SEVERITIES = ("DEBUG", "INFO", "WARN", "ERROR", "CRITICAL")


def _validate_paging(limit: int, offset: int) -> None:
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise QueryValidationError(
            f"limit must be between 1 and {MAX_PAGE_SIZE}", {"limit": limit}
        )
    if offset < 0:
        raise QueryValidationError("offset must be >= 0", {"offset": offset})


class ReportingService:

    def __init__(self, store: IStore, customers: ICustomerDirectory, event_log: IEventLog):
        self.store = store
        self.customers = customers
        self.events = event_log

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        customer_id: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> OrderPage:
        _validate_paging(limit, offset)
        orders, total = await self.store.list_orders(
            status=status, customer_id=customer_id, limit=limit, offset=offset
        )
        return OrderPage(orders=orders, total=total)

    async def get_order(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def get_stats(self) -> OrderStats:
        return await self.store.get_stats()

    async def orders_for_customer(
        self,
        email: str,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> OrderPage:
        """Order history for the authenticated customer; empty for unknown emails"""
        _validate_paging(limit, offset)
        customer = await self.customers.find_by_email(email)
        if customer is None:
            return OrderPage(orders=[], total=0)
        return await self.list_orders(customer_id=customer.id, limit=limit, offset=offset)

    async def recent_events(self, limit: int = 50, severity: Optional[str] = None) -> list[SystemEvent]:
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise QueryValidationError(
                f"limit must be between 1 and {MAX_PAGE_SIZE}", {"limit": limit}
            )
        if severity is not None and severity not in SEVERITIES:
            raise QueryValidationError(f"unknown severity: {severity}", {"severity": severity})
        return await self.events.recent(limit=limit, severity=severity)

    async def ledger_for_product(self, product_id: str) -> tuple[int, list[InventoryLedgerEntry]]:
        """Current stock and every movement recorded against it"""
        product = await self.store.get_product(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        return product.stock, await self.store.get_ledger(product_id)
