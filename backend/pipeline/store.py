"""
Order Store - Persistence Interfaces
====================================
Abstractions for the catalog, order records, the inventory ledger and the
fulfillment transaction, plus an in-memory implementation with the same
atomicity guarantees as the Postgres one.

- ICatalogStore: batch product reads
- IOrderRepository: order aggregate writes and reporting queries
- IStoreTransaction: row-locked reads + conditional stock decrement
- InMemoryStore: single asyncio.Lock, staged writes applied on commit

pip install pydantic structlog
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

import structlog

from pipeline.errors import ConcurrentStatusChange, DuplicatePaymentId, StockShortfall
from schemas.orders import (
    InventoryLedgerEntry,
    Order,
    OrderStats,
    OrderStatus,
    Product,
)


# =============================================================================
# PERSISTENCE INTERFACES
# =============================================================================

class ICatalogStore(ABC):
    """Read access to products"""

    @abstractmethod
    async def get_products(self, product_ids: list[str]) -> dict[str, Product]:
        """Fetch many products in one call; missing ids are simply absent"""
        pass

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]:
        pass


class IStoreTransaction(ABC):
    """
    Unit of work for state changes that must be all-or-nothing.
    Leaving the ``transaction()`` block normally commits; an exception
    discards every write made through this object.
    """

    @abstractmethod
    async def get_order_for_update(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_for_update_by_payment_id(self, gateway_payment_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def decrement_stock(self, product_id: str, quantity: int) -> int:
        """
        Conditionally subtract ``quantity``; check and write are one step.
        Returns the remaining stock or raises StockShortfall.
        """
        pass

    @abstractmethod
    async def append_ledger(self, entry: InventoryLedgerEntry) -> None:
        pass

    @abstractmethod
    async def save_status(self, order: Order, expected_status: OrderStatus) -> None:
        """Persist status fields of ``order`` if the stored status is still ``expected_status``"""
        pass


class IOrderRepository(ABC):
    """Order aggregate persistence and queries"""

    @abstractmethod
    async def insert_order(self, order: Order) -> Order:
        """Insert header and items together; payment id must be unused"""
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_by_payment_id(self, gateway_payment_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        customer_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        """Newest first; returns the page and the unpaged total"""
        pass

    @abstractmethod
    async def get_stats(self) -> OrderStats:
        pass

    @abstractmethod
    async def get_unconfirmed_paid_orders(self, paid_before: datetime, limit: int = 10) -> list[Order]:
        """Paid orders still owed a confirmation, oldest payment first; abandoned ones excluded"""
        pass

    @abstractmethod
    async def mark_confirmation_sent(self, order_id: str, sent_at: datetime) -> None:
        pass

    @abstractmethod
    async def mark_confirmation_abandoned(self, order_id: str, abandoned_at: datetime) -> None:
        pass

    @abstractmethod
    async def get_ledger(self, product_id: str) -> list[InventoryLedgerEntry]:
        pass


class IStore(ICatalogStore, IOrderRepository):
    """Everything the checkout pipeline persists"""

    @abstractmethod
    def transaction(self) -> AsyncIterator[IStoreTransaction]:
        """Async context manager yielding an IStoreTransaction"""
        pass

    async def close(self) -> None:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION (tests and local development)
# =============================================================================

class _InMemoryTransaction(IStoreTransaction):
    """Stages writes; the owning store applies them on commit"""

    def __init__(self, store: "InMemoryStore"):
        self._store = store
        self.stock: dict[str, int] = {}
        self.ledger: list[InventoryLedgerEntry] = []
        self.orders: dict[str, Order] = {}

    def _current_order(self, order_id: str) -> Optional[Order]:
        return self.orders.get(order_id) or self._store._orders.get(order_id)

    async def get_order_for_update(self, order_id: str) -> Optional[Order]:
        return self._current_order(order_id)

    async def get_order_for_update_by_payment_id(self, gateway_payment_id: str) -> Optional[Order]:
        order_id = self._store._by_payment_id.get(gateway_payment_id)
        if order_id is None:
            return None
        return self._current_order(order_id)

    async def decrement_stock(self, product_id: str, quantity: int) -> int:
        product = self._store._products.get(product_id)
        available = self.stock.get(product_id, product.stock if product else 0)
        if product is None or available < quantity:
            raise StockShortfall(product_id, quantity, available)
        self.stock[product_id] = available - quantity
        return self.stock[product_id]

    async def append_ledger(self, entry: InventoryLedgerEntry) -> None:
        self.ledger.append(entry)

    async def save_status(self, order: Order, expected_status: OrderStatus) -> None:
        current = self._current_order(order.id)
        if current is None or current.status != expected_status:
            raise ConcurrentStatusChange(order.id, expected_status.value)
        self.orders[order.id] = current.model_copy(update={
            "status": order.status,
            "is_paid": order.is_paid,
            "paid_at": order.paid_at,
            "updated_at": order.updated_at,
        })


class InMemoryStore(IStore):
    """
    In-memory store. One lock serializes every transaction and write, so a
    transaction's check-then-act sequence cannot interleave with another.
    """

    def __init__(self):
        self._products: dict[str, Product] = {}
        self._orders: dict[str, Order] = {}
        self._by_payment_id: dict[str, str] = {}
        self._ledger: list[InventoryLedgerEntry] = []
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="in_memory_store")

    # Catalog seeding (synchronous, outside the pipeline)

    def add_product(self, product: Product) -> Product:
        self._products[product.id] = product
        return product

    def set_price(self, product_id: str, unit_price_cents: int) -> None:
        self._products[product_id] = self._products[product_id].model_copy(
            update={"unit_price_cents": unit_price_cents}
        )

    def set_active(self, product_id: str, is_active: bool) -> None:
        self._products[product_id] = self._products[product_id].model_copy(
            update={"is_active": is_active}
        )

    def set_stock(self, product_id: str, stock: int) -> None:
        self._products[product_id] = self._products[product_id].model_copy(
            update={"stock": stock}
        )

    # ICatalogStore

    async def get_products(self, product_ids: list[str]) -> dict[str, Product]:
        async with self._lock:
            return {pid: self._products[pid] for pid in product_ids if pid in self._products}

    async def get_product(self, product_id: str) -> Optional[Product]:
        async with self._lock:
            return self._products.get(product_id)

    # Transactions

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[IStoreTransaction]:
        async with self._lock:
            tx = _InMemoryTransaction(self)
            yield tx
            self._commit(tx)

    def _commit(self, tx: _InMemoryTransaction) -> None:
        for product_id, stock in tx.stock.items():
            self._products[product_id] = self._products[product_id].model_copy(
                update={"stock": stock}
            )
        self._ledger.extend(tx.ledger)
        self._orders.update(tx.orders)

    # IOrderRepository

    async def insert_order(self, order: Order) -> Order:
        async with self._lock:
            if order.gateway_payment_id in self._by_payment_id:
                raise DuplicatePaymentId(order.gateway_payment_id)
            self._orders[order.id] = order
            self._by_payment_id[order.gateway_payment_id] = order.id
        self._logger.debug("order_inserted", order_id=order.id)
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def get_order_by_payment_id(self, gateway_payment_id: str) -> Optional[Order]:
        async with self._lock:
            order_id = self._by_payment_id.get(gateway_payment_id)
            return self._orders.get(order_id) if order_id else None

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        customer_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        async with self._lock:
            # Reverse insertion order so equal timestamps still list newest first
            matching = [
                o for o in reversed(self._orders.values())
                if (status is None or o.status == status)
                and (customer_id is None or o.customer_id == customer_id)
            ]
        matching.sort(key=lambda o: o.created_at, reverse=True)
        return matching[offset:offset + limit], len(matching)

    async def get_stats(self) -> OrderStats:
        async with self._lock:
            orders = list(self._orders.values())

        by_status: dict[str, int] = {}
        for order in orders:
            by_status[order.status.value] = by_status.get(order.status.value, 0) + 1

        return OrderStats(
            total_orders=len(orders),
            total_revenue_cents=sum(o.total_cents for o in orders if o.is_paid),
            orders_by_status=by_status,
        )

    async def get_unconfirmed_paid_orders(self, paid_before: datetime, limit: int = 10) -> list[Order]:
        async with self._lock:
            pending = [
                o for o in self._orders.values()
                if o.is_paid
                and o.confirmation_sent_at is None
                and o.confirmation_abandoned_at is None
                and o.paid_at is not None
                and o.paid_at < paid_before
            ]
        pending.sort(key=lambda o: o.paid_at)
        return pending[:limit]

    async def mark_confirmation_sent(self, order_id: str, sent_at: datetime) -> None:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is not None:
                self._orders[order_id] = order.model_copy(update={"confirmation_sent_at": sent_at})

    async def mark_confirmation_abandoned(self, order_id: str, abandoned_at: datetime) -> None:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is not None:
                self._orders[order_id] = order.model_copy(update={"confirmation_abandoned_at": abandoned_at})

    async def get_ledger(self, product_id: str) -> list[InventoryLedgerEntry]:
        async with self._lock:
            return [e for e in self._ledger if e.product_id == product_id]
