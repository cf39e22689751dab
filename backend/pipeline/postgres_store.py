"""
Postgres Order Store
====================
IStore on top of the shared asyncpg pool (``database.Database``).

- Order header + items inserted in one transaction
- Fulfillment locks the order row (SELECT ... FOR UPDATE)
- Stock decrement is a single conditional UPDATE ... WHERE stock >= $q
- Ledger rows and the status flip commit or roll back with it

pip install asyncpg structlog
"""

import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import asyncpg
import structlog

from database import Database
from pipeline.errors import ConcurrentStatusChange, DuplicatePaymentId, StockShortfall
from pipeline.store import IStore, IStoreTransaction
from schemas.orders import (
    Address,
    InventoryLedgerEntry,
    Order,
    OrderItem,
    OrderStats,
    OrderStatus,
    Product,
)

logger = structlog.get_logger().bind(component="postgres_store")


# =============================================================================
# ROW MAPPING
# =============================================================================

def parse_uuid(value: str) -> Optional[uuid.UUID]:
    """Order and customer ids are UUID columns; anything else cannot match a row"""
    try:
        return uuid.UUID(value)
    except (TypeError, ValueError):
        return None


def _load_address(value: Any) -> Optional[Address]:
    if value is None:
        return None
    if isinstance(value, str):
        value = json.loads(value)
    return Address(**value)


def _dump_address(address: Optional[Address]) -> Optional[str]:
    return address.model_dump_json() if address else None


def _row_to_product(row: asyncpg.Record) -> Product:
    return Product(
        id=row["id"],
        name=row["name"],
        unit_price_cents=row["unit_price_cents"],
        stock=row["stock"],
        is_active=row["is_active"],
    )


def _row_to_item(row: asyncpg.Record) -> OrderItem:
    return OrderItem(
        id=str(row["id"]),
        order_id=str(row["order_id"]),
        product_id=row["product_id"],
        product_name=row["product_name"],
        quantity=row["quantity"],
        unit_price_cents=row["unit_price_cents"],
        line_total_cents=row["line_total_cents"],
    )


def _row_to_order(row: asyncpg.Record, items: list[OrderItem]) -> Order:
    return Order(
        id=str(row["id"]),
        customer_id=str(row["customer_id"]),
        customer_email=row["customer_email"],
        status=OrderStatus(row["status"]),
        is_paid=row["is_paid"],
        subtotal_cents=row["subtotal_cents"],
        total_cents=row["total_cents"],
        currency=row["currency"],
        gateway_payment_id=row["gateway_payment_id"],
        shipping_address=_load_address(row["shipping_address"]),
        billing_address=_load_address(row["billing_address"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        paid_at=row["paid_at"],
        confirmation_sent_at=row["confirmation_sent_at"],
        confirmation_abandoned_at=row["confirmation_abandoned_at"],
        items=items,
    )


async def _load_orders(conn: asyncpg.Connection, rows: list[asyncpg.Record]) -> list[Order]:
    """Attach items to a batch of order rows with one query"""
    if not rows:
        return []

    order_ids = [row["id"] for row in rows]
    item_rows = await conn.fetch(
        """
        SELECT * FROM order_items
        WHERE order_id = ANY($1::uuid[])
        ORDER BY order_id, position
        """,
        order_ids,
    )

    items_by_order: dict[str, list[OrderItem]] = {}
    for item_row in item_rows:
        items_by_order.setdefault(str(item_row["order_id"]), []).append(_row_to_item(item_row))

    return [_row_to_order(row, items_by_order.get(str(row["id"]), [])) for row in rows]


# =============================================================================
# TRANSACTION
# =============================================================================

class PostgresTransaction(IStoreTransaction):
    """All statements run on one connection inside one transaction"""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def _lock_order(self, column: str, value: Any) -> Optional[Order]:
        row = await self._conn.fetchrow(
            f"SELECT * FROM orders WHERE {column} = $1 FOR UPDATE",
            value,
        )
        if row is None:
            return None
        orders = await _load_orders(self._conn, [row])
        return orders[0]

    async def get_order_for_update(self, order_id: str) -> Optional[Order]:
        order_uuid = parse_uuid(order_id)
        if order_uuid is None:
            return None
        return await self._lock_order("id", order_uuid)

    async def get_order_for_update_by_payment_id(self, gateway_payment_id: str) -> Optional[Order]:
        return await self._lock_order("gateway_payment_id", gateway_payment_id)

    async def decrement_stock(self, product_id: str, quantity: int) -> int:
        remaining = await self._conn.fetchval(
            """
            UPDATE products
            SET stock = stock - $2, updated_at = NOW()
            WHERE id = $1 AND stock >= $2
            RETURNING stock
            """,
            product_id,
            quantity,
        )
        if remaining is None:
            available = await self._conn.fetchval(
                "SELECT stock FROM products WHERE id = $1",
                product_id,
            )
            raise StockShortfall(product_id, quantity, available or 0)
        return remaining

    async def append_ledger(self, entry: InventoryLedgerEntry) -> None:
        await self._conn.execute(
            """
            INSERT INTO inventory_log (id, product_id, delta, reason, order_id, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            entry.id,
            entry.product_id,
            entry.delta,
            entry.reason.value,
            entry.order_id,
            entry.created_at,
        )

    async def save_status(self, order: Order, expected_status: OrderStatus) -> None:
        result = await self._conn.execute(
            """
            UPDATE orders
            SET status = $2, is_paid = $3, paid_at = $4, updated_at = $5
            WHERE id = $1 AND status = $6
            """,
            order.id,
            order.status.value,
            order.is_paid,
            order.paid_at,
            order.updated_at,
            expected_status.value,
        )
        if result != "UPDATE 1":
            raise ConcurrentStatusChange(order.id, expected_status.value)


# =============================================================================
# STORE
# =============================================================================

class PostgresStore(IStore):
    """Production store backed by the asyncpg pool"""

    # ICatalogStore

    async def get_products(self, product_ids: list[str]) -> dict[str, Product]:
        rows = await Database.fetch_all(
            "SELECT * FROM products WHERE id = ANY($1::varchar[])",
            product_ids,
        )
        return {row["id"]: _row_to_product(row) for row in rows}

    async def get_product(self, product_id: str) -> Optional[Product]:
        row = await Database.fetch_one("SELECT * FROM products WHERE id = $1", product_id)
        return _row_to_product(row) if row else None

    async def upsert_product(self, product: Product) -> Product:
        """Catalog seeding helper for scripts and fixtures"""
        await Database.execute(
            """
            INSERT INTO products (id, name, unit_price_cents, stock, is_active)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (id) DO UPDATE
            SET name = EXCLUDED.name,
                unit_price_cents = EXCLUDED.unit_price_cents,
                stock = EXCLUDED.stock,
                is_active = EXCLUDED.is_active,
                updated_at = NOW()
            """,
            product.id,
            product.name,
            product.unit_price_cents,
            product.stock,
            product.is_active,
        )
        return product

    # Transactions

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[IStoreTransaction]:
        async with Database.transaction() as conn:
            yield PostgresTransaction(conn)

    # IOrderRepository

    async def insert_order(self, order: Order) -> Order:
        try:
            async with Database.transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO orders
                    (id, customer_id, customer_email, status, is_paid, subtotal_cents,
                     total_cents, currency, gateway_payment_id, shipping_address,
                     billing_address, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                    """,
                    order.id,
                    order.customer_id,
                    order.customer_email,
                    order.status.value,
                    order.is_paid,
                    order.subtotal_cents,
                    order.total_cents,
                    order.currency,
                    order.gateway_payment_id,
                    _dump_address(order.shipping_address),
                    _dump_address(order.billing_address),
                    order.created_at,
                    order.updated_at,
                )
                await conn.executemany(
                    """
                    INSERT INTO order_items
                    (id, order_id, position, product_id, product_name, quantity,
                     unit_price_cents, line_total_cents)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    [
                        (
                            item.id,
                            order.id,
                            position,
                            item.product_id,
                            item.product_name,
                            item.quantity,
                            item.unit_price_cents,
                            item.line_total_cents,
                        )
                        for position, item in enumerate(order.items)
                    ],
                )
        except asyncpg.UniqueViolationError as e:
            logger.error("duplicate_payment_id", gateway_payment_id=order.gateway_payment_id)
            raise DuplicatePaymentId(order.gateway_payment_id) from e

        return order

    async def _fetch_orders(self, query: str, *args) -> list[Order]:
        async with Database.acquire() as conn:
            rows = await conn.fetch(query, *args)
            return await _load_orders(conn, rows)

    async def get_order(self, order_id: str) -> Optional[Order]:
        order_uuid = parse_uuid(order_id)
        if order_uuid is None:
            return None
        orders = await self._fetch_orders("SELECT * FROM orders WHERE id = $1", order_uuid)
        return orders[0] if orders else None

    async def get_order_by_payment_id(self, gateway_payment_id: str) -> Optional[Order]:
        orders = await self._fetch_orders(
            "SELECT * FROM orders WHERE gateway_payment_id = $1",
            gateway_payment_id,
        )
        return orders[0] if orders else None

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        customer_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        conditions = []
        params: list[Any] = []
        param_num = 1

        if status:
            conditions.append(f"status = ${param_num}")
            params.append(status.value)
            param_num += 1

        if customer_id:
            customer_uuid = parse_uuid(customer_id)
            if customer_uuid is None:
                return [], 0
            conditions.append(f"customer_id = ${param_num}")
            params.append(customer_uuid)
            param_num += 1

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        total = await Database.fetch_value(
            f"SELECT COUNT(*) FROM orders {where_clause}",
            *params,
        )
        orders = await self._fetch_orders(
            f"""
            SELECT * FROM orders
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ${param_num} OFFSET ${param_num + 1}
            """,
            *params,
            limit,
            offset,
        )
        return orders, total or 0

    async def get_stats(self) -> OrderStats:
        totals = await Database.fetch_one(
            """
            SELECT COUNT(*) AS total_orders,
                   COALESCE(SUM(total_cents) FILTER (WHERE is_paid), 0) AS revenue
            FROM orders
            """
        )
        rows = await Database.fetch_all(
            """
            SELECT status, COUNT(*) AS count
            FROM orders
            GROUP BY status
            """
        )
        return OrderStats(
            total_orders=totals["total_orders"],
            total_revenue_cents=totals["revenue"],
            orders_by_status={row["status"]: row["count"] for row in rows},
        )

    async def get_unconfirmed_paid_orders(self, paid_before: datetime, limit: int = 10) -> list[Order]:
        return await self._fetch_orders(
            """
            SELECT * FROM orders
            WHERE is_paid
              AND confirmation_sent_at IS NULL
              AND confirmation_abandoned_at IS NULL
              AND paid_at < $1
            ORDER BY paid_at
            LIMIT $2
            """,
            paid_before,
            limit,
        )

    async def mark_confirmation_sent(self, order_id: str, sent_at: datetime) -> None:
        await Database.execute(
            "UPDATE orders SET confirmation_sent_at = $2 WHERE id = $1",
            order_id,
            sent_at,
        )

    async def mark_confirmation_abandoned(self, order_id: str, abandoned_at: datetime) -> None:
        await Database.execute(
            "UPDATE orders SET confirmation_abandoned_at = $2 WHERE id = $1",
            order_id,
            abandoned_at,
        )

    async def get_ledger(self, product_id: str) -> list[InventoryLedgerEntry]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM inventory_log
            WHERE product_id = $1
            ORDER BY created_at
            """,
            product_id,
        )
        return [
            InventoryLedgerEntry(
                id=str(row["id"]),
                product_id=row["product_id"],
                delta=row["delta"],
                reason=row["reason"],
                order_id=str(row["order_id"]) if row["order_id"] else None,
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def close(self) -> None:
        await Database.close()
