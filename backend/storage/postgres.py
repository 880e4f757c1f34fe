"""
PostgreSQL Repositories
=======================
asyncpg-backed implementations of the persistence interfaces.

Order status changes lock the row (SELECT ... FOR UPDATE) inside a
transaction, check the guard, then write the new document, so the
read-modify-write is a single serialization point. Stock reservation is a
conditional decrement per line inside one transaction.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import asyncpg
import structlog

from database import Database
from schemas.order_definitions import Order, OrderStatus, Product
from pipeline.errors import InsufficientStock, ProductUnavailable
from storage.repositories import ICustomerStore, IOrderRepository, IProductStore

logger = structlog.get_logger().bind(component="postgres_store")


def _row_to_product(row: asyncpg.Record) -> Product:
    return Product(
        product_id=row["id"],
        title=row["title"],
        price=row["price"],
        stock=row["stock"],
        active=row["active"],
        images=row["images"] or [],
    )


def _row_to_order(row: Optional[asyncpg.Record]) -> Optional[Order]:
    if row is None:
        return None
    return Order.model_validate(row["doc"])


# =============================================================================
# PRODUCTS / CUSTOMERS
# =============================================================================

class PostgresProductStore(IProductStore):

    async def get_many(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        rows = await Database.fetch_all(
            "SELECT * FROM products WHERE id = ANY($1)",
            list(product_ids),
        )
        return {row["id"]: _row_to_product(row) for row in rows}

    async def reserve(self, quantities: Dict[str, int]) -> None:
        async with Database.acquire() as conn:
            async with conn.transaction():
                # Fixed lock order avoids deadlocks between concurrent checkouts.
                for product_id in sorted(quantities):
                    quantity = quantities[product_id]
                    reserved = await conn.fetchval(
                        """
                        UPDATE products
                        SET stock = stock - $2, updated_at = NOW()
                        WHERE id = $1 AND active AND stock >= $2
                        RETURNING id
                        """,
                        product_id,
                        quantity,
                    )
                    if reserved is not None:
                        continue

                    row = await conn.fetchrow("SELECT * FROM products WHERE id = $1", product_id)
                    if row is None or not row["active"]:
                        raise ProductUnavailable(product_id)
                    raise InsufficientStock(product_id, row["title"], row["stock"])

    async def release(self, quantities: Dict[str, int]) -> None:
        async with Database.acquire() as conn:
            async with conn.transaction():
                for product_id in sorted(quantities):
                    await conn.execute(
                        "UPDATE products SET stock = stock + $2, updated_at = NOW() WHERE id = $1",
                        product_id,
                        quantities[product_id],
                    )

    async def save(self, product: Product) -> Product:
        await Database.execute(
            """
            INSERT INTO products (id, title, price, stock, active, images)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (id) DO UPDATE
            SET title = EXCLUDED.title, price = EXCLUDED.price, stock = EXCLUDED.stock,
                active = EXCLUDED.active, images = EXCLUDED.images, updated_at = NOW()
            """,
            product.product_id,
            product.title,
            product.price,
            product.stock,
            product.active,
            product.images,
        )
        return product


class PostgresCustomerStore(ICustomerStore):

    async def exists(self, customer_id: str) -> bool:
        found = await Database.fetch_one("SELECT 1 FROM customers WHERE id = $1", customer_id)
        return found is not None


# =============================================================================
# ORDERS
# =============================================================================

class PostgresOrderRepository(IOrderRepository):

    async def insert(self, order: Order) -> Order:
        await Database.execute(
            """
            INSERT INTO orders (id, status, gateway_order_ref, created_at, doc)
            VALUES ($1, $2, $3, $4, $5)
            """,
            order.order_id,
            order.status.value,
            order.gateway_order_ref,
            order.created_at,
            order.model_dump(mode="json"),
        )
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        row = await Database.fetch_one("SELECT doc FROM orders WHERE id = $1", order_id)
        return _row_to_order(row)

    async def get_by_gateway_ref(self, gateway_order_ref: str) -> Optional[Order]:
        row = await Database.fetch_one(
            "SELECT doc FROM orders WHERE gateway_order_ref = $1",
            gateway_order_ref,
        )
        return _row_to_order(row)

    async def _write(self, conn: asyncpg.Connection, order: Order) -> None:
        await conn.execute(
            """
            UPDATE orders
            SET status = $2, gateway_order_ref = $3, doc = $4
            WHERE id = $1
            """,
            order.order_id,
            order.status.value,
            order.gateway_order_ref,
            order.model_dump(mode="json"),
        )

    async def transition(
        self,
        order_id: str,
        from_statuses: Iterable[OrderStatus],
        to_status: OrderStatus,
        updates: Optional[Dict[str, Any]] = None,
        gateway_order_ref: Optional[str] = None,
    ) -> Optional[Order]:
        allowed = [status.value for status in from_statuses]
        async with Database.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT doc FROM orders WHERE id = $1 AND status = ANY($2) FOR UPDATE",
                    order_id,
                    allowed,
                )
                order = _row_to_order(row)
                if order is None:
                    return None
                if gateway_order_ref is not None and order.gateway_order_ref != gateway_order_ref:
                    return None
                updated = order.transition_to(to_status, **(updates or {}))
                await self._write(conn, updated)
                return updated

    async def append_metadata(self, order_id: str, key: str, entry: Any) -> Optional[Order]:
        async with Database.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow("SELECT doc FROM orders WHERE id = $1 FOR UPDATE", order_id)
                order = _row_to_order(row)
                if order is None:
                    return None
                metadata = dict(order.metadata)
                metadata[key] = list(metadata.get(key, [])) + [entry]
                updated = order.model_copy(update={"metadata": metadata, "updated_at": datetime.utcnow()})
                await self._write(conn, updated)
                return updated

    async def claim_stock_release(self, order_id: str) -> Optional[Order]:
        async with Database.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow("SELECT doc FROM orders WHERE id = $1 FOR UPDATE", order_id)
                order = _row_to_order(row)
                if order is None or not order.stock_reserved:
                    return None
                updated = order.model_copy(update={"stock_reserved": False, "updated_at": datetime.utcnow()})
                await self._write(conn, updated)
                return updated

    async def delete_if(self, order_id: str, statuses: Iterable[OrderStatus]) -> Optional[Order]:
        row = await Database.fetch_one(
            "DELETE FROM orders WHERE id = $1 AND status = ANY($2) RETURNING doc",
            order_id,
            [status.value for status in statuses],
        )
        return _row_to_order(row)

    async def list_recent(
        self,
        limit: int = 100,
        hide_pending_before: Optional[datetime] = None,
    ) -> List[Order]:
        if hide_pending_before is not None:
            rows = await Database.fetch_all(
                """
                SELECT doc FROM orders
                WHERE status <> 'pending' OR created_at >= $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                hide_pending_before,
                limit,
            )
        else:
            rows = await Database.fetch_all(
                "SELECT doc FROM orders ORDER BY created_at DESC LIMIT $1",
                limit,
            )
        return [_row_to_order(row) for row in rows]

    async def list_open_before(self, cutoff: datetime, limit: int = 100) -> List[Order]:
        rows = await Database.fetch_all(
            """
            SELECT doc FROM orders
            WHERE status IN ('pending', 'awaiting_payment_setup') AND created_at < $1
            ORDER BY created_at ASC
            LIMIT $2
            """,
            cutoff,
            limit,
        )
        return [_row_to_order(row) for row in rows]
