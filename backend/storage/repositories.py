"""
Persistence Interfaces and In-Memory Implementations
=====================================================
Repository contracts the order engine depends on, plus asyncio-safe
in-memory versions used in tests and when no DATABASE_URL is configured.

The order repository's ``transition`` is the only way an order's status
changes: a conditional update guarded by the current status, so two
concurrent payment confirmations can never both observe ``pending``.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from schemas.order_definitions import Order, OrderStatus, Product
from pipeline.errors import InsufficientStock, ProductUnavailable


# =============================================================================
# INTERFACES
# =============================================================================

class IProductStore(ABC):
    """Catalog reads plus the atomic stock reservation used at checkout."""

    @abstractmethod
    async def get_many(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        pass

    @abstractmethod
    async def reserve(self, quantities: Dict[str, int]) -> None:
        """
        Decrement stock for every product iff each has enough.
        All-or-nothing; raises ProductUnavailable or InsufficientStock.
        """
        pass

    @abstractmethod
    async def release(self, quantities: Dict[str, int]) -> None:
        pass

    @abstractmethod
    async def save(self, product: Product) -> Product:
        pass


class ICustomerStore(ABC):

    @abstractmethod
    async def exists(self, customer_id: str) -> bool:
        pass


class IOrderRepository(ABC):

    @abstractmethod
    async def insert(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_gateway_ref(self, gateway_order_ref: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def transition(
        self,
        order_id: str,
        from_statuses: Iterable[OrderStatus],
        to_status: OrderStatus,
        updates: Optional[Dict[str, Any]] = None,
        gateway_order_ref: Optional[str] = None,
    ) -> Optional[Order]:
        """
        Atomically move an order to ``to_status`` if its current status is in
        ``from_statuses`` (and its gateway ref equals ``gateway_order_ref``
        when given). Returns the updated order, or None if the guard failed
        or the order does not exist.
        """
        pass

    @abstractmethod
    async def append_metadata(self, order_id: str, key: str, entry: Any) -> Optional[Order]:
        """Append ``entry`` to the list at ``metadata[key]``."""
        pass

    @abstractmethod
    async def claim_stock_release(self, order_id: str) -> Optional[Order]:
        """
        Clear ``stock_reserved`` if it is set. Returns the order only to the
        caller that cleared it, so reserved stock goes back exactly once.
        """
        pass

    @abstractmethod
    async def delete_if(self, order_id: str, statuses: Iterable[OrderStatus]) -> Optional[Order]:
        """Delete the order iff its status is in ``statuses``; return what was deleted."""
        pass

    @abstractmethod
    async def list_recent(
        self,
        limit: int = 100,
        hide_pending_before: Optional[datetime] = None,
    ) -> List[Order]:
        pass

    @abstractmethod
    async def list_open_before(self, cutoff: datetime, limit: int = 100) -> List[Order]:
        """Pending / awaiting_payment_setup orders created before ``cutoff``."""
        pass


class IIdempotencyStore(ABC):
    """Ledger of processed gateway events"""

    @abstractmethod
    async def try_acquire(self, key: str, holder_id: str) -> bool:
        """Attempt to claim ``key``. False if completed or held by someone else."""
        pass

    @abstractmethod
    async def release(self, key: str, holder_id: str) -> bool:
        pass

    @abstractmethod
    async def mark_completed(self, key: str, result: str = "success") -> bool:
        pass

    @abstractmethod
    async def is_completed(self, key: str) -> bool:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryProductStore(IProductStore):

    def __init__(self, products: Optional[Iterable[Product]] = None):
        self._products: Dict[str, Product] = {p.product_id: p for p in products or []}
        self._lock = asyncio.Lock()

    async def get_many(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        async with self._lock:
            return {pid: self._products[pid] for pid in product_ids if pid in self._products}

    async def reserve(self, quantities: Dict[str, int]) -> None:
        async with self._lock:
            for product_id, quantity in quantities.items():
                product = self._products.get(product_id)
                if product is None or not product.active:
                    raise ProductUnavailable(product_id)
                if quantity > product.stock:
                    raise InsufficientStock(product_id, product.title, product.stock)
            for product_id, quantity in quantities.items():
                product = self._products[product_id]
                self._products[product_id] = product.model_copy(update={"stock": product.stock - quantity})

    async def release(self, quantities: Dict[str, int]) -> None:
        async with self._lock:
            for product_id, quantity in quantities.items():
                product = self._products.get(product_id)
                if product is not None:
                    self._products[product_id] = product.model_copy(update={"stock": product.stock + quantity})

    async def save(self, product: Product) -> Product:
        async with self._lock:
            self._products[product.product_id] = product
            return product


class InMemoryCustomerStore(ICustomerStore):

    def __init__(self, customer_ids: Optional[Iterable[str]] = None):
        self._ids = set(customer_ids or [])

    async def exists(self, customer_id: str) -> bool:
        return customer_id in self._ids

    def add(self, customer_id: str) -> None:
        self._ids.add(customer_id)


class InMemoryOrderRepository(IOrderRepository):
    """Thread-safe in-memory order repository"""

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def insert(self, order: Order) -> Order:
        async with self._lock:
            if order.order_id in self._orders:
                raise KeyError(f"Order {order.order_id} already exists")
            self._orders[order.order_id] = order
            return order

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def get_by_gateway_ref(self, gateway_order_ref: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.gateway_order_ref == gateway_order_ref:
                    return order
            return None

    async def transition(
        self,
        order_id: str,
        from_statuses: Iterable[OrderStatus],
        to_status: OrderStatus,
        updates: Optional[Dict[str, Any]] = None,
        gateway_order_ref: Optional[str] = None,
    ) -> Optional[Order]:
        allowed = set(from_statuses)
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status not in allowed:
                return None
            if gateway_order_ref is not None and order.gateway_order_ref != gateway_order_ref:
                return None
            updated = order.transition_to(to_status, **(updates or {}))
            self._orders[order_id] = updated
            return updated

    async def append_metadata(self, order_id: str, key: str, entry: Any) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return None
            metadata = dict(order.metadata)
            metadata[key] = list(metadata.get(key, [])) + [entry]
            updated = order.model_copy(update={"metadata": metadata, "updated_at": datetime.utcnow()})
            self._orders[order_id] = updated
            return updated

    async def claim_stock_release(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or not order.stock_reserved:
                return None
            updated = order.model_copy(update={"stock_reserved": False, "updated_at": datetime.utcnow()})
            self._orders[order_id] = updated
            return updated

    async def delete_if(self, order_id: str, statuses: Iterable[OrderStatus]) -> Optional[Order]:
        allowed = set(statuses)
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status not in allowed:
                return None
            del self._orders[order_id]
            return order

    async def list_recent(
        self,
        limit: int = 100,
        hide_pending_before: Optional[datetime] = None,
    ) -> List[Order]:
        async with self._lock:
            orders = sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True)
        if hide_pending_before is not None:
            orders = [
                o for o in orders
                if o.status != OrderStatus.PENDING or o.created_at >= hide_pending_before
            ]
        return orders[:limit]

    async def list_open_before(self, cutoff: datetime, limit: int = 100) -> List[Order]:
        async with self._lock:
            stale = [
                o for o in self._orders.values()
                if o.status in (OrderStatus.PENDING, OrderStatus.AWAITING_PAYMENT_SETUP)
                and o.created_at < cutoff
            ]
        stale.sort(key=lambda o: o.created_at)
        return stale[:limit]


class InMemoryIdempotencyStore(IIdempotencyStore):
    """Claim ledger with the same semantics as the Redis adapter."""

    def __init__(self):
        self._holders: Dict[str, str] = {}
        self._completed: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, key: str, holder_id: str) -> bool:
        async with self._lock:
            if key in self._completed:
                return False
            if key in self._holders and self._holders[key] != holder_id:
                return False
            self._holders[key] = holder_id
            return True

    async def release(self, key: str, holder_id: str) -> bool:
        async with self._lock:
            if self._holders.get(key) != holder_id:
                return False
            del self._holders[key]
            return True

    async def mark_completed(self, key: str, result: str = "success") -> bool:
        async with self._lock:
            self._holders.pop(key, None)
            self._completed[key] = result
            return True

    async def is_completed(self, key: str) -> bool:
        async with self._lock:
            return key in self._completed
