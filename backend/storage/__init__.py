# storage/__init__.py
# ============================================================================
# STOREFRONT ORDER ENGINE — STORAGE MODULE
# ============================================================================
# Repository interfaces with in-memory, PostgreSQL and Redis implementations
# ============================================================================

from storage.repositories import (
    IProductStore,
    ICustomerStore,
    IOrderRepository,
    IIdempotencyStore,
    InMemoryProductStore,
    InMemoryCustomerStore,
    InMemoryOrderRepository,
    InMemoryIdempotencyStore,
)

__all__ = [
    "IProductStore",
    "ICustomerStore",
    "IOrderRepository",
    "IIdempotencyStore",
    "InMemoryProductStore",
    "InMemoryCustomerStore",
    "InMemoryOrderRepository",
    "InMemoryIdempotencyStore",
]
