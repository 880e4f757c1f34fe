"""
Database Module
===============
AsyncPG connection pool for the PostgreSQL-backed document store.

This module provides:
- Pool lifecycle (initialize / close / acquire)
- Thin execute / fetch helpers
- Schema migrations for products, customers, orders and the audit log

Orders are stored as JSONB documents with the fields the engine filters on
(status, gateway_order_ref, created_at) mirrored into indexed columns.

pip install asyncpg
"""

import json
from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
import asyncpg

from config import StorageConfig

logger = structlog.get_logger().bind(component="database")


class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False

    @classmethod
    async def initialize(cls, config: StorageConfig):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        try:
            cls._pool = await asyncpg.create_pool(
                config.database_url,
                min_size=config.min_pool_size,
                max_size=config.max_pool_size,
                init=_init_connection,
            )
            cls._initialized = True
            logger.info("database_pool_initialized")

            await cls._run_migrations()

        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("database_pool_closed")

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._initialized

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            raise RuntimeError("Database.initialize() has not been called")

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        migrations = [
            """
            CREATE TABLE IF NOT EXISTS products (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                price BIGINT NOT NULL CHECK (price >= 0),
                stock INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
                active BOOLEAN NOT NULL DEFAULT TRUE,
                images JSONB NOT NULL DEFAULT '[]',
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS customers (
                id TEXT PRIMARY KEY,
                doc JSONB NOT NULL DEFAULT '{}',
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                status VARCHAR(32) NOT NULL,
                gateway_order_ref TEXT UNIQUE,
                created_at TIMESTAMP NOT NULL,
                doc JSONB NOT NULL
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS order_audit_log (
                id UUID PRIMARY KEY,
                order_id TEXT NOT NULL,
                correlation_id TEXT NOT NULL,
                event_type VARCHAR(50) NOT NULL,
                actor VARCHAR(100) NOT NULL,
                previous_status VARCHAR(32),
                new_status VARCHAR(32),
                metadata JSONB NOT NULL DEFAULT '{}',
                timestamp TIMESTAMP NOT NULL
            )
            """,

            "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
            "CREATE INDEX IF NOT EXISTS idx_orders_created ON orders(created_at DESC)",
            "CREATE INDEX IF NOT EXISTS idx_audit_order ON order_audit_log(order_id)",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                await conn.execute(migration)

        logger.info("database_migrations_complete")


async def _init_connection(conn: asyncpg.Connection):
    """Decode JSONB columns to Python objects on every pooled connection."""
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )


async def init_database(config: StorageConfig):
    """Initialize database on app startup"""
    await Database.initialize(config)


async def close_database():
    """Close database on app shutdown"""
    await Database.close()

