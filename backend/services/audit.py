# services/audit.py
# ============================================================================
# STOREFRONT ORDER ENGINE — AUDIT LOG
# ============================================================================
# Append-only trail of every order status change, deletion and webhook
# receipt, keyed by order id and correlation id.
# ============================================================================

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from database import Database

logger = structlog.get_logger().bind(component="audit")


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_STATUS_CHANGED = "order.status_changed"
    ORDER_DELETED = "order.deleted"
    ORDER_EXPIRED = "order.expired"
    PAYMENT_SETUP_FAILED = "payment.setup_failed"
    PAYMENT_SETUP_REGISTERED = "payment.setup_registered"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_FAILED = "payment.failed"
    WEBHOOK_RECEIVED = "webhook.received"
    STOCK_RELEASED = "stock.released"


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    correlation_id: str
    event_type: AuditEventType
    actor: str = "system"  # "system", "callback", "webhook", "operator:<id>"
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    metadata: Dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class IAuditLog(ABC):

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_order(self, order_id: str) -> List[AuditLogEntry]:
        pass


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: List[AuditLogEntry] = []
        self._by_order: Dict[str, List[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_order[entry.order_id].append(entry)

    async def get_by_order(self, order_id: str) -> List[AuditLogEntry]:
        async with self._lock:
            return list(self._by_order.get(order_id, []))


class PostgresAuditLog(IAuditLog):

    async def append(self, entry: AuditLogEntry) -> None:
        await Database.execute(
            """
            INSERT INTO order_audit_log
            (id, order_id, correlation_id, event_type, actor, previous_status, new_status, metadata, timestamp)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            uuid.UUID(entry.log_id),
            entry.order_id,
            entry.correlation_id,
            entry.event_type.value,
            entry.actor,
            entry.previous_status,
            entry.new_status,
            entry.metadata,
            entry.timestamp,
        )

    async def get_by_order(self, order_id: str) -> List[AuditLogEntry]:
        rows = await Database.fetch_all(
            "SELECT * FROM order_audit_log WHERE order_id = $1 ORDER BY timestamp ASC",
            order_id,
        )
        return [
            AuditLogEntry(
                log_id=str(row["id"]),
                order_id=row["order_id"],
                correlation_id=row["correlation_id"],
                event_type=AuditEventType(row["event_type"]),
                actor=row["actor"],
                previous_status=row["previous_status"],
                new_status=row["new_status"],
                metadata=row["metadata"] or {},
                timestamp=row["timestamp"],
            )
            for row in rows
        ]


async def record(
    audit_log: IAuditLog,
    event_type: AuditEventType,
    order_id: str,
    correlation_id: str,
    actor: str = "system",
    previous_status: Optional[str] = None,
    new_status: Optional[str] = None,
    **metadata,
) -> AuditLogEntry:
    """Append an audit entry; a failing audit sink is logged, not raised."""
    entry = AuditLogEntry(
        order_id=order_id,
        correlation_id=correlation_id,
        event_type=event_type,
        actor=actor,
        previous_status=previous_status,
        new_status=new_status,
        metadata=metadata,
    )
    try:
        await audit_log.append(entry)
    except Exception as e:
        logger.error("audit_append_failed", order_id=order_id, event_type=event_type.value, error=str(e))
    else:
        logger.info(
            "audit_event",
            event_type=event_type.value,
            order_id=order_id,
            correlation_id=correlation_id,
            actor=actor,
        )
    return entry
