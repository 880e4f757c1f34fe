# services/__init__.py
# ============================================================================
# STOREFRONT ORDER ENGINE — SERVICES MODULE
# ============================================================================
# Best-effort side effects of the order lifecycle: audit trail and
# confirmation notifications
# ============================================================================

from services.audit import (
    AuditEventType,
    AuditLogEntry,
    IAuditLog,
    InMemoryAuditLog,
    PostgresAuditLog,
)

from services.notifications import (
    IOrderNotifier,
    LoggingNotifier,
    SendGridNotifier,
    NotificationError,
    build_notifier,
)

__all__ = [
    # Audit
    "AuditEventType",
    "AuditLogEntry",
    "IAuditLog",
    "InMemoryAuditLog",
    "PostgresAuditLog",
    # Notifications
    "IOrderNotifier",
    "LoggingNotifier",
    "SendGridNotifier",
    "NotificationError",
    "build_notifier",
]
