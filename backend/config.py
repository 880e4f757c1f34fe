"""
Storefront Order Engine - Configuration
========================================
Deployment configuration loaded once at startup and injected into the
components that need it. Nothing in the pipeline reads the environment at
call time.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import structlog


# =============================================================================
# PAYMENT GATEWAY
# =============================================================================

@dataclass(frozen=True)
class GatewayConfig:
    """Credentials and endpoint for the Razorpay-style payment gateway."""
    key_id: str = ""
    key_secret: str = ""
    webhook_secret: str = ""
    api_url: str = "https://api.razorpay.com/v1"
    timeout_seconds: float = 10.0
    currency: str = "INR"

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        return cls(
            key_id=os.getenv("RAZORPAY_KEY_ID", ""),
            key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET", ""),
            api_url=os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1"),
            timeout_seconds=float(os.getenv("RAZORPAY_TIMEOUT", "10.0")),
            currency=os.getenv("STORE_CURRENCY", "INR"),
        )


# =============================================================================
# NOTIFICATIONS
# =============================================================================

@dataclass(frozen=True)
class NotifierConfig:
    """SendGrid settings for order confirmation emails."""
    api_key: str = ""
    from_email: str = "orders@example.com"
    template_id: str = ""
    api_url: str = "https://api.sendgrid.com/v3"
    timeout_seconds: float = 10.0

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_env(cls) -> "NotifierConfig":
        return cls(
            api_key=os.getenv("SENDGRID_API_KEY", ""),
            from_email=os.getenv("SENDGRID_FROM_EMAIL", "orders@example.com"),
            template_id=os.getenv("SENDGRID_TEMPLATE_ID", ""),
            timeout_seconds=float(os.getenv("SENDGRID_TIMEOUT", "10.0")),
        )


# =============================================================================
# STORAGE
# =============================================================================

@dataclass(frozen=True)
class StorageConfig:
    """Where orders, products and the webhook ledger live."""
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    min_pool_size: int = 5
    max_pool_size: int = 20
    idempotency_ttl_seconds: int = 86400 * 7  # 7 days
    stale_pending_hours: int = 24

    @classmethod
    def from_env(cls) -> "StorageConfig":
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            redis_url=os.getenv("REDIS_URL") or None,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
            idempotency_ttl_seconds=int(os.getenv("IDEMPOTENCY_TTL_SECONDS", str(86400 * 7))),
            stale_pending_hours=int(os.getenv("STALE_PENDING_HOURS", "24")),
        )


# =============================================================================
# SERVER
# =============================================================================

@dataclass(frozen=True)
class ServerConfig:
    """HTTP server settings"""
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "development"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    admin_api_token: str = ""
    log_level: str = "INFO"

    @property
    def debug(self) -> bool:
        return self.env == "development"

    @classmethod
    def from_env(cls) -> "ServerConfig":
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            env=os.getenv("ENV", "development"),
            cors_origins=os.getenv("CORS_ORIGINS", "*").split(","),
            admin_api_token=os.getenv("ADMIN_API_TOKEN", ""),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass(frozen=True)
class Settings:
    """Everything the application factory needs, in one value."""
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            gateway=GatewayConfig.from_env(),
            notifier=NotifierConfig.from_env(),
            storage=StorageConfig.from_env(),
            server=ServerConfig.from_env(),
        )


# =============================================================================
# LOGGING
# =============================================================================

def configure_logging(config: ServerConfig) -> None:
    """
    Configure structlog once per process. Must run before modules that bind
    a module-level logger are imported.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if config.debug:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
