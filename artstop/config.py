"""
Configuration & Logging
=======================
Explicit settings object built once at startup and handed to every
component that needs gateway keys, secrets or connection details.

pip install structlog
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

import structlog


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class Settings:
    """Service configuration. Build with ``Settings.from_env()`` in production."""

    # Payment gateway
    gateway_key_id: str = "pk_test_YOUR_KEY"
    gateway_key_secret: str = "sk_test_YOUR_KEY"
    gateway_webhook_secret: str = "whsec_YOUR_SECRET"
    currency: str = "INR"
    min_amount: int = 100  # smallest currency unit

    # Auth
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 168

    # Database (empty URL -> in-memory store)
    database_url: str = ""
    db_min_pool_size: int = 5
    db_max_pool_size: int = 20

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "development"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @property
    def debug(self) -> bool:
        return self.env == "development"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Settings":
        env = os.environ if environ is None else environ
        app_env = env.get("ENV", "development")
        return cls(
            gateway_key_id=env.get("GATEWAY_KEY_ID", cls.gateway_key_id),
            gateway_key_secret=env.get("GATEWAY_KEY_SECRET", cls.gateway_key_secret),
            gateway_webhook_secret=env.get("GATEWAY_WEBHOOK_SECRET", cls.gateway_webhook_secret),
            currency=env.get("CURRENCY", "INR"),
            min_amount=int(env.get("MIN_ORDER_AMOUNT", "100")),
            jwt_secret=env.get("JWT_SECRET", cls.jwt_secret),
            jwt_algorithm=env.get("JWT_ALGORITHM", "HS256"),
            jwt_expiry_hours=int(env.get("JWT_EXPIRY_HOURS", "168")),
            database_url=env.get("DATABASE_URL", ""),
            db_min_pool_size=int(env.get("DB_MIN_POOL_SIZE", "5")),
            db_max_pool_size=int(env.get("DB_MAX_POOL_SIZE", "20")),
            host=env.get("HOST", "0.0.0.0"),
            port=int(env.get("PORT", "8000")),
            env=app_env,
            cors_origins=env.get("CORS_ORIGINS", "*").split(","),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            log_json=env.get("LOG_JSON", "true" if app_env != "development" else "false").lower() == "true",
        )


# =============================================================================
# STRUCTURED LOGGING SETUP
# =============================================================================

def configure_logging(settings: Settings) -> None:
    """Configure structlog once for the whole process."""
    level = getattr(logging, settings.log_level, logging.INFO)

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
