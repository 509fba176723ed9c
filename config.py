import logging
import os
from typing import List, Optional

import structlog
from dotenv import load_dotenv

load_dotenv()


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Service configuration read from the environment"""

    def __init__(self, **overrides):
        self.DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")
        self.DATABASE_NAME: Optional[str] = os.getenv("DATABASE_NAME")
        self.DB_TIMEOUT_MS: int = int(os.getenv("DB_TIMEOUT_MS", "5000"))

        self.JWT_SECRET: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
        self.JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_AUDIENCE: Optional[str] = os.getenv("JWT_AUDIENCE") or None

        self.STRIPE_SECRET_KEY: Optional[str] = os.getenv("STRIPE_SECRET_KEY")
        self.PAYMENT_CURRENCY: str = os.getenv("PAYMENT_CURRENCY", "usd")
        self.GATEWAY_TIMEOUT_SECONDS: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

        self.FEATURED_LIMIT: int = int(os.getenv("FEATURED_LIMIT", "6"))
        self.CORS_ORIGINS: List[str] = [
            o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
        ]

        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_JSON: bool = _bool_env("LOG_JSON", True)
        self.PORT: int = int(os.getenv("PORT", "8000"))

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)


def configure_logging(settings: Settings) -> None:
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.LOG_JSON
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
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.LOG_LEVEL)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
