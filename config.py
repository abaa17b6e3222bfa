"""
Runtime configuration for the marketplace backend.

Values come from environment variables (optionally loaded from a `.env` file
next to this module). `get_settings()` builds a fresh `Settings` object; the
app factory passes it down instead of reading globals.
"""
import logging.config
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

ROOT_DIR = Path(__file__).parent


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str = Field("mongodb://localhost:27017", description="MongoDB connection string")
    database_name: str = Field("marketplace", description="Database holding all collections")
    use_transactions: bool = Field(False, description="Use native multi-document transactions (replica set only)")

    payment_mode: str = Field("offline", pattern="^(offline|stripe)$")
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    fcm_server_key: Optional[str] = None
    public_base_url: str = Field("", description="Prefix for file download URLs")
    default_currency: str = "EUR"
    log_level: str = "INFO"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    model_config = ConfigDict(extra="ignore")


def get_settings(env_file: Optional[Path] = None) -> Settings:
    load_dotenv(env_file or ROOT_DIR / ".env")
    origins = os.getenv("CORS_ORIGINS")
    return Settings(
        database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
        database_name=os.getenv("DATABASE_NAME", "marketplace"),
        use_transactions=_env_bool("USE_TRANSACTIONS"),
        payment_mode=os.getenv("PAYMENT_MODE", "offline"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        fcm_server_key=os.getenv("FCM_SERVER_KEY"),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "").rstrip("/"),
        default_currency=os.getenv("DEFAULT_CURRENCY", "EUR"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()] if origins else ["*"],
    )


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "verbose": {
                "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "verbose",
            },
        },
        "root": {
            "handlers": ["console"],
            "level": level,
        },
        "loggers": {
            "pymongo": {"level": "WARNING"},
            "stripe": {"level": "WARNING"},
        },
    })
