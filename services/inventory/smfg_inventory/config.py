"""
Inventory Service — settings

Read from the environment once at startup.
"""

import os
from dataclasses import dataclass


def _bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"
    log_level: str = "INFO"
    log_text: bool = False
    db_migrate: bool = True
    outbox_poll_seconds: float = 1.0
    outbox_batch_size: int = 50
    startup_retries: int = 12
    startup_backoff_seconds: float = 5.0


def load_settings() -> Settings:
    return Settings(
        database_url=os.environ["DATABASE_URL"],
        redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        log_text=_bool("LOG_TEXT", False),
        db_migrate=_bool("DB_MIGRATE", True),
        outbox_poll_seconds=float(os.environ.get("OUTBOX_POLL_SECONDS", "1.0")),
        outbox_batch_size=int(os.environ.get("OUTBOX_BATCH_SIZE", "50")),
        startup_retries=int(os.environ.get("STARTUP_RETRIES", "12")),
        startup_backoff_seconds=float(os.environ.get("STARTUP_BACKOFF_SECONDS", "5")),
    )
