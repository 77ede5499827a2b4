"""
Credit ledger configuration loaded from environment variables.

Every variable is read with the ``CREDIT_`` prefix, e.g. ``CREDIT_MONGO_URI``.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Storage; an empty URI selects the in-memory manager
    MONGO_URI: str = ""
    MONGO_DB: str = "credit_ledger"

    # Append-only JSONL mirror of the transaction log; empty disables it
    LEDGER_LOG_PATH: str = "logs/credit_transactions.log"

    # Optimistic concurrency retries for balance transactions
    TX_MAX_ATTEMPTS: int = 5
    TX_RETRY_WAIT_SECONDS: float = 0.05
    TX_RETRY_MAX_WAIT_SECONDS: float = 1.0

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
