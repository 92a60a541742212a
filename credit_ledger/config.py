"""
Service configuration using Pydantic Settings.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from CREDIT_LEDGER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_env: str = "development"
    log_level: str = "INFO"

    # Storage; None keeps everything in process memory
    database_url: Optional[str] = None

    # Credits
    style_credit_cost: int = 30
    low_balance_threshold: int = 30
    unlock_product_id: str = "unlock_plus_899"
    record_included_unlocks: bool = True

    # Retries
    append_max_attempts: int = Field(5, ge=1)
    compensation_max_attempts: int = Field(3, ge=1)
    retry_backoff_base: float = 0.01

    # API
    cors_origins: List[str] = ["*"]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
