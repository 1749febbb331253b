"""Configuration settings for the Medicare billing core."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class FlatSettings(BaseSettings):
    """Flat settings read from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Billing API (invoice, payment, pharmacy and archive stores)
    billing_api_url: str = Field(
        default="http://localhost:5000/api", validation_alias="BILLING_API_URL"
    )
    billing_api_token: SecretStr | None = Field(
        default=None, validation_alias="BILLING_API_TOKEN"
    )
    billing_timeout: float = Field(default=30.0, validation_alias="BILLING_TIMEOUT")
    billing_max_retries: int = Field(default=3, validation_alias="BILLING_MAX_RETRIES")

    # Ledger reconciliation
    ledger_source_timeout: float = Field(
        default=10.0, validation_alias="LEDGER_SOURCE_TIMEOUT"
    )
    ledger_page_size: int = Field(default=100, validation_alias="LEDGER_PAGE_SIZE")
    ledger_max_pages: int = Field(default=50, validation_alias="LEDGER_MAX_PAGES")
    ledger_match_window_hours: float = Field(
        default=24.0, validation_alias="LEDGER_MATCH_WINDOW_HOURS"
    )
    ledger_amount_epsilon: float = Field(
        default=0.01, validation_alias="LEDGER_AMOUNT_EPSILON"
    )

    # Local state (suppression flag)
    billing_state_path: str = Field(
        default=".billing_state.json", validation_alias="BILLING_STATE_PATH"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> FlatSettings:
    """Get cached settings instance."""
    return FlatSettings()
