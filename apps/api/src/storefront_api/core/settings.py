from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./storefront.db"
    database_echo: bool = False

    # Admin surface
    admin_api_key: str = ""
    storefront_base_url: str = "http://localhost:3000"
    cors_allowed_origins: list[str] = Field(default_factory=list)

    # Payment collaborator
    payment_gateway_base_url: str = ""
    payment_gateway_api_key: str = ""
    payment_gateway_timeout_seconds: float = 10.0
    default_currency: str = "INR"

    # Domain event delivery
    event_webhook_url: str = ""
    event_webhook_timeout_seconds: float = 5.0

    # Order lookups for purchase points
    orders_api_base_url: str = ""
    orders_api_key: str = ""
    orders_api_timeout_seconds: float = 5.0

    # Loyalty ledger
    loyalty_write_retry_attempts: int = 3
    loyalty_referral_code_attempts: int = 5

    # Subscription billing
    subscription_renewal_window_hours: int = 24
    subscription_renewal_concurrency: int = 5
    subscription_max_failed_payments: int = 3
    billing_timezone: str = "UTC"

    # Recurring jobs
    job_scheduler_enabled: bool = False
    job_schedule_path: str = "config/schedules.toml"

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def _parse_origins(cls, value: object) -> list[str]:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        raise ValueError("cors_allowed_origins must be a list or comma separated string")

    @field_validator("loyalty_write_retry_attempts", "subscription_renewal_concurrency", "subscription_max_failed_payments")
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        return max(int(value), 1)


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
