from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_env: str = Field(default="dev", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    default_currency: str = Field(default="INR", alias="DEFAULT_CURRENCY")
    money_scale: int = Field(default=2, ge=0, le=8, alias="MONEY_SCALE")
    money_precision: int = Field(default=28, ge=1, alias="MONEY_PRECISION")

    idempotency_ttl_hours: int = Field(default=24, ge=1, alias="IDEMPOTENCY_TTL_HOURS")

    ledger_page_limit_default: int = Field(default=20, ge=1, alias="LEDGER_PAGE_LIMIT_DEFAULT")
    ledger_page_limit_max: int = Field(default=100, ge=1, alias="LEDGER_PAGE_LIMIT_MAX")

    seed_demo_data: bool = Field(default=False, alias="SEED_DEMO_DATA")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
