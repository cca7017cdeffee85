from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./stockloyal.db"

    # Admin API security
    admin_api_key: str = ""

    # Staging rules
    min_sweep_points: int = 0
    max_orders_per_basket: int = 10
    default_conversion_rate: float = 0.01

    # Price feed
    price_feed_quote_url: str = "https://query1.finance.yahoo.com/v7/finance/quote"
    price_feed_chart_url: str = "https://query1.finance.yahoo.com/v8/finance/chart"
    price_feed_timeout_seconds: float = 20.0
    price_feed_chunk_size: int = 50

    # Market hours
    market_timezone: str = "America/New_York"
    market_open_time: str = "09:30"
    market_close_time: str = "16:00"
    market_holidays: list[str] = Field(default_factory=list)
    market_calendar_url: str | None = None
    market_status_ttl_seconds: int = 60

    @field_validator("market_holidays", mode="before")
    @classmethod
    def _parse_holiday_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    # Broker dispatch
    broker_dispatch_timeout_seconds: float = 30.0
    broker_dispatch_concurrency: int = 5
    alpaca_broker_base_url: str = "https://broker-api.sandbox.alpaca.markets"
    alpaca_api_key: str = ""
    alpaca_api_secret: str = ""

    # Execution simulation
    execution_simulation_variance: float = 0.02
    execution_simulation_seed: int | None = None

    # Tracing
    tracing_console_export: bool = False

    # Pipeline scheduler
    pipeline_job_scheduler_enabled: bool = False
    pipeline_job_schedule_path: str = "config/schedules.toml"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
