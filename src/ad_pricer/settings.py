from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    venue_mode: Literal["dry_run", "live"] = "dry_run"
    venue_search_url: str = "https://p2p.binance.com/bapi/c2c/v2/friendly/c2c/adv/search"
    venue_update_url: str = ""
    venue_api_key: str = ""
    venue_request_timeout_seconds: float = Field(default=10.0, ge=1, le=120)
    venue_max_retries: int = Field(default=3, ge=1, le=10)
    venue_retry_base_delay_seconds: float = Field(default=1.0, ge=0.0, le=30)
    venue_search_rows_per_page: int = Field(default=20, ge=1, le=20)
    venue_search_max_pages: int = Field(default=25, ge=1, le=100)
    venue_search_cache_seconds: float = Field(default=5.0, ge=0, le=300)
    market_reference_top_n: int = Field(default=10, ge=1, le=100)

    apply_delay_seconds: float = Field(default=0.3, ge=0, le=10)
    price_decimals: int = Field(default=2, ge=0, le=8)
    ratio_decimals: int = Field(default=4, ge=0, le=8)

    timezone: str = "Asia/Kolkata"
    default_check_interval_seconds: int = Field(default=60, ge=5, le=86400)
    cycle_timeout_seconds: float = Field(default=45.0, ge=1, le=3600)
    worker_pool_size: int = Field(default=8, ge=1, le=128)
    rule_sync_interval_seconds: int = Field(default=30, ge=5, le=3600)

    log_level: str = "INFO"
    db_path: Path = Path("data/ad_pricer.sqlite3")
    rule_defaults_path: Path = Path("config/pricing_defaults.yaml")

    api_host: str = "0.0.0.0"
    api_port: int = Field(default=8502, ge=1, le=65535)

    alert_webhook_url: str = ""
    alert_webhook_timeout_seconds: int = Field(default=10, ge=2, le=60)
    alert_event_types_csv: str = "auto_pause,rule_alerting"

    # Guard defaults for newly created rules
    default_max_deviation_from_market_pct: float = Field(default=5.0, gt=0, le=100)
    default_auto_pause_after_deviations: int = Field(default=3, ge=1, le=100)
    default_manual_override_cooldown_minutes: int = Field(default=10, ge=0, le=1440)

    @model_validator(mode="after")
    def validate_live_venue(self) -> "Settings":
        if self.venue_mode == "live" and (not self.venue_update_url or not self.venue_api_key):
            raise ValueError(
                "Live venue mode requires VENUE_UPDATE_URL and VENUE_API_KEY to be configured."
            )
        return self


settings = Settings()
