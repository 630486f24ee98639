from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from PAYMENTS_* environment variables."""

    app_name: str = Field(default="tenant-payments-core", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=False, description="Render logs as JSON instead of console lines")

    database_url: str = Field(default="sqlite:///./payments.db", description="SQLAlchemy database URL")

    settlement_delay_seconds: float = Field(default=1.0, ge=0, description="Delay before auto-approved payments complete")
    refund_delay_seconds: float = Field(default=2.0, ge=0, description="Delay before refunds complete")
    stuck_refund_threshold_seconds: int = Field(default=300, ge=0, description="Age after which a processing refund is considered stuck")

    run_recovery_on_startup: bool = Field(default=True, description="Run the recovery sweep before serving traffic")
    run_reaper: bool = Field(default=True, description="Poll for due scheduled jobs while the app runs")
    reaper_interval_seconds: float = Field(default=1.0, gt=0, description="Seconds between reaper polls")
    reaper_batch_size: int = Field(default=100, ge=1, description="Maximum jobs claimed per poll")

    high_risk_networks: str = Field(default="", description="Comma-separated CIDRs treated as high-risk countries")
    vpn_networks: str = Field(default="", description="Comma-separated CIDRs of known VPN exits")

    model_config = SettingsConfigDict(
        env_prefix="PAYMENTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_high_risk_networks(self) -> List[str]:
        return _split_csv(self.high_risk_networks)

    def get_vpn_networks(self) -> List[str]:
        return _split_csv(self.vpn_networks)

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
