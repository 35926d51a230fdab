"""Engine configuration using Pydantic Settings."""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from glycoview.enums import BgUnits

_LOG_FORMATS = ("json", "text")


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="GLYCOVIEW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_format: str = "text"  # 'json' or 'text'
    log_level: str = "INFO"
    service_name: str = "glycoview"

    # Display defaults, used when a query carries no preferences
    default_bg_units: BgUnits = BgUnits.mgdl
    default_timezone: str = "UTC"

    # CGM readings sampled faster than this are excluded from glucose stats
    cgm_sample_interval_minimum_ms: int = 5 * 60 * 1000

    # Carb exchanges are converted back to grams with this factor
    carb_exchange_grams: float = 15.0

    # Suppressed basal chains deeper than this are rejected at ingest
    max_suppressed_depth: int = 5

    @field_validator("log_format")
    @classmethod
    def check_log_format(cls, v: str) -> str:
        if v.lower() not in _LOG_FORMATS:
            msg = f"log_format must be one of {', '.join(_LOG_FORMATS)}"
            raise ValueError(msg)
        return v.lower()

    @field_validator("default_timezone")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            msg = f"unknown timezone: {v}"
            raise ValueError(msg) from e
        return v

    @field_validator("max_suppressed_depth", "cgm_sample_interval_minimum_ms")
    @classmethod
    def check_positive(cls, v: int) -> int:
        if v < 1:
            msg = "must be a positive integer"
            raise ValueError(msg)
        return v


settings = Settings()
