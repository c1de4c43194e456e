"""Threatmatch configuration management."""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "threatmatch"
    app_version: str = "0.1.0"
    log_level: str = "INFO"

    # Elasticsearch
    elasticsearch_url: str = "http://localhost:9200"
    elasticsearch_verify_certs: bool = False
    elasticsearch_request_timeout: int = 60

    # Alert persistence
    alerts_index: str = ".alerts-threatmatch-default"

    # ==========================================================================
    # Indicator Match Defaults
    # ==========================================================================

    # Used when a rule leaves items_per_search / concurrent_searches unset
    default_items_per_search: int = 9000
    default_concurrent_searches: int = 1
    default_max_signals: int = 100

    # Suppressed rules may scan this many times max_signals before stopping
    max_signals_suppression_multiplier: int = 5

    threat_pit_keep_alive: str = "5m"
    threat_indicator_path: str = "threat.indicator"

    # Minimum license tier that entitles alert suppression
    suppression_license_tier: str = "platinum"

    # Telemetry
    telemetry_enabled: bool = False
    telemetry_url: str = ""
    telemetry_timeout_seconds: float = 5.0

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator(
        "default_items_per_search",
        "default_concurrent_searches",
        "default_max_signals",
        "max_signals_suppression_multiplier",
    )
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
