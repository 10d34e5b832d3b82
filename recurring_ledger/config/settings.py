"""
Configuration Management for the Recurring Transaction Engine

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: Tunables live here; hard invariants (interval and
failed-attempt bounds) are constants in the models and are NOT configurable.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from recurring_ledger.models.recurring import (
    AMOUNT_MIN,
    FAILED_ATTEMPTS_DEFAULT,
    FAILED_ATTEMPTS_MAX,
    FAILED_ATTEMPTS_MIN,
    INTERVAL_MONTHS_DEFAULT,
    INTERVAL_MONTHS_MAX,
    INTERVAL_MONTHS_MIN,
)


class EngineSettings(BaseSettings):
    """Defaults used when creating and executing recurring records."""

    model_config = SettingsConfigDict(
        env_prefix="RECURRING_",
        extra="ignore"
    )

    min_amount: Decimal = Field(
        default=AMOUNT_MIN,
        gt=0,
        description="Smallest amount a fixed-amount record may carry"
    )
    default_max_failed_attempts: int = Field(
        default=FAILED_ATTEMPTS_DEFAULT,
        ge=FAILED_ATTEMPTS_MIN,
        le=FAILED_ATTEMPTS_MAX,
    )
    default_interval_months: int = Field(
        default=INTERVAL_MONTHS_DEFAULT,
        ge=INTERVAL_MONTHS_MIN,
        le=INTERVAL_MONTHS_MAX,
    )
    transfer_entry_offset_seconds: int = Field(
        default=1,
        ge=0,
        le=60,
        description="Gap between the two entries of a transfer so they sort deterministically"
    )
    preview_occurrence_count: int = Field(
        default=5,
        ge=1,
        le=36,
        description="How many upcoming dates a preview lists"
    )


class AutoApplySettings(BaseSettings):
    """Unattended execution configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AUTO_APPLY_",
        extra="ignore"
    )

    enabled: bool = Field(
        default=True,
        description="Master switch for unattended runs"
    )
    max_batch_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="How many due records one run executes concurrently"
    )


class LoggingSettings(BaseSettings):
    """Local structured logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="RECURRING_LOG_",
        extra="ignore"
    )

    level: str = Field(default="INFO")
    json_output: bool = Field(
        default=True,
        description="Render log lines as JSON (False gives console output)"
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def engine(self) -> EngineSettings:
        return EngineSettings()

    @property
    def auto_apply(self) -> AutoApplySettings:
        return AutoApplySettings()

    @property
    def logging(self) -> LoggingSettings:
        return LoggingSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus
    {setting_name}_error entries for the ones that failed.
    """
    results = {}
    settings = get_settings()

    for name in ("engine", "auto_apply", "logging"):
        try:
            getattr(settings, name)
            results[name] = True
        except ValueError as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
