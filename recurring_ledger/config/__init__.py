"""Configuration package."""

from recurring_ledger.config.settings import (
    AutoApplySettings,
    EngineSettings,
    LoggingSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AutoApplySettings",
    "EngineSettings",
    "LoggingSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
