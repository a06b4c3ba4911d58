"""Configuration package."""

from taxledger.config.settings import (
    AppSettings,
    AuthSettings,
    DatabaseSettings,
    GoogleSheetsSettings,
    PaystackSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "AuthSettings",
    "DatabaseSettings",
    "GoogleSheetsSettings",
    "PaystackSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
