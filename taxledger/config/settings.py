"""
Configuration Management for the Tax Ledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here and validated once
when `Settings()` is built. Business components never read the environment:
the composition root calls `get_settings()` and hands each component the
section it needs.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PaystackSettings(BaseSettings):
    """Paystack payment gateway configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PAYSTACK_",
        extra="ignore"
    )

    secret_key: str = Field(
        default="",
        description="Paystack secret key (sk_live_... / sk_test_...)"
    )
    base_url: str = Field(
        default="https://api.paystack.co",
        description="Paystack API base URL"
    )
    timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        le=60,
        description="Timeout for a single Paystack HTTP call"
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=5,
        description="Attempts for transport-level failures"
    )
    deposit_channels: str = Field(
        default="card,bank,bank_transfer",
        description="Comma-separated channels offered for deposits"
    )
    subscription_channels: str = Field(
        default="card,bank,ussd,bank_transfer",
        description="Comma-separated channels offered for subscriptions"
    )

    @property
    def deposit_channels_list(self) -> list[str]:
        return [c.strip() for c in self.deposit_channels.split(",") if c.strip()]

    @property
    def subscription_channels_list(self) -> list[str]:
        return [c.strip() for c in self.subscription_channels.split(",") if c.strip()]


class DatabaseSettings(BaseSettings):
    """Relational ledger store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite:///taxledger.db",
        description="SQLAlchemy database URL"
    )
    echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Pool checkout / busy timeout"
    )
    create_schema: bool = Field(
        default=True,
        description="Create tables on startup if missing"
    )


class AuthSettings(BaseSettings):
    """Identity provider (Supabase GoTrue) configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AUTH_",
        extra="ignore"
    )

    url: str = Field(
        default="",
        description="Base URL of the identity provider"
    )
    anon_key: str = Field(
        default="",
        description="Public API key sent alongside user tokens"
    )
    service_key: str = Field(
        default="",
        description="Bearer credential used by schedulers for batch endpoints"
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
    )


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets audit log configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: Optional[str] = Field(
        default=None,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: Optional[str] = Field(
        default=None,
        description="ID of the Google Sheets spreadsheet to use"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: Optional[str]) -> Optional[str]:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if v and not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v

    @property
    def enabled(self) -> bool:
        return bool(self.credentials_path and self.spreadsheet_id)


class AppSettings(BaseSettings):
    """
    Main application settings.

    Business constants of the ledger live here so a deployment can
    tune them without code changes.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    timezone: str = Field(
        default="Africa/Lagos",
        description="Local timezone for billing periods and due dates"
    )
    currency: str = Field(
        default="NGN",
        min_length=3,
        max_length=3,
    )
    cors_allow_origins: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="Interface the HTTP server binds to"
    )
    api_port: int = Field(
        default=8000,
        gt=0,
        le=65535,
    )

    # Savings
    minimum_deposit: Decimal = Field(
        default=Decimal("1000"),
        gt=0,
        description="Smallest deposit accepted, in major units"
    )
    annual_interest_rate: Decimal = Field(
        default=Decimal("0.10"),
        ge=0,
        le=1,
        description="Annual interest rate; credited quarterly at a quarter of this"
    )

    # Subscription prices, in minor units (kobo)
    annual_price_minor: int = Field(
        default=500000,
        gt=0,
        description="Full-year price of the annual plan"
    )
    monthly_price_minor: int = Field(
        default=50000,
        gt=0,
        description="Price of the monthly plan"
    )
    minimum_subscription_price_minor: int = Field(
        default=50000,
        gt=0,
        description="Floor applied to the prorated annual price"
    )

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def quarterly_interest_rate(self) -> Decimal:
        return self.annual_interest_rate / 4

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


class Settings(BaseSettings):
    """
    Root settings container.

    Every section is built (and therefore validated) when the
    container is created.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app: AppSettings = Field(default_factory=AppSettings)
    paystack: PaystackSettings = Field(default_factory=PaystackSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    google_sheets: GoogleSheetsSettings = Field(default_factory=GoogleSheetsSettings)


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Only the composition root (orchestrator / app startup) should call this.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings(settings: Optional[Settings] = None) -> dict[str, bool]:
    """
    Check that every external service is configured.

    Returns a dict of {setting_name: is_configured}.
    Useful for startup checks.
    """
    settings = settings or get_settings()

    return {
        "paystack": bool(settings.paystack.secret_key),
        "database": bool(settings.database.url),
        "auth": bool(settings.auth.url and settings.auth.anon_key),
        "service_key": bool(settings.auth.service_key),
        "google_sheets": settings.google_sheets.enabled,
    }
