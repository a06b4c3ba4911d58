"""
Tests for settings.
"""

from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError

from taxledger.config import (
    AppSettings,
    AuthSettings,
    GoogleSheetsSettings,
    PaystackSettings,
    Settings,
    validate_all_settings,
)


class TestAppSettings:
    """Tests for ledger and pricing settings."""

    def test_quarterly_rate(self):
        """Test the quarterly rate is a quarter of the annual rate."""
        settings = AppSettings(annual_interest_rate=Decimal("0.10"))
        assert settings.quarterly_interest_rate == Decimal("0.025")

    def test_timezone(self):
        """Test the configured zone is resolved."""
        assert AppSettings(timezone="Africa/Lagos").tzinfo == ZoneInfo("Africa/Lagos")

    def test_unknown_timezone(self):
        """Test a bad zone name fails at startup."""
        with pytest.raises(ValidationError):
            AppSettings(timezone="Mars/Olympus")

    def test_cors_origins(self):
        """Test the comma-separated origins are split and trimmed."""
        settings = AppSettings(cors_allow_origins="https://a.example, https://b.example,")
        assert settings.cors_origins_list == ["https://a.example", "https://b.example"]


class TestPaystackSettings:
    """Tests for gateway settings."""

    def test_channel_lists(self):
        """Test channels are parsed from comma-separated strings."""
        settings = PaystackSettings(deposit_channels="card, bank")
        assert settings.deposit_channels_list == ["card", "bank"]


class TestValidateAllSettings:
    """Tests for the startup configuration check."""

    def test_reports_each_service(self):
        """Test every external service is reported as configured or not."""
        settings = Settings(
            paystack=PaystackSettings(secret_key="sk_test"),
            auth=AuthSettings(url="", anon_key="", service_key="svc"),
            google_sheets=GoogleSheetsSettings(credentials_path=None, spreadsheet_id=None),
        )

        results = validate_all_settings(settings)

        assert results["paystack"] is True
        assert results["auth"] is False
        assert results["service_key"] is True
        assert results["google_sheets"] is False
