"""Tests for environment-based configuration."""
import pytest
from pydantic import ValidationError

from paymentservice.config import Settings

from .fakes import make_settings


class TestSettings:
    @pytest.mark.unit
    def test_defaults(self) -> None:
        settings = make_settings()

        assert settings.mpesa_transaction_type == "CustomerPayBillOnline"
        assert settings.mpesa_token_expiry_margin_seconds == 60
        assert settings.mpesa_utc_offset_hours == 3
        assert settings.mpesa_max_amount == 250000
        assert settings.order_status_max_attempts == 3
        assert settings.port == 8081

    @pytest.mark.unit
    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MPESA_CONSUMER_KEY", "env-key")
        monkeypatch.setenv("MPESA_CONSUMER_SECRET", "env-secret")
        monkeypatch.setenv("MPESA_BUSINESS_SHORTCODE", "600000")
        monkeypatch.setenv("MPESA_PASSKEY", "env-passkey")
        monkeypatch.setenv("MPESA_CALLBACK_URL", "https://example.com/callback/")
        monkeypatch.setenv("ORDERS_SERVICE_URL", "http://orders:8080/")

        settings = Settings(_env_file=None)

        assert settings.mpesa_consumer_key == "env-key"
        assert settings.mpesa_business_shortcode == "600000"
        assert settings.mpesa_callback_url == "https://example.com/callback"
        assert settings.orders_service_url == "http://orders:8080"
        assert settings.is_sandbox

    @pytest.mark.unit
    def test_missing_credentials_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("MPESA_CONSUMER_KEY", "MPESA_CONSUMER_SECRET", "MPESA_PASSKEY"):
            monkeypatch.delenv(name, raising=False)

        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "field,value",
        [
            ("mpesa_business_shortcode", "17a379"),
            ("orders_service_url", "orders:8080"),
            ("mpesa_callback_url", "ftp://example.com/callback"),
            ("log_level", "verbose"),
            ("mpesa_max_amount", 0),
        ],
    )
    def test_invalid_values(self, field: str, value: object) -> None:
        with pytest.raises(ValidationError):
            make_settings(**{field: value})

    @pytest.mark.unit
    def test_settings_are_immutable(self) -> None:
        settings = make_settings()

        with pytest.raises(ValidationError):
            settings.mpesa_passkey = "changed"  # type: ignore[misc]
