"""
Tests for settings and gateway config resolution.
"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from storefront_payments.config import GatewayEnvironment, Settings
from storefront_payments.exceptions import ConfigurationError


def make_settings(**overrides) -> Settings:
    fields = {
        "gateway_test_client_id": "sandbox-id",
        "gateway_test_client_secret": "sandbox-secret",
        "gateway_production_client_id": "live-id",
        "gateway_production_client_secret": "live-secret",
        "gateway_test_base_url": "https://sandbox.gateway.test/",
        "gateway_production_base_url": "https://live.gateway.test",
    }
    fields.update(overrides)
    return Settings(_env_file=None, **fields)


@pytest.mark.unit
class TestResolveGatewayConfig:
    """Per-environment gateway config."""

    def test_defaults_to_payment_environment(self):
        config = make_settings(payment_environment="test").resolve_gateway_config()

        assert config.environment is GatewayEnvironment.TEST
        assert config.client_id == "sandbox-id"
        assert config.base_url == "https://sandbox.gateway.test"
        assert not config.is_production

    def test_explicit_production(self):
        config = make_settings().resolve_gateway_config(GatewayEnvironment.PRODUCTION)

        assert config.is_production
        assert config.client_id == "live-id"
        assert config.client_secret == "live-secret"
        assert config.base_url == "https://live.gateway.test"

    def test_accepts_stored_environment_string(self):
        config = make_settings().resolve_gateway_config("production")

        assert config.environment is GatewayEnvironment.PRODUCTION

    def test_missing_credentials_rejected(self):
        settings = make_settings(gateway_production_client_secret="")

        with pytest.raises(ConfigurationError, match="production"):
            settings.resolve_gateway_config(GatewayEnvironment.PRODUCTION)

    def test_config_is_frozen(self):
        config = make_settings().resolve_gateway_config()

        with pytest.raises(PydanticValidationError):
            config.client_id = "other"

    def test_secret_not_in_repr(self):
        config = make_settings().resolve_gateway_config()

        assert "sandbox-secret" not in repr(config)

    def test_carries_timeout_and_expiry(self):
        config = make_settings(
            gateway_timeout_seconds=3.5, gateway_order_expiry_seconds=600
        ).resolve_gateway_config()

        assert config.timeout_seconds == 3.5
        assert config.expire_after_seconds == 600


@pytest.mark.unit
class TestSettingsValidation:
    """Field validators."""

    def test_log_level_normalized(self):
        assert make_settings(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(PydanticValidationError):
            make_settings(log_level="verbose")

    def test_currency_normalized(self):
        assert make_settings(payment_currency="inr").payment_currency == "INR"

    def test_invalid_currency(self):
        with pytest.raises(PydanticValidationError):
            make_settings(payment_currency="RUPEE")

    def test_allowed_origins_list(self):
        settings = make_settings(allowed_origins="https://a.test, https://b.test")

        assert settings.get_allowed_origins_list() == ["https://a.test", "https://b.test"]
