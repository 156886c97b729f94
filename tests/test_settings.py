"""
Tests for settings validation.
"""
from decimal import Decimal
from fnmatch import fnmatch
from typing import Any, Dict

import pytest
from pydantic import ValidationError

from config import Settings


def _settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "_env_file": None,
        "razorpay_key_id": "rzp_test_fake_key_for_testing",
        "razorpay_key_secret": "test_key_secret",
        "razorpay_webhook_secret": "test_webhook_secret",
        "database_url": "sqlite+aiosqlite:///:memory:",
        "jwt_secret_key": "test_jwt_secret",
        "app_env": "test",
    }
    values.update(overrides)
    return Settings(**values)


class TestSettings:
    """Configuration guards."""

    @pytest.mark.unit
    def test_defaults(self) -> None:
        settings = _settings()

        assert settings.is_test_mode is True
        assert settings.currency == "INR"
        assert settings.tax_rate == Decimal("0.18")

    @pytest.mark.unit
    def test_rejects_unknown_key_format(self) -> None:
        with pytest.raises(ValidationError, match="rzp_test_"):
            _settings(razorpay_key_id="sk_test_123")

    @pytest.mark.unit
    def test_production_requires_live_key(self) -> None:
        with pytest.raises(ValidationError, match="live Razorpay key"):
            _settings(app_env="production")

        live = _settings(app_env="production", razorpay_key_id="rzp_live_abc")
        assert live.is_production is True
        assert live.is_test_mode is False

    @pytest.mark.unit
    def test_tax_rate_bounds(self) -> None:
        with pytest.raises(ValidationError, match="Tax rate"):
            _settings(tax_rate=Decimal("18"))

    @pytest.mark.unit
    def test_log_level_and_origins_normalized(self) -> None:
        settings = _settings(log_level="debug", allowed_origins="https://shop.in, https://admin.shop.in")

        assert settings.log_level == "DEBUG"
        assert settings.get_allowed_origins_list() == ["https://shop.in", "https://admin.shop.in"]


class TestCollectionConfig:
    """The locust file shares the tests directory but is not a test module."""

    @pytest.mark.unit
    def test_load_test_not_collected(self, pytestconfig: pytest.Config) -> None:
        patterns = pytestconfig.getini("python_files")

        assert not any(fnmatch("load_test.py", pattern) for pattern in patterns)
        assert any(fnmatch("test_settings.py", pattern) for pattern in patterns)
