"""Tests for environment-driven settings."""

from src.alerts.config import AlertConfig
from src.config.settings import Settings


class TestSettings:
    def test_providers_unconfigured_by_default(self, monkeypatch):
        for var in ("EMAIL_API_URL", "EMAIL_API_KEY", "SMS_API_URL", "SMS_API_KEY", "SMS_FROM_NUMBER"):
            monkeypatch.delenv(var, raising=False)
        settings = Settings(_env_file=None)
        assert not settings.email_configured
        assert not settings.sms_configured
        assert not settings.is_production

    def test_configured_providers(self, test_settings):
        assert test_settings.email_configured
        assert test_settings.sms_configured

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        assert Settings(_env_file=None).is_production


class TestAlertConfig:
    def test_defaults(self):
        config = AlertConfig()
        assert config.evaluation_concurrency > 0
        assert config.user_page_size > 0

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("ALERTS_USER_PAGE_SIZE", "7")
        assert AlertConfig().user_page_size == 7
