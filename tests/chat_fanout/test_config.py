"""
Unit tests for fan-out service configuration.
"""
from chat_fanout.config import (
    DeliveryConfig, EmailConfig, Environment, FanoutServiceConfig, ServiceConfiguration,
    WebPushConfig, get_config, reset_config,
)


class TestDefaults:
    def test_service_defaults(self, monkeypatch):
        """Test service configuration defaults."""
        monkeypatch.delenv("FANOUT_SERVICE_ENV", raising=False)
        config = ServiceConfiguration()
        assert config.name == "chat-fanout"
        assert config.env == Environment.DEVELOPMENT

    def test_delivery_defaults(self):
        """Test delivery configuration defaults."""
        config = DeliveryConfig(app_base_url="https://chat.example.com/")
        assert config.max_concurrency == 50
        assert config.preview_max_length == 120
        assert config.app_base_url == "https://chat.example.com"


class TestEnvironmentOverrides:
    """Each group reads its own prefix."""

    def test_delivery_prefix(self, monkeypatch):
        """Test delivery settings from prefixed env vars."""
        monkeypatch.setenv("DELIVERY_MAX_CONCURRENCY", "8")
        monkeypatch.setenv("DELIVERY_BRAND_NAME", "Acme Chat")
        config = DeliveryConfig()
        assert config.max_concurrency == 8
        assert config.brand_name == "Acme Chat"

    def test_webpush_platforms_lowercased(self):
        """Test web push platforms are lowercased."""
        config = WebPushConfig(alternate_platforms=[" IOS_PWA ", "", "Web_Safari"])
        assert config.alternate_platforms == ["ios_pwa", "web_safari"]

    def test_webpush_needs_both_keys(self):
        """Test web push needs both VAPID keys."""
        assert not WebPushConfig(vapid_public_key="pub").is_available
        assert WebPushConfig(vapid_public_key="pub", vapid_private_key="priv").is_available
        assert not WebPushConfig(enabled=False, vapid_public_key="pub",
                                 vapid_private_key="priv").is_available


class TestEmailProvider:
    def test_resend_preferred(self):
        """Test Resend preferred over SMTP."""
        config = FanoutServiceConfig(email=EmailConfig(
            resend_api_key="key", smtp_host="h", smtp_username="u", smtp_password="p"))
        assert config.email_provider() == "resend"

    def test_smtp_needs_credentials(self):
        """Test SMTP requires credentials."""
        assert FanoutServiceConfig(email=EmailConfig(smtp_host="h")).email_provider() == "none"
        assert FanoutServiceConfig(email=EmailConfig(
            smtp_host="h", smtp_username="u", smtp_password="p")).email_provider() == "smtp"


class TestSingleton:
    def test_reset_reloads(self, monkeypatch):
        """Test resetting the cached configuration."""
        reset_config()
        first = get_config()
        assert get_config() is first
        monkeypatch.setenv("FANOUT_SERVICE_ENV", "production")
        reset_config()
        assert get_config().is_production()
        reset_config()
