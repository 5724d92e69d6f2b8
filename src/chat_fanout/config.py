"""
Chat Fanout - Configuration.

Centralized configuration for the notification fan-out engine and its
delivery providers. Every group reads its own environment prefix.
"""
from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

logger = structlog.get_logger(__name__)


class Environment(str, Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ServiceConfiguration(BaseSettings):
    """Core service configuration."""
    name: str = Field(default="chat-fanout")
    version: str = Field(default="1.0.0")
    env: Environment = Field(default=Environment.DEVELOPMENT)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8010, ge=1, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="console")

    model_config = SettingsConfigDict(
        env_prefix="FANOUT_SERVICE_",
        env_file=".env",
        extra="ignore",
    )


class FcmConfig(BaseSettings):
    """Native multicast push configuration (FCM HTTP v1)."""
    enabled: bool = Field(default=False)
    project_id: str = Field(default="")
    service_account_file: str = Field(default="")
    timeout_seconds: float = Field(default=10.0, ge=1.0, le=120.0)
    ttl_seconds: int = Field(default=86400, ge=0, le=2419200)
    android_channel_id: str = Field(default="chat_messages")

    model_config = SettingsConfigDict(
        env_prefix="FCM_",
        env_file=".env",
        extra="ignore",
    )


class WebPushConfig(BaseSettings):
    """Alternate web push configuration (VAPID) for platforms without FCM."""
    enabled: bool = Field(default=True)
    vapid_subject: str = Field(default="mailto:support@example.com")
    vapid_public_key: str = Field(default="")
    vapid_private_key: str = Field(default="")
    ttl_seconds: int = Field(default=86400, ge=0, le=2419200)
    topic: str = Field(default="chat-messages")
    icon: str = Field(default="/icon.png")
    badge: str = Field(default="/icon.png")
    alternate_platforms: list[str] = Field(
        default_factory=lambda: ["ios_browser", "ios_pwa", "web_safari"]
    )

    model_config = SettingsConfigDict(
        env_prefix="WEBPUSH_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("alternate_platforms", mode="after")
    @classmethod
    def lowercase_platforms(cls, v: list[str]) -> list[str]:
        return [p.strip().lower() for p in v if p and p.strip()]

    @property
    def is_available(self) -> bool:
        """Web push needs both VAPID keys."""
        return self.enabled and bool(self.vapid_public_key and self.vapid_private_key)


class EmailConfig(BaseSettings):
    """Email configuration. Resend is preferred, SMTP is the fallback."""
    from_address: str = Field(default="Chat <notifications@example.com>")
    resend_api_key: str = Field(default="")
    resend_url: str = Field(default="https://api.resend.com/emails")
    smtp_host: str = Field(default="")
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str = Field(default="")
    smtp_password: str = Field(default="")
    use_tls: bool = Field(default=False)
    start_tls: bool = Field(default=True)
    timeout_seconds: float = Field(default=15.0, ge=1.0, le=120.0)

    model_config = SettingsConfigDict(
        env_prefix="EMAIL_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def has_resend(self) -> bool:
        return bool(self.resend_api_key)

    @property
    def has_smtp(self) -> bool:
        return bool(self.smtp_host and self.smtp_username and self.smtp_password)


class DeliveryConfig(BaseSettings):
    """Fan-out pipeline limits and presentation settings."""
    max_concurrency: int = Field(default=50, ge=1, le=1000)
    call_timeout_seconds: float = Field(default=10.0, ge=0.1, le=120.0)
    invocation_timeout_seconds: float = Field(default=120.0, ge=1.0, le=540.0)
    preview_max_length: int = Field(default=120, ge=10, le=1000)
    app_base_url: str = Field(default="http://localhost:5173")
    brand_name: str = Field(default="Chat")
    contact_cache_ttl_seconds: int = Field(default=300, ge=0, le=86400)
    contact_cache_max_size: int = Field(default=5000, ge=1, le=1000000)

    model_config = SettingsConfigDict(
        env_prefix="DELIVERY_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("app_base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/") if isinstance(v, str) else v


class FanoutServiceConfig(BaseSettings):
    """Aggregate fan-out service configuration."""
    service: ServiceConfiguration = Field(default_factory=ServiceConfiguration)
    fcm: FcmConfig = Field(default_factory=FcmConfig)
    webpush: WebPushConfig = Field(default_factory=WebPushConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @staticmethod
    def load() -> FanoutServiceConfig:
        """Load configuration from environment."""
        config = FanoutServiceConfig()
        logger.info(
            "fanout_config_loaded",
            service=config.service.name,
            env=config.service.env.value,
            fcm_enabled=config.fcm.enabled,
            webpush_available=config.webpush.is_available,
            email_provider=config.email_provider(),
            max_concurrency=config.delivery.max_concurrency,
        )
        return config

    def email_provider(self) -> str:
        """Name of the email provider that will be used."""
        if self.email.has_resend:
            return "resend"
        if self.email.has_smtp:
            return "smtp"
        return "none"

    def is_production(self) -> bool:
        return self.service.env == Environment.PRODUCTION


_config: FanoutServiceConfig | None = None


def get_config() -> FanoutServiceConfig:
    """Get singleton configuration instance."""
    global _config
    if _config is None:
        _config = FanoutServiceConfig.load()
    return _config


def reset_config() -> None:
    """Reset configuration (useful for testing)."""
    global _config
    _config = None
