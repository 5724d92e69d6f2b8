"""
Chat Fanout - Delivery Channels.

Push providers (FCM HTTP v1 for native tokens, VAPID web push for browsers
without FCM support) and email providers (Resend HTTP API, SMTP).

Architecture Layer: Domain
"""
from __future__ import annotations

import asyncio
import json
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from email.header import Header
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Any

import aiosmtplib
import httpx
from pydantic import BaseModel, Field
from pywebpush import WebPushException, webpush
import structlog

from ..config import EmailConfig, FcmConfig, WebPushConfig
from ..exceptions import ConfigurationError, DeliveryError
from ..infrastructure.repositories import EmailAuditLog, EmailAuditRecord
from .entities import WebPushSubscription

logger = structlog.get_logger(__name__)

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
_HEADER_INJECTION_PATTERN = re.compile(r"[\r\n\x00\x0b\x0c]")
_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def _sanitize_header(value: str, max_length: int = 998) -> str:
    """Strip newlines and control characters from an email header value."""
    if not value:
        return ""
    return _HEADER_INJECTION_PATTERN.sub("", value)[:max_length].strip()


def _validate_email_address(email: str) -> bool:
    if not email or len(email) > 254:
        return False
    return _EMAIL_PATTERN.match(email) is not None


def token_preview(token: str | None) -> str:
    return f"{(token or '')[:10]}..."


def endpoint_tail(endpoint: str | None) -> str:
    return (endpoint or "")[-20:]


class PushMessage(BaseModel):
    """A push notification ready for any provider."""
    title: str
    body: str
    data: dict[str, str] = Field(default_factory=dict)
    collapse_key: str
    link: str | None = Field(default=None, description="Absolute HTTPS URL opened on click")


class TokenSendResult(BaseModel):
    token_preview: str
    success: bool
    message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    expired: bool = False


class MulticastResult(BaseModel):
    responses: list[TokenSendResult] = Field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.responses if r.success)

    @property
    def failure_count(self) -> int:
        return len(self.responses) - self.success_count


class PushProvider(ABC):
    """Native multicast push."""

    @abstractmethod
    async def send_multicast(self, tokens: list[str], message: PushMessage) -> MulticastResult:
        pass

    async def close(self) -> None:
        return None


class WebPushProvider(ABC):
    """Individual web push to an alternate-platform subscription."""

    @abstractmethod
    async def send(self, subscription: WebPushSubscription, message: PushMessage) -> TokenSendResult:
        pass


def build_fcm_message(token: str, message: PushMessage, config: FcmConfig,
                      now: datetime | None = None) -> dict[str, Any]:
    """FCM v1 message body with Android, web and APNs delivery hints."""
    now = now or datetime.now(timezone.utc)
    data = message.data
    body = {
        "token": token,
        "data": data,
        "notification": {"title": message.title, "body": message.body},
        "android": {
            "priority": "high",
            "collapse_key": message.collapse_key,
            "ttl": f"{config.ttl_seconds}s",
            "notification": {
                "title": message.title,
                "body": message.body,
                "default_sound": True,
                "channel_id": config.android_channel_id,
            },
        },
        "webpush": {
            "headers": {"Urgency": "high", "TTL": str(config.ttl_seconds)},
            "notification": {
                "title": message.title,
                "body": message.body,
                "requireInteraction": True,
                "renotify": True,
                "tag": message.collapse_key,
            },
        },
        "apns": {
            "headers": {
                "apns-priority": "10",
                "apns-push-type": "alert",
                "apns-expiration": str(int(now.timestamp()) + config.ttl_seconds),
                "apns-collapse-id": message.collapse_key[:64],
            },
            "payload": {
                "aps": {
                    "alert": {"title": message.title, "body": message.body},
                    "sound": "default",
                    "badge": 1,
                    "mutable-content": 1,
                    "content-available": 1,
                    "interruption-level": "time-sensitive",
                },
                "messageId": data.get("messageId"),
                "targetUrl": data.get("targetUrl"),
                "mentionType": data.get("mentionType"),
                "serverId": data.get("serverId"),
                "channelId": data.get("channelId"),
                "dmId": data.get("dmId"),
            },
        },
    }
    # FCM rejects a webpush link that is not HTTPS.
    if message.link and message.link.startswith("https://"):
        body["webpush"]["fcm_options"] = {"link": message.link}
    return body


class FcmPushChannel(PushProvider):
    """
    FCM HTTP v1 sender.

    The v1 API has no multicast endpoint, so a multicast is one request per
    token issued concurrently. Access tokens come from a service account and
    are cached until five minutes before expiry.
    """

    def __init__(self, config: FcmConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._client = client
        self._access_token: str | None = None
        self._token_expiry: datetime | None = None
        self._token_lock = asyncio.Lock()

    @property
    def url(self) -> str:
        return f"https://fcm.googleapis.com/v1/projects/{self._config.project_id}/messages:send"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    def _token_valid(self) -> bool:
        return bool(self._access_token and self._token_expiry
                    and datetime.now(timezone.utc) < self._token_expiry)

    async def _get_access_token(self) -> str:
        if self._token_valid():
            return self._access_token  # type: ignore[return-value]
        async with self._token_lock:
            if self._token_valid():
                return self._access_token  # type: ignore[return-value]
            if not self._config.service_account_file:
                raise DeliveryError("fcm", "service_account", "service_account_file is required")
            try:
                token, expiry = await asyncio.to_thread(self._refresh_credentials)
            except Exception as e:
                raise DeliveryError("fcm", "auth", f"Failed to get access token: {e}") from e
            self._access_token = token
            if expiry:
                self._token_expiry = expiry.replace(tzinfo=timezone.utc) - timedelta(minutes=5)
            else:
                self._token_expiry = datetime.now(timezone.utc) + timedelta(minutes=55)
            return token

    def _refresh_credentials(self) -> tuple[str, datetime | None]:
        from google.auth.transport.requests import Request
        from google.oauth2 import service_account

        credentials = service_account.Credentials.from_service_account_file(
            self._config.service_account_file, scopes=[FCM_SCOPE],
        )
        credentials.refresh(Request())
        return credentials.token, credentials.expiry

    async def send_multicast(self, tokens: list[str], message: PushMessage) -> MulticastResult:
        if not tokens:
            return MulticastResult()
        try:
            access_token = await self._get_access_token()
        except DeliveryError as e:
            logger.error("fcm_auth_failed", error=e.reason)
            return MulticastResult(responses=[
                TokenSendResult(token_preview=token_preview(t), success=False,
                                error_code="auth_failed", error_message=e.reason)
                for t in tokens
            ])
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
        responses = await asyncio.gather(
            *(self._send_one(client, headers, token, message) for token in tokens)
        )
        return MulticastResult(responses=list(responses))

    async def _send_one(self, client: httpx.AsyncClient, headers: dict[str, str],
                        token: str, message: PushMessage) -> TokenSendResult:
        payload = {"message": build_fcm_message(token, message, self._config)}
        try:
            response = await client.post(self.url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            code, detail = _fcm_error(e.response)
            return TokenSendResult(token_preview=token_preview(token), success=False,
                                   error_code=code, error_message=detail,
                                   expired=code in ("UNREGISTERED", "NOT_FOUND"))
        except httpx.HTTPError as e:
            return TokenSendResult(token_preview=token_preview(token), success=False,
                                   error_code="transport_error", error_message=str(e))
        try:
            name = response.json().get("name", "")
        except ValueError:
            name = ""
        return TokenSendResult(token_preview=token_preview(token), success=True,
                               message_id=name.split("/")[-1] if name else None)


def _fcm_error(response: httpx.Response) -> tuple[str, str]:
    try:
        error = response.json().get("error", {})
    except ValueError:
        return f"http_{response.status_code}", response.text[:200]
    code = error.get("status") or f"http_{response.status_code}"
    for detail in error.get("details", []):
        if isinstance(detail, dict) and detail.get("errorCode"):
            code = detail["errorCode"]
    return code, error.get("message", "")


def build_webpush_payload(message: PushMessage, config: WebPushConfig) -> str:
    return json.dumps({
        "notification": {
            "title": message.title,
            "body": message.body,
            "icon": config.icon,
            "badge": config.badge,
            "tag": message.collapse_key,
            "renotify": True,
            "requireInteraction": True,
            "silent": False,
        },
        "data": message.data,
    })


class VapidWebPushChannel(WebPushProvider):
    """VAPID web push. pywebpush is synchronous, so sends run in a worker thread."""

    def __init__(self, config: WebPushConfig, timeout_seconds: float = 10.0) -> None:
        self._config = config
        self._timeout = timeout_seconds

    async def send(self, subscription: WebPushSubscription, message: PushMessage) -> TokenSendResult:
        tail = endpoint_tail(subscription.endpoint)
        if not subscription.endpoint:
            logger.warning("webpush_subscription_missing_endpoint")
            return TokenSendResult(token_preview=tail, success=False, error_code="missing_endpoint")
        if not subscription.has_keys:
            logger.warning("webpush_subscription_missing_keys", endpoint=tail,
                           has_auth=bool(subscription.keys.get("auth")),
                           has_p256dh=bool(subscription.keys.get("p256dh")))
            return TokenSendResult(token_preview=tail, success=False, error_code="missing_keys")
        try:
            await asyncio.to_thread(
                webpush,
                subscription_info=subscription.to_subscription_info(),
                data=build_webpush_payload(message, self._config),
                vapid_private_key=self._config.vapid_private_key,
                vapid_claims={"sub": self._config.vapid_subject},
                ttl=self._config.ttl_seconds,
                headers={"Urgency": "high", "Topic": self._config.topic},
                timeout=self._timeout,
            )
        except WebPushException as e:
            status = getattr(e.response, "status_code", None)
            expired = status in (404, 410)
            logger.error("webpush_send_failed", endpoint=tail, status_code=status, error=str(e))
            if expired:
                logger.warning("webpush_subscription_expired", endpoint=tail, status_code=status)
            return TokenSendResult(token_preview=tail, success=False,
                                   error_code=f"http_{status}" if status else "webpush_error",
                                   error_message=str(e), expired=expired)
        logger.info("webpush_sent", endpoint=tail)
        return TokenSendResult(token_preview=tail, success=True)


class OutgoingEmail(BaseModel):
    to: str
    subject: str
    text: str
    html: str
    context: dict[str, Any] = Field(default_factory=dict)


class EmailSendResult(BaseModel):
    sent: bool
    reason: str | None = None
    message_id: str | None = None
    provider: str = "none"


class EmailProvider(ABC):
    name: str = "email"

    @abstractmethod
    async def send(self, email: OutgoingEmail) -> str | None:
        """Send and return the provider message id. Raises DeliveryError."""
        pass

    async def close(self) -> None:
        return None


class ResendEmailChannel(EmailProvider):
    name = "resend"

    def __init__(self, config: EmailConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def send(self, email: OutgoingEmail) -> str | None:
        client = await self._get_client()
        payload = {
            "from": self._config.from_address,
            "to": [email.to],
            "subject": email.subject,
            "text": email.text,
            "html": email.html,
        }
        headers = {"Authorization": f"Bearer {self._config.resend_api_key}",
                   "Content-Type": "application/json"}
        try:
            response = await client.post(self._config.resend_url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DeliveryError(self.name, email.to, f"resend_error_{e.response.status_code}",
                                status_code=e.response.status_code) from e
        except httpx.HTTPError as e:
            raise DeliveryError(self.name, email.to, str(e)) from e
        try:
            return response.json().get("id")
        except ValueError:
            return None


class SmtpEmailChannel(EmailProvider):
    name = "smtp"

    def __init__(self, config: EmailConfig) -> None:
        self._config = config

    async def send(self, email: OutgoingEmail) -> str | None:
        recipient = _sanitize_header(email.to)
        if not _validate_email_address(recipient):
            raise DeliveryError(self.name, email.to, "invalid_email_address")

        message = MIMEMultipart("alternative")
        message["Subject"] = Header(_sanitize_header(email.subject, max_length=200), "utf-8")
        message["From"] = _sanitize_header(self._config.from_address)
        message["To"] = recipient
        message_id = make_msgid()
        message["Message-ID"] = message_id
        message.attach(MIMEText(email.text, "plain", "utf-8"))
        message.attach(MIMEText(email.html, "html", "utf-8"))

        try:
            async with aiosmtplib.SMTP(
                hostname=self._config.smtp_host,
                port=self._config.smtp_port,
                use_tls=self._config.use_tls,
                start_tls=self._config.start_tls if not self._config.use_tls else False,
                timeout=self._config.timeout_seconds,
            ) as smtp:
                await smtp.login(self._config.smtp_username, self._config.smtp_password)
                await smtp.send_message(message)
        except aiosmtplib.SMTPException as e:
            raise DeliveryError(self.name, email.to, str(e)) from e
        except OSError as e:
            raise DeliveryError(self.name, email.to, str(e)) from e
        return message_id


class EmailService:
    """Sends through the configured provider and records every attempt."""

    def __init__(self, provider: EmailProvider | None, audit_log: EmailAuditLog | None = None) -> None:
        self._provider = provider
        self._audit = audit_log

    @property
    def provider_name(self) -> str:
        return self._provider.name if self._provider else "none"

    async def send(self, email: OutgoingEmail) -> EmailSendResult:
        started = time.perf_counter()
        if self._provider is None:
            logger.warning("email_provider_missing", to=email.to)
            result = EmailSendResult(sent=False, reason="no_email_provider_configured")
        else:
            try:
                message_id = await self._provider.send(email)
                result = EmailSendResult(sent=True, message_id=message_id, provider=self._provider.name)
                logger.info("email_sent", provider=self._provider.name, message_id=message_id)
            except DeliveryError as e:
                logger.error("email_send_failed", provider=self._provider.name, reason=e.reason)
                result = EmailSendResult(sent=False, reason=e.reason, provider=self._provider.name)
        await self._record(email, result, (time.perf_counter() - started) * 1000)
        return result

    async def _record(self, email: OutgoingEmail, result: EmailSendResult, duration_ms: float) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.record(EmailAuditRecord(
                to=email.to, subject=email.subject, provider=result.provider, sent=result.sent,
                reason=result.reason, message_id=result.message_id, context=email.context,
                duration_ms=duration_ms,
            ))
        except Exception as e:
            logger.warning("email_audit_failed", error=str(e))

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.close()


def create_push_provider(config: FcmConfig) -> PushProvider | None:
    if not config.enabled:
        logger.info("fcm_push_disabled")
        return None
    if not config.project_id or not config.service_account_file:
        raise ConfigurationError("FCM is enabled but project_id or service_account_file is missing",
                                 details={"project_id_set": bool(config.project_id)})
    return FcmPushChannel(config)


def create_webpush_provider(config: WebPushConfig, timeout_seconds: float = 10.0) -> WebPushProvider | None:
    if not config.is_available:
        logger.info("webpush_unavailable", reason="vapid_keys_missing")
        return None
    return VapidWebPushChannel(config, timeout_seconds)


def create_email_provider(config: EmailConfig) -> EmailProvider | None:
    if config.has_resend:
        return ResendEmailChannel(config)
    if config.has_smtp:
        return SmtpEmailChannel(config)
    return None
