"""
Pytest configuration and fixtures for chat fanout tests.
"""
from __future__ import annotations

import pytest

from chat_fanout.config import DeliveryConfig, FanoutServiceConfig, WebPushConfig
from chat_fanout.domain.channels import (
    EmailProvider, EmailService, MulticastResult, OutgoingEmail, PushMessage, PushProvider,
    TokenSendResult, WebPushProvider, token_preview,
)
from chat_fanout.domain.contacts import ContactResolver
from chat_fanout.domain.dispatcher import DeliveryDispatcher
from chat_fanout.domain.entities import (
    ChannelDoc, DeviceToken, IdentityRecord, Presence, RoleDoc, ServerDoc, ServerMember,
    UserProfile, WebPushSubscription,
)
from chat_fanout.domain.formatting import EmailCopyRenderer
from chat_fanout.domain.gate import SettingsGate
from chat_fanout.domain.orchestrator import create_fanout_orchestrator
from chat_fanout.infrastructure.repositories import (
    InMemoryActivityFeedStore, InMemoryChatStore, InMemoryEmailAuditLog,
    InMemoryIdentityProvider, InMemoryProfileStore, InMemorySettingsStore,
)


class RecordingPushProvider(PushProvider):
    """Native push provider that records sends and succeeds for every token."""

    def __init__(self, failing_tokens: set[str] | None = None) -> None:
        self.calls: list[tuple[list[str], PushMessage]] = []
        self.failing_tokens = failing_tokens or set()

    async def send_multicast(self, tokens: list[str], message: PushMessage) -> MulticastResult:
        self.calls.append((list(tokens), message))
        return MulticastResult(responses=[
            TokenSendResult(token_preview=token_preview(t), success=t not in self.failing_tokens,
                            error_code="UNREGISTERED" if t in self.failing_tokens else None)
            for t in tokens
        ])


class RecordingWebPushProvider(WebPushProvider):
    def __init__(self) -> None:
        self.calls: list[tuple[WebPushSubscription, PushMessage]] = []

    async def send(self, subscription: WebPushSubscription, message: PushMessage) -> TokenSendResult:
        self.calls.append((subscription, message))
        return TokenSendResult(token_preview=subscription.endpoint or "", success=True)


class RecordingEmailProvider(EmailProvider):
    name = "recording"

    def __init__(self) -> None:
        self.sent: list[OutgoingEmail] = []

    async def send(self, email: OutgoingEmail) -> str | None:
        self.sent.append(email)
        return f"email-{len(self.sent)}"


@pytest.fixture
def delivery_config():
    return DeliveryConfig(
        max_concurrency=4,
        call_timeout_seconds=5.0,
        invocation_timeout_seconds=30.0,
        app_base_url="https://chat.example.com",
        brand_name="Chat",
    )


@pytest.fixture
def webpush_config():
    return WebPushConfig(enabled=True, vapid_public_key="pub", vapid_private_key="priv")


@pytest.fixture
def fanout_config(delivery_config, webpush_config):
    return FanoutServiceConfig(delivery=delivery_config, webpush=webpush_config)


@pytest.fixture
def chat_store():
    return InMemoryChatStore()


@pytest.fixture
def settings_store():
    return InMemorySettingsStore()


@pytest.fixture
def activity_store():
    return InMemoryActivityFeedStore()


@pytest.fixture
def profile_store():
    return InMemoryProfileStore()


@pytest.fixture
def identity_provider():
    return InMemoryIdentityProvider()


@pytest.fixture
def audit_log():
    return InMemoryEmailAuditLog()


@pytest.fixture
def push_provider():
    return RecordingPushProvider()


@pytest.fixture
def webpush_provider():
    return RecordingWebPushProvider()


@pytest.fixture
def email_provider():
    return RecordingEmailProvider()


@pytest.fixture
def email_service(email_provider, audit_log):
    return EmailService(email_provider, audit_log)


@pytest.fixture
def contacts(profile_store, identity_provider):
    return ContactResolver(profile_store, identity_provider)


@pytest.fixture
def gate(settings_store):
    return SettingsGate(settings_store, max_concurrency=4, call_timeout=5.0)


@pytest.fixture
def dispatcher(settings_store, activity_store, contacts, email_service, delivery_config,
               push_provider, webpush_provider):
    return DeliveryDispatcher(
        settings_store=settings_store,
        activity_store=activity_store,
        contacts=contacts,
        email_service=email_service,
        copy_renderer=EmailCopyRenderer("Chat", "https://chat.example.com"),
        config=delivery_config,
        push_provider=push_provider,
        webpush_provider=webpush_provider,
    )


@pytest.fixture
def orchestrator(fanout_config, chat_store, settings_store, activity_store, profile_store,
                 identity_provider, audit_log, push_provider, webpush_provider, email_service):
    return create_fanout_orchestrator(
        fanout_config,
        chat_store=chat_store,
        settings_store=settings_store,
        activity_store=activity_store,
        profile_store=profile_store,
        identity_provider=identity_provider,
        email_audit_log=audit_log,
        push_provider=push_provider,
        webpush_provider=webpush_provider,
        email_service=email_service,
    )


@pytest.fixture
def seeded_server(chat_store, settings_store, profile_store, identity_provider):
    """Server s1 / channel c1 with members A (author), B (online) and C (offline)."""
    chat_store.put_server("s1", ServerDoc(name="Acme", default_role_id="everyone"))
    chat_store.put_channel("s1", "c1", ChannelDoc(name="general", type="text"))
    chat_store.put_role("s1", "R", RoleDoc(name="engineering"))
    for uid, roles in (("A", []), ("B", ["R"]), ("C", ["R"])):
        chat_store.put_member("s1", ServerMember(uid=uid, role_ids=roles))
        settings_store.put_device(uid, DeviceToken(device_id=f"{uid}-phone", token=f"token-{uid}-0123456789",
                                                   platform="android"))
        profile_store.put_profile(uid, UserProfile(email=f"{uid.lower()}@example.com",
                                                   display_name=f"User {uid}"))
    identity_provider.put_user(IdentityRecord(uid="A", email="a@example.com", display_name="Alice"))
    settings_store.put_presence("B", Presence(state="online"))
    settings_store.put_presence("C", Presence(state="offline"))
    return chat_store
