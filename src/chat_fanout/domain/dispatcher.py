"""
Chat Fanout - Delivery Dispatcher.

For each delivery target: write the activity entry, decide on email, and
push to every reachable device. Recipients are processed concurrently under
a bounded pool; one recipient's failure never affects another.

Architecture Layer: Domain
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from enum import Enum

from pydantic import BaseModel, Field
import structlog

from ..config import DeliveryConfig
from ..infrastructure.repositories import ActivityFeedStore, SettingsStore
from ..utils import gather_bounded, with_timeout
from .channels import (
    EmailService, MulticastResult, OutgoingEmail, PushMessage, PushProvider,
    TokenSendResult, WebPushProvider,
)
from .contacts import ContactResolver
from .entities import (
    ActivityContext, ActivityEntry, ActivityMessageInfo, DeliveryTarget, DeviceToken,
    MentionKind, Message, MessageContext, Presence, WebPushSubscription, activity_id_for,
)
from .formatting import (
    EmailCopyRenderer, absolute_url, build_body, build_deep_link, build_title, collapse_key,
    pick_author_name, preview_from_message,
)
from .mentions import resolve_author_id

logger = structlog.get_logger(__name__)

EMAIL_SUPPRESSING_PRESENCE = frozenset({"online", "active"})
TEST_PUSH_BODY = "Push notifications are working on this device."


class EmailDecision(BaseModel):
    should: bool
    reason: str | None = None


def should_send_email(target: DeliveryTarget, push_reachable: bool) -> EmailDecision:
    """Preference half of the email decision; presence and address are checked later."""
    settings = target.settings
    if not settings.email_enabled:
        return EmailDecision(should=False, reason="email_disabled")
    if settings.email_only_when_no_push and push_reachable:
        return EmailDecision(should=False, reason="push_available")
    if target.kind == MentionKind.DM:
        if not settings.email_for_dms:
            return EmailDecision(should=False, reason="dm_email_disabled")
    elif target.kind == MentionKind.CHANNEL:
        if not (settings.email_for_channel_messages or settings.email_for_all_channel_messages):
            return EmailDecision(should=False, reason="channel_email_disabled")
        if settings.email_channel_mentions_only:
            return EmailDecision(should=False, reason="channel_mentions_only")
    elif not settings.email_for_mentions:
        return EmailDecision(should=False, reason="mention_email_disabled")
    return EmailDecision(should=True)


def has_reachable_push(tokens: Iterable[DeviceToken], alternate_platforms: Iterable[str]) -> bool:
    """True if any device is on a platform served by native multicast push."""
    alternate = frozenset(alternate_platforms)
    return any(t.has_endpoint and t.platform_tag not in alternate for t in tokens)


class TokenPartition(BaseModel):
    native_tokens: list[str] = Field(default_factory=list)
    subscriptions: list[WebPushSubscription] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.native_tokens or self.subscriptions)


def partition_tokens(tokens: Iterable[DeviceToken], alternate_platforms: Iterable[str]) -> TokenPartition:
    alternate = frozenset(alternate_platforms)
    partition = TokenPartition()
    for device in tokens:
        if device.subscription and device.subscription.endpoint and device.platform_tag in alternate:
            partition.subscriptions.append(device.subscription)
        elif device.token:
            partition.native_tokens.append(device.token)
    return partition


class PushOutcome(BaseModel):
    attempted: bool = False
    native_sent: int = 0
    native_failed: int = 0
    webpush_sent: int = 0
    webpush_failed: int = 0
    skipped_reason: str | None = None

    @property
    def sent(self) -> int:
        return self.native_sent + self.webpush_sent


class EmailOutcome(BaseModel):
    attempted: bool = False
    sent: bool = False
    reason: str | None = None
    to: str | None = None


class RecipientStatus(str, Enum):
    DELIVERED = "delivered"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class RecipientOutcome(BaseModel):
    uid: str
    kind: MentionKind
    status: RecipientStatus
    activity_id: str | None = None
    email_only: bool = False
    push: PushOutcome = Field(default_factory=PushOutcome)
    email: EmailOutcome = Field(default_factory=EmailOutcome)
    error: str | None = None


class PushTestResult(BaseModel):
    sent: int = 0
    reason: str | None = None
    message_id: str | None = None


class DeliveryDispatcher:
    """Delivers one message to a list of targets."""

    def __init__(
        self,
        settings_store: SettingsStore,
        activity_store: ActivityFeedStore,
        contacts: ContactResolver,
        email_service: EmailService,
        copy_renderer: EmailCopyRenderer,
        config: DeliveryConfig,
        push_provider: PushProvider | None = None,
        webpush_provider: WebPushProvider | None = None,
        alternate_platforms: Iterable[str] = ("ios_browser", "ios_pwa", "web_safari"),
        test_push_title: str = "Chat test notification",
    ) -> None:
        self._settings = settings_store
        self._activity = activity_store
        self._contacts = contacts
        self._email = email_service
        self._copy = copy_renderer
        self._config = config
        self._push = push_provider
        self._webpush = webpush_provider
        self._alternate = frozenset(p.lower() for p in alternate_platforms)
        self._test_push_title = test_push_title

    @property
    def timeout(self) -> float:
        return self._config.call_timeout_seconds

    async def deliver(self, targets: list[DeliveryTarget], message: Message,
                      context: MessageContext) -> list[RecipientOutcome]:
        if not targets:
            return []
        logger.info("delivering_to_recipients", recipient_count=len(targets),
                    server_id=context.server_id, channel_id=context.channel_id, dm_id=context.dm_id)
        author_name = pick_author_name(message)
        preview = preview_from_message(message, self._config.preview_max_length)

        async def run(target: DeliveryTarget) -> RecipientOutcome:
            return await self._deliver_one(target, message, context, author_name, preview)

        results = await gather_bounded(targets, run, self._config.max_concurrency)
        outcomes: list[RecipientOutcome] = []
        for target, result in zip(targets, results):
            if isinstance(result, RecipientOutcome):
                outcomes.append(result)
                continue
            logger.error("recipient_delivery_failed", uid=target.uid,
                         mention_kind=target.kind.value, error=str(result))
            outcomes.append(RecipientOutcome(uid=target.uid, kind=target.kind,
                                             status=RecipientStatus.FAILED,
                                             email_only=target.email_only, error=str(result)))
        return outcomes

    async def _deliver_one(self, target: DeliveryTarget, message: Message, context: MessageContext,
                           author_name: str, preview: str) -> RecipientOutcome:
        tokens = [] if target.email_only else await self.load_tokens(target.uid)
        title = build_title(context, author_name)
        role_name = context.role_names.get(target.role_id) if target.role_id else None
        body = build_body(target.kind, author_name, preview, role_name)
        deep_link = build_deep_link(context)

        entry = self._activity_entry(target, message, context, title, body, deep_link,
                                     author_name, preview, has_push=bool(tokens))
        created = await with_timeout(self._activity.create_if_absent(target.uid, entry), self.timeout)
        outcome = RecipientOutcome(uid=target.uid, kind=target.kind, status=RecipientStatus.DELIVERED,
                                   activity_id=entry.id, email_only=target.email_only)
        if not created:
            logger.info("activity_entry_exists", uid=target.uid, activity_id=entry.id)
            outcome.status = RecipientStatus.DUPLICATE
            return outcome

        outcome.email = await self._maybe_email(target, tokens, context, author_name, preview, deep_link)
        if target.email_only:
            outcome.push = PushOutcome(skipped_reason="email_only")
        elif not tokens:
            logger.info("no_device_tokens", uid=target.uid, mention_kind=target.kind.value,
                        email_attempted=outcome.email.attempted, email_sent=outcome.email.sent)
            outcome.push = PushOutcome(skipped_reason="no_device_tokens")
        else:
            push_message = PushMessage(
                title=title, body=body, collapse_key=collapse_key(context),
                link=absolute_url(deep_link, self._config.app_base_url),
                data=self._push_data(target, context, title, body, entry.id, deep_link),
            )
            outcome.push = await self.send_push(tokens, push_message)
        return outcome

    def _activity_entry(self, target: DeliveryTarget, message: Message, context: MessageContext,
                        title: str, body: str, deep_link: str, author_name: str,
                        preview: str, has_push: bool) -> ActivityEntry:
        if target.kind == MentionKind.ROLE:
            entry_type = "roleMention"
        else:
            entry_type = target.kind.value
        return ActivityEntry(
            id=activity_id_for(context.message_id),
            type=entry_type,
            mention_kind=target.kind,
            context=ActivityContext(
                server_id=context.server_id,
                server_name=context.server.name if context.server else None,
                channel_id=context.channel_id,
                channel_name=context.channel.name if context.channel else None,
                thread_id=context.thread_id,
                thread_name=context.thread.name if context.thread else None,
                dm_id=context.dm_id,
            ),
            message_info=ActivityMessageInfo(
                message_id=context.message_id,
                author_id=resolve_author_id(message),
                author_name=author_name,
                preview_text=preview,
                created_at=message.created_at,
            ),
            title=title,
            body=body,
            deep_link=deep_link,
            has_push=has_push,
        )

    @staticmethod
    def _push_data(target: DeliveryTarget, context: MessageContext, title: str, body: str,
                   activity_id: str, deep_link: str) -> dict[str, str]:
        data = {
            "title": title,
            "body": body,
            "mentionType": target.kind.value,
            "messageId": context.message_id,
            "activityId": activity_id,
            "origin": "push",
            "targetUrl": deep_link,
        }
        optional = {
            "serverId": context.server_id,
            "channelId": context.channel_id,
            "threadId": context.thread_id,
            "dmId": context.dm_id,
            "roleId": target.role_id,
        }
        data.update({k: v for k, v in optional.items() if v})
        return data

    async def load_tokens(self, uid: str, device_id: str | None = None) -> list[DeviceToken]:
        """Usable devices for a user; lookup failures count as none."""
        try:
            devices = await with_timeout(self._settings.get_device_tokens(uid, device_id), self.timeout)
        except Exception as e:
            logger.warning("device_token_lookup_failed", uid=uid, error=str(e))
            return []
        return [d for d in devices if d.is_deliverable]

    async def _presence(self, uid: str) -> Presence | None:
        try:
            return await with_timeout(self._settings.get_presence(uid), self.timeout)
        except Exception as e:
            logger.warning("presence_lookup_failed", uid=uid, error=str(e))
            return None

    async def _maybe_email(self, target: DeliveryTarget, tokens: list[DeviceToken],
                           context: MessageContext, author_name: str, preview: str,
                           deep_link: str) -> EmailOutcome:
        decision = should_send_email(target, has_reachable_push(tokens, self._alternate))
        if not decision.should:
            logger.debug("email_skipped", uid=target.uid, reason=decision.reason)
            return EmailOutcome(reason=decision.reason)

        presence = await self._presence(target.uid)
        if presence is not None and presence.normalized_state in EMAIL_SUPPRESSING_PRESENCE:
            logger.info("email_skipped_recipient_active", uid=target.uid,
                        presence_state=presence.normalized_state)
            return EmailOutcome(attempted=True, reason="recipient_active")

        contact = await self._contacts.resolve(target.uid)
        if not contact.email:
            logger.info("email_skipped_missing_address", uid=target.uid)
            return EmailOutcome(attempted=True, reason="missing_email")

        try:
            copy = self._copy.render(target.kind, context, author_name, preview, deep_link)
            result = await with_timeout(self._email.send(OutgoingEmail(
                to=contact.email, subject=copy.subject, text=copy.text, html=copy.html,
                context={
                    "type": context.origin.value,
                    "recipientUid": target.uid,
                    "messageId": context.message_id,
                    "serverId": context.server_id,
                    "channelId": context.channel_id,
                    "dmId": context.dm_id,
                },
            )), self.timeout)
        except Exception as e:
            logger.error("email_delivery_failed", uid=target.uid, error=str(e))
            return EmailOutcome(attempted=True, reason="send_failed", to=contact.email)
        logger.info("email_fallback_considered", uid=target.uid, mention_kind=target.kind.value,
                    sent=result.sent, reason=result.reason)
        return EmailOutcome(attempted=True, sent=result.sent, reason=result.reason, to=contact.email)

    async def send_push(self, tokens: list[DeviceToken], message: PushMessage) -> PushOutcome:
        """Send to every device, native tokens as one multicast and web push individually."""
        partition = partition_tokens(tokens, self._alternate)
        outcome = PushOutcome(attempted=not partition.is_empty)
        if partition.is_empty:
            outcome.skipped_reason = "no_usable_tokens"
            return outcome
        started = time.perf_counter()

        tasks = []
        if partition.native_tokens:
            tasks.append(self._send_native(partition.native_tokens, message, outcome))
        if partition.subscriptions:
            tasks.append(self._send_webpush(partition.subscriptions, message, outcome))
        await asyncio.gather(*tasks)

        logger.info("push_dispatch_completed", total_tokens=len(tokens),
                    native_sent=outcome.native_sent, native_failed=outcome.native_failed,
                    webpush_sent=outcome.webpush_sent, webpush_failed=outcome.webpush_failed,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2))
        return outcome

    async def _send_native(self, native_tokens: list[str], message: PushMessage,
                           outcome: PushOutcome) -> None:
        if self._push is None:
            logger.warning("native_push_unavailable", count=len(native_tokens))
            outcome.native_failed += len(native_tokens)
            return
        try:
            result = await with_timeout(self._push.send_multicast(native_tokens, message), self.timeout)
        except Exception as e:
            logger.error("native_push_failed", count=len(native_tokens), error=str(e))
            outcome.native_failed += len(native_tokens)
            return
        self._log_multicast(result)
        outcome.native_sent += result.success_count
        outcome.native_failed += result.failure_count

    @staticmethod
    def _log_multicast(result: MulticastResult) -> None:
        logger.info("native_push_result", success_count=result.success_count,
                    failure_count=result.failure_count)
        for index, response in enumerate(result.responses):
            if not response.success:
                logger.warning("native_token_delivery_failed", token_index=index,
                               token_preview=response.token_preview,
                               error_code=response.error_code, error_message=response.error_message)

    async def _send_webpush(self, subscriptions: list[WebPushSubscription], message: PushMessage,
                            outcome: PushOutcome) -> None:
        if self._webpush is None:
            logger.warning("webpush_unavailable_for_subscriptions", count=len(subscriptions))
            outcome.webpush_failed += len(subscriptions)
            return

        async def send(subscription: WebPushSubscription) -> TokenSendResult:
            return await with_timeout(self._webpush.send(subscription, message), self.timeout)

        results = await asyncio.gather(*(send(s) for s in subscriptions), return_exceptions=True)
        for result in results:
            if isinstance(result, TokenSendResult) and result.success:
                outcome.webpush_sent += 1
            else:
                if isinstance(result, BaseException):
                    logger.error("webpush_send_error", error=str(result))
                outcome.webpush_failed += 1

    async def close(self) -> None:
        """Release provider HTTP clients."""
        if self._push is not None:
            await self._push.close()
        await self._email.close()

    async def send_test_push(self, uid: str, device_id: str | None = None) -> PushTestResult:
        """Send a fixed test notification to one user's devices."""
        tokens = await self.load_tokens(uid, device_id)
        if not tokens:
            logger.warning("test_push_no_devices", uid=uid, device_id=device_id)
            return PushTestResult(reason="device_not_registered")
        message_id = f"test-{int(time.time() * 1000)}"
        data = {
            "title": self._test_push_title,
            "body": TEST_PUSH_BODY,
            "origin": "push",
            "mentionType": MentionKind.DIRECT.value,
            "targetUrl": "/?origin=push",
            "messageId": message_id,
        }
        if device_id:
            data["testDeviceId"] = device_id
        message = PushMessage(title=self._test_push_title, body=TEST_PUSH_BODY,
                              data=data, collapse_key="test-push",
                              link=absolute_url(data["targetUrl"], self._config.app_base_url))
        outcome = await self.send_push(tokens, message)
        logger.info("test_push_sent", uid=uid, device_count=len(tokens), sent=outcome.sent)
        return PushTestResult(sent=len(tokens), message_id=message_id)
