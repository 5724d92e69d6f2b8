"""
Chat Fanout - Orchestrator.

Entry points for the three message origins (channel, thread, DM). Each one
loads the documents around the message, drives candidate resolution, the
settings gate and delivery, and reports a terminal result. Entry points
never raise.

Architecture Layer: Domain
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from pydantic import ValidationError
import structlog

from ..config import FanoutServiceConfig
from ..exceptions import LookupFailure
from ..events import (
    ChannelMessageCreated, DmMessageCreated, FanoutResult, FanoutStatus, ThreadMessageCreated,
)
from ..infrastructure.cache import TTLCache
from ..infrastructure.repositories import (
    ActivityFeedStore, ChatStore, EmailAuditLog, IdentityProvider, ProfileStore, SettingsStore,
)
from ..observability import bind_invocation, clear_invocation
from ..utils import with_timeout
from .candidates import CandidateResolver, DirectoryCache
from .channels import (
    EmailService, PushProvider, WebPushProvider, create_email_provider, create_push_provider,
    create_webpush_provider,
)
from .contacts import ContactResolver
from .dispatcher import DeliveryDispatcher, PushTestResult
from .entities import (
    DeliveryTarget, DmDoc, DmRailEntry, Message, MessageContext, OriginType, UserContact,
)
from .formatting import EmailCopyRenderer, preview_from_message
from .gate import DeliveryOptions, SettingsGate
from .mentions import normalize_uid, resolve_author_id, resolve_dm_participants

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class FanoutOrchestrator:
    """Drives one fan-out invocation per created message."""

    def __init__(
        self,
        chat_store: ChatStore,
        resolver: CandidateResolver,
        gate: SettingsGate,
        dispatcher: DeliveryDispatcher,
        contacts: ContactResolver,
        call_timeout: float | None = 10.0,
        invocation_timeout: float | None = 120.0,
        preview_max_length: int = 120,
    ) -> None:
        self._chat = chat_store
        self._resolver = resolver
        self._gate = gate
        self._dispatcher = dispatcher
        self._contacts = contacts
        self._call_timeout = call_timeout
        self._invocation_timeout = invocation_timeout
        self._preview_max_length = preview_max_length
        logger.info("fanout_orchestrator_initialized")

    async def handle_channel_message(self, event: ChannelMessageCreated) -> FanoutResult:
        return await self._run(
            OriginType.CHANNEL, event.message_id,
            lambda: self._fan_out_server(OriginType.CHANNEL, event, None),
        )

    async def handle_thread_message(self, event: ThreadMessageCreated) -> FanoutResult:
        return await self._run(
            OriginType.THREAD, event.message_id,
            lambda: self._fan_out_server(OriginType.THREAD, event, event.thread_id),
        )

    async def handle_dm_message(self, event: DmMessageCreated) -> FanoutResult:
        return await self._run(OriginType.DM, event.message_id, lambda: self._fan_out_dm(event))

    async def send_test_push(self, uid: str, device_id: str | None = None) -> PushTestResult:
        return await self._dispatcher.send_test_push(uid, device_id)

    async def close(self) -> None:
        await self._dispatcher.close()

    async def _run(self, origin: OriginType, message_id: str | None,
                   work: Callable[[], Awaitable[FanoutResult]]) -> FanoutResult:
        started = time.perf_counter()
        bind_invocation(message_id or "", origin.value)
        try:
            result = await with_timeout(work(), self._invocation_timeout)
        except asyncio.TimeoutError:
            logger.error("fanout_invocation_timed_out", timeout_seconds=self._invocation_timeout)
            result = FanoutResult(origin=origin, message_id=message_id,
                                  status=FanoutStatus.TIMED_OUT, reason="invocation_deadline")
        except Exception as e:
            logger.error("fanout_invocation_failed", error=str(e), exc_info=True)
            result = FanoutResult(origin=origin, message_id=message_id,
                                  status=FanoutStatus.FAILED, reason=type(e).__name__)
        finally:
            clear_invocation()
        result.processing_time_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info("fanout_invocation_completed", origin=origin.value, message_id=message_id,
                    status=result.status.value, reason=result.reason,
                    candidate_count=result.candidate_count, recipient_count=result.recipient_count,
                    processing_time_ms=result.processing_time_ms)
        return result

    async def _lookup(self, resource: str, key: str, awaitable: Awaitable[T]) -> T | None:
        try:
            return await with_timeout(awaitable, self._call_timeout)
        except LookupFailure as e:
            failure = e
        except Exception as e:
            failure = LookupFailure(resource, key, cause=e)
        logger.warning("document_lookup_failed", **failure.to_dict())
        return None

    async def _load_message(self, event: ChannelMessageCreated | ThreadMessageCreated | DmMessageCreated,
                            **path: str | None) -> Message | None:
        raw: Any = event.message
        if not raw and event.message_id:
            raw = await self._lookup("message", event.message_id,
                                     self._chat.get_message(event.message_id, **path))
        if not raw:
            return None
        try:
            message = Message.model_validate(raw)
        except ValidationError as e:
            logger.warning("message_malformed", error_count=e.error_count())
            return None
        return message if message.has_body else None

    async def _fan_out_server(self, origin: OriginType, event: ChannelMessageCreated,
                              thread_id: str | None) -> FanoutResult:
        server_id = normalize_uid(event.server_id)
        channel_id = normalize_uid(event.channel_id)
        message_id = normalize_uid(event.message_id)
        thread_id = normalize_uid(thread_id)
        if not server_id or not channel_id or not message_id:
            return FanoutResult.no_op(origin, message_id, "missing_path_parameters")
        if origin == OriginType.THREAD and not thread_id:
            return FanoutResult.no_op(origin, message_id, "missing_path_parameters")

        message = await self._load_message(event, server_id=server_id, channel_id=channel_id,
                                           thread_id=thread_id)
        if message is None:
            return FanoutResult.no_op(origin, message_id, "empty_message")
        author_id = resolve_author_id(message)
        if not author_id:
            return FanoutResult.no_op(origin, message_id, "missing_author")

        lookups = [
            self._lookup("server", server_id, self._chat.get_server(server_id)),
            self._lookup("channel", channel_id, self._chat.get_channel(server_id, channel_id)),
        ]
        if thread_id:
            lookups.append(self._lookup("thread", thread_id,
                                        self._chat.get_thread(server_id, channel_id, thread_id)))
        docs = await asyncio.gather(*lookups)
        server, channel = docs[0], docs[1]
        thread = docs[2] if thread_id else None

        if channel is not None and channel.is_voice:
            logger.info("voice_channel_skipped", server_id=server_id, channel_id=channel_id)
            return FanoutResult.no_op(origin, message_id, "voice_channel")

        context = MessageContext(
            origin=origin, message_id=message_id, author_id=author_id,
            server_id=server_id, channel_id=channel_id, thread_id=thread_id,
            server=server, channel=channel, thread=thread,
        )
        directory = DirectoryCache(self._chat, server_id, self._call_timeout)
        return await self._run_pipeline(message, context, directory)

    async def _fan_out_dm(self, event: DmMessageCreated) -> FanoutResult:
        dm_id = normalize_uid(event.dm_id)
        message_id = normalize_uid(event.message_id)
        if not dm_id or not message_id:
            return FanoutResult.no_op(OriginType.DM, message_id, "missing_path_parameters")

        message = await self._load_message(event, dm_id=dm_id)
        if message is None:
            return FanoutResult.no_op(OriginType.DM, message_id, "empty_message")
        author_id = resolve_author_id(message)
        if not author_id:
            return FanoutResult.no_op(OriginType.DM, message_id, "missing_author")

        dm = await self._lookup("dm", dm_id, self._chat.get_dm(dm_id))
        if dm is None:
            return FanoutResult.no_op(OriginType.DM, message_id, "dm_not_found")

        await self._upsert_dm_rails(dm_id, dm, preview_from_message(message, self._preview_max_length))
        context = MessageContext(origin=OriginType.DM, message_id=message_id,
                                 author_id=author_id, dm_id=dm_id, dm=dm)
        return await self._run_pipeline(message, context, None)

    async def _run_pipeline(self, message: Message, context: MessageContext,
                            directory: DirectoryCache | None) -> FanoutResult:
        candidates = await self._resolver.resolve(message, context, directory)
        logger.info("candidates_computed", candidate_count=len(candidates),
                    mention_kinds=sorted({c.kind.value for c in candidates}))
        if not candidates:
            return FanoutResult.no_op(context.origin, context.message_id, "no_candidates")

        report = await self._gate.evaluate(candidates, DeliveryOptions.from_context(context))
        result = FanoutResult(
            origin=context.origin, message_id=context.message_id, status=FanoutStatus.ATTEMPTED,
            candidate_count=len(candidates), recipient_count=len(report.targets),
            suppressed=report.suppressed,
        )
        if not report.targets:
            result.status = FanoutStatus.NO_OP
            result.reason = "no_recipients"
            return result

        if context.server_id:
            context.role_names = await self._fetch_role_names(context.server_id, report.targets)
        result.outcomes = await self._dispatcher.deliver(report.targets, message, context)
        return result

    async def _fetch_role_names(self, server_id: str, targets: list[DeliveryTarget]) -> dict[str, str]:
        role_ids = sorted({t.role_id for t in targets if t.role_id})
        if not role_ids:
            return {}
        roles = await asyncio.gather(*(
            self._lookup("role", role_id, self._chat.get_role(server_id, role_id)) for role_id in role_ids
        ))
        return {role_id: (role.name if role and role.name else "role")
                for role_id, role in zip(role_ids, roles)}

    async def _upsert_dm_rails(self, dm_id: str, dm: DmDoc, last_message: str) -> None:
        """Make the conversation visible in every participant's DM list."""
        participants = resolve_dm_participants(dm)
        if not participants:
            return
        results = await asyncio.gather(
            *(self._upsert_rail(dm_id, uid, participants, last_message) for uid in participants),
            return_exceptions=True,
        )
        failed = [uid for uid, r in zip(participants, results) if isinstance(r, BaseException)]
        if failed:
            logger.error("dm_rail_upsert_failed", dm_id=dm_id, failed_uids=failed)
        else:
            logger.info("dm_rail_updated", dm_id=dm_id, participant_count=len(participants))

    async def _upsert_rail(self, dm_id: str, uid: str, participants: list[str],
                           last_message: str) -> None:
        others = [p for p in participants if p != uid]
        other_uid = others[0] if len(others) == 1 else None
        entry = DmRailEntry(thread_id=dm_id, other_uid=other_uid, participants=participants,
                            last_message=last_message)
        if other_uid:
            profile = await self._contacts.get_profile(other_uid)
            if profile is not None:
                entry.other_display_name = profile.name or profile.display_name
                entry.other_email = profile.email
                entry.other_photo_url = profile.best_photo_url
        await with_timeout(self._chat.upsert_dm_rail(uid, entry), self._call_timeout)


def create_fanout_orchestrator(
    config: FanoutServiceConfig,
    chat_store: ChatStore,
    settings_store: SettingsStore,
    activity_store: ActivityFeedStore,
    profile_store: ProfileStore,
    identity_provider: IdentityProvider | None = None,
    email_audit_log: EmailAuditLog | None = None,
    push_provider: PushProvider | None = None,
    webpush_provider: WebPushProvider | None = None,
    email_service: EmailService | None = None,
) -> FanoutOrchestrator:
    """
    Factory function to create a configured FanoutOrchestrator.

    Providers not passed in are built from configuration; a provider whose
    configuration is incomplete is left out and its sends are logged as
    unavailable.
    """
    delivery = config.delivery
    timeout = delivery.call_timeout_seconds
    if push_provider is None:
        push_provider = create_push_provider(config.fcm)
    if webpush_provider is None:
        webpush_provider = create_webpush_provider(config.webpush, timeout)
    if email_service is None:
        email_service = EmailService(create_email_provider(config.email), email_audit_log)

    contacts = ContactResolver(
        profile_store, identity_provider,
        cache=TTLCache[UserContact](delivery.contact_cache_ttl_seconds, delivery.contact_cache_max_size),
        call_timeout=timeout,
    )
    dispatcher = DeliveryDispatcher(
        settings_store=settings_store,
        activity_store=activity_store,
        contacts=contacts,
        email_service=email_service,
        copy_renderer=EmailCopyRenderer(delivery.brand_name, delivery.app_base_url),
        config=delivery,
        push_provider=push_provider,
        webpush_provider=webpush_provider,
        alternate_platforms=config.webpush.alternate_platforms,
        test_push_title=f"{delivery.brand_name} test notification",
    )
    return FanoutOrchestrator(
        chat_store=chat_store,
        resolver=CandidateResolver(),
        gate=SettingsGate(settings_store, delivery.max_concurrency, timeout),
        dispatcher=dispatcher,
        contacts=contacts,
        call_timeout=timeout,
        invocation_timeout=delivery.invocation_timeout_seconds,
        preview_max_length=delivery.preview_max_length,
    )
