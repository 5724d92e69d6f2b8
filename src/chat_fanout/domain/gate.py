"""
Chat Fanout - Settings & Presence Gate.

Applies each recipient's notification preferences, and live presence for
``@here``, to the candidate set. Rules are checked in a fixed order and the
first failing rule names the suppression reason.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field
import structlog

from ..infrastructure.repositories import SettingsStore
from ..utils import gather_bounded, with_timeout
from .entities import (
    CandidateTarget, DeliveryTarget, MentionKind, MessageContext, NotificationSettings,
    Presence, resolve_settings,
)

logger = structlog.get_logger(__name__)

HERE_PRESENCE_STATES = frozenset({"online", "active", "idle"})


class SuppressionReason(str, Enum):
    """Why a candidate was not delivered a push."""
    GLOBAL_MUTE = "global_mute"
    DO_NOT_DISTURB = "do_not_disturb"
    DMS_MUTED = "dms_muted"
    MISSING_SERVER_OR_CHANNEL = "missing_server_or_channel"
    SERVER_MUTED = "server_muted"
    CHANNEL_MUTED = "channel_muted"
    THREADS_DISABLED = "threads_disabled"
    MENTIONS_DISABLED = "mentions_disabled"
    ROLE_MENTIONS_DISABLED = "role_mentions_disabled"
    ROLE_MUTED = "role_muted"
    HERE_MENTIONS_DISABLED = "here_mentions_disabled"
    EVERYONE_MENTIONS_DISABLED = "everyone_mentions_disabled"
    CHANNEL_PUSH_DISABLED = "channel_push_disabled"
    CHANNEL_MENTIONS_ONLY = "channel_mentions_only"
    PRESENCE_NOT_ACTIVE = "presence_not_active"


_EMAIL_BLOCKING_REASONS = frozenset({SuppressionReason.GLOBAL_MUTE, SuppressionReason.DO_NOT_DISTURB})


class DeliveryOptions(BaseModel):
    """Where the message lives, as far as the gate cares."""
    is_dm: bool = False
    server_id: str | None = None
    channel_id: str | None = None
    thread_id: str | None = None

    @classmethod
    def from_context(cls, context: MessageContext) -> DeliveryOptions:
        return cls(is_dm=context.is_dm, server_id=context.server_id,
                   channel_id=context.channel_id, thread_id=context.thread_id)


def evaluate_settings(settings: NotificationSettings, candidate: CandidateTarget,
                      opts: DeliveryOptions, now: datetime | None = None) -> SuppressionReason | None:
    """Preference rules, excluding presence. None means the candidate passes."""
    if settings.global_mute:
        return SuppressionReason.GLOBAL_MUTE
    if settings.dnd_active(now):
        return SuppressionReason.DO_NOT_DISTURB
    if opts.is_dm:
        return SuppressionReason.DMS_MUTED if settings.mute_dms else None

    if not opts.server_id or not opts.channel_id:
        return SuppressionReason.MISSING_SERVER_OR_CHANNEL
    if settings.server_muted(opts.server_id):
        return SuppressionReason.SERVER_MUTED
    if settings.channel_muted(opts.server_id, opts.channel_id):
        return SuppressionReason.CHANNEL_MUTED
    if opts.thread_id and not settings.allow_thread_push:
        return SuppressionReason.THREADS_DISABLED

    kind = candidate.kind
    if kind == MentionKind.DIRECT:
        if not settings.allow_mention_push:
            return SuppressionReason.MENTIONS_DISABLED
    elif kind == MentionKind.ROLE:
        if not settings.allow_mention_push:
            return SuppressionReason.MENTIONS_DISABLED
        if not settings.allow_role_mention_push:
            return SuppressionReason.ROLE_MENTIONS_DISABLED
        if candidate.role_id and settings.role_muted(opts.server_id, candidate.role_id):
            return SuppressionReason.ROLE_MUTED
    elif kind == MentionKind.HERE:
        if not settings.allow_mention_push:
            return SuppressionReason.MENTIONS_DISABLED
        if not settings.allow_here_mention_push:
            return SuppressionReason.HERE_MENTIONS_DISABLED
    elif kind == MentionKind.EVERYONE:
        if not settings.allow_mention_push:
            return SuppressionReason.MENTIONS_DISABLED
        if not settings.allow_everyone_mention_push:
            return SuppressionReason.EVERYONE_MENTIONS_DISABLED
    elif kind == MentionKind.CHANNEL:
        if not settings.allow_channel_message_push:
            return SuppressionReason.CHANNEL_PUSH_DISABLED
        if settings.push_channel_mentions_only:
            return SuppressionReason.CHANNEL_MENTIONS_ONLY
    return None


def presence_allows_here(presence: Presence | None) -> bool:
    return presence is not None and presence.normalized_state in HERE_PRESENCE_STATES


def keeps_email_only(candidate: CandidateTarget, settings: NotificationSettings,
                     reason: SuppressionReason) -> bool:
    """A push-suppressed plain channel candidate may still be emailed, unless fully muted."""
    return (
        candidate.kind == MentionKind.CHANNEL
        and reason not in _EMAIL_BLOCKING_REASONS
        and settings.email_enabled
        and settings.email_for_all_channel_messages
    )


class Suppression(BaseModel):
    uid: str
    kind: MentionKind
    reason: SuppressionReason


class GateReport(BaseModel):
    targets: list[DeliveryTarget] = Field(default_factory=list)
    suppressed: list[Suppression] = Field(default_factory=list)


class SettingsGate:
    """Evaluates candidates concurrently, at most ``max_concurrency`` at a time."""

    def __init__(self, settings_store: SettingsStore, max_concurrency: int = 50,
                 call_timeout: float | None = 10.0) -> None:
        self._store = settings_store
        self._max_concurrency = max_concurrency
        self._timeout = call_timeout

    async def filter(self, candidates: list[CandidateTarget],
                     opts: DeliveryOptions) -> list[DeliveryTarget]:
        return (await self.evaluate(candidates, opts)).targets

    async def evaluate(self, candidates: list[CandidateTarget],
                       opts: DeliveryOptions) -> GateReport:
        report = GateReport()
        if not candidates:
            return report

        async def run(candidate: CandidateTarget) -> DeliveryTarget | Suppression:
            return await self._evaluate_one(candidate, opts)

        results = await gather_bounded(candidates, run, self._max_concurrency)
        for candidate, result in zip(candidates, results):
            if isinstance(result, DeliveryTarget):
                report.targets.append(result)
            elif isinstance(result, Suppression):
                report.suppressed.append(result)
            else:
                logger.warning("gate_evaluation_failed", uid=candidate.uid, error=str(result))

        if report.suppressed:
            logger.info(
                "candidates_suppressed",
                count=len(report.suppressed),
                sample=[f"{s.uid}:{s.kind.value}:{s.reason.value}" for s in report.suppressed[:10]],
            )
        return report

    async def _evaluate_one(self, candidate: CandidateTarget,
                            opts: DeliveryOptions) -> DeliveryTarget | Suppression:
        settings = await self._load_settings(candidate.uid)
        reason = evaluate_settings(settings, candidate, opts)
        if reason is None and candidate.require_presence:
            presence = await self._load_presence(candidate.uid)
            if not presence_allows_here(presence):
                reason = SuppressionReason.PRESENCE_NOT_ACTIVE

        if reason is None:
            return DeliveryTarget(candidate=candidate, settings=settings)
        logger.debug("candidate_suppressed", uid=candidate.uid,
                     mention_kind=candidate.kind.value, reason=reason.value)
        if keeps_email_only(candidate, settings, reason):
            return DeliveryTarget(candidate=candidate, settings=settings,
                                  email_only=True, suppression_reason=reason.value)
        return Suppression(uid=candidate.uid, kind=candidate.kind, reason=reason)

    async def _load_settings(self, uid: str) -> NotificationSettings:
        try:
            raw = await with_timeout(self._store.get_settings(uid), self._timeout)
        except Exception as e:
            logger.warning("settings_lookup_failed", uid=uid, error=str(e))
            raw = None
        return resolve_settings(raw)

    async def _load_presence(self, uid: str) -> Presence | None:
        try:
            return await with_timeout(self._store.get_presence(uid), self._timeout)
        except Exception as e:
            logger.warning("presence_lookup_failed", uid=uid, error=str(e))
            return None
