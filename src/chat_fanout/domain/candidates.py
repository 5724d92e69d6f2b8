"""
Chat Fanout - Candidate Resolution.

Expands a message into the set of users who might be notified. Each user
appears once, tagged with the highest-priority reason they qualify for.
"""
from __future__ import annotations

import asyncio
from collections.abc import Iterable

import structlog

from ..infrastructure.repositories import ChatStore
from ..utils import with_timeout
from .entities import CandidateTarget, MentionKind, Message, MessageContext, ServerMember
from .mentions import extract_mentions, resolve_dm_participants, summarize_mentions

logger = structlog.get_logger(__name__)


class DirectoryCache:
    """
    Per-invocation memo of a server's member records.

    Racing lookups for the same uid may both hit the store; the result is
    the same either way.
    """

    def __init__(self, chat_store: ChatStore, server_id: str,
                 call_timeout: float | None = None) -> None:
        self._store = chat_store
        self._server_id = server_id
        self._timeout = call_timeout
        self._members: dict[str, ServerMember | None] = {}
        self._fully_loaded = False

    @property
    def server_id(self) -> str:
        return self._server_id

    async def get(self, uid: str) -> ServerMember | None:
        if uid in self._members:
            return self._members[uid]
        if self._fully_loaded:
            return None
        try:
            member = await with_timeout(self._store.get_member(self._server_id, uid), self._timeout)
        except Exception as e:
            logger.warning("member_lookup_failed", server_id=self._server_id, uid=uid, error=str(e))
            return None
        self._members[uid] = member
        return member

    async def get_all(self) -> list[ServerMember]:
        if not self._fully_loaded:
            try:
                members = await with_timeout(self._store.list_members(self._server_id), self._timeout)
            except Exception as e:
                logger.warning("member_list_failed", server_id=self._server_id, error=str(e))
                return [m for m in self._members.values() if m is not None]
            for member in members:
                self._members[member.uid] = member
            self._fully_loaded = True
        return [m for m in self._members.values() if m is not None]


def member_has_channel_access(member: ServerMember, allowed_role_ids: list[str] | None,
                              default_role_id: str | None) -> bool:
    """A channel without an allow-list is public; otherwise some role must match."""
    if not allowed_role_ids:
        return True
    held = set(member.role_ids)
    if default_role_id:
        held.add(default_role_id)
    return not held.isdisjoint(allowed_role_ids)


class CandidateSet:
    """Candidates keyed by uid, merged by mention priority, author excluded."""

    def __init__(self, author_id: str | None) -> None:
        self._author_id = author_id
        self._by_uid: dict[str, CandidateTarget] = {}

    def add(self, uid: str, kind: MentionKind, role_id: str | None = None) -> None:
        if not uid or uid == self._author_id:
            return
        current = self._by_uid.get(uid)
        if current is not None and current.kind.priority >= kind.priority:
            return
        self._by_uid[uid] = CandidateTarget(
            uid=uid,
            kind=kind,
            role_id=role_id if kind == MentionKind.ROLE else None,
            require_presence=kind == MentionKind.HERE,
        )

    def add_all(self, uids: Iterable[str], kind: MentionKind) -> None:
        for uid in uids:
            self.add(uid, kind)

    def __len__(self) -> int:
        return len(self._by_uid)

    def to_list(self) -> list[CandidateTarget]:
        return list(self._by_uid.values())


class CandidateResolver:
    """Turns a message and its origin context into notification candidates."""

    async def resolve(self, message: Message, context: MessageContext,
                      directory: DirectoryCache | None) -> list[CandidateTarget]:
        candidates = CandidateSet(context.author_id)
        if context.is_dm:
            candidates.add_all(resolve_dm_participants(context.dm), MentionKind.DM)
        elif directory is not None:
            await self._resolve_server(message, context, directory, candidates)
        result = candidates.to_list()
        logger.debug("candidates_resolved", count=len(result), origin=context.origin.value)
        return result

    async def _resolve_server(self, message: Message, context: MessageContext,
                              directory: DirectoryCache, candidates: CandidateSet) -> None:
        summary = summarize_mentions(extract_mentions(message))
        members = await directory.get_all()

        allowed = context.channel.allowed_role_ids if context.channel else None
        default_role = context.server.base_role_id if context.server else None
        candidates.add_all(
            (m.uid for m in members if member_has_channel_access(m, allowed, default_role)),
            MentionKind.CHANNEL,
        )
        if summary.everyone:
            candidates.add_all((m.uid for m in members), MentionKind.EVERYONE)
        if summary.here:
            candidates.add_all((m.uid for m in members), MentionKind.HERE)
        for role_id in summary.role_ids:
            for member in members:
                if role_id in member.role_ids:
                    candidates.add(member.uid, MentionKind.ROLE, role_id)
        if summary.direct_uids:
            found = await asyncio.gather(*(directory.get(uid) for uid in summary.direct_uids))
            for uid, member in zip(summary.direct_uids, found):
                if member is None:
                    logger.debug("direct_mention_not_member", uid=uid)
                    continue
                candidates.add(uid, MentionKind.DIRECT)
