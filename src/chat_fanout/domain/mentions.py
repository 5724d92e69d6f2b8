"""
Chat Fanout - Mention Extraction.

Reads the mention tokens attached to a message and normalizes the loose
user-id shapes found across chat documents.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, Field
import structlog

from .entities import DmDoc, MentionEntry, MentionEntryKind, Message

logger = structlog.get_logger(__name__)

EVERYONE_MARKER = "special:mention:everyone"
HERE_MARKER = "special:mention:here"
SPECIAL_MARKERS = frozenset({EVERYONE_MARKER, HERE_MARKER})


def normalize_uid(value: Any) -> str | None:
    """Trimmed non-empty string, or None."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def normalize_uid_list(values: Any) -> list[str]:
    """Normalize a list of ids, dropping blanks and duplicates."""
    if not isinstance(values, (list, tuple, set, frozenset)):
        return []
    seen: dict[str, None] = {}
    for value in values:
        uid = normalize_uid(value)
        if uid:
            seen.setdefault(uid, None)
    return list(seen)


def normalize_uid_map(mapping: Any) -> list[str]:
    """Keys of a ``{uid: flag}`` map whose flag is truthy."""
    if not isinstance(mapping, Mapping):
        return []
    return normalize_uid_list([k for k, v in mapping.items() if v])


def resolve_dm_participants(dm: DmDoc | None) -> list[str]:
    """
    Participants of a DM, trying each stored representation in turn.

    Order: ``participants``, ``participantUids``, truthy keys of
    ``participantsMap``, then an underscore-separated ``key``.
    """
    if dm is None:
        return []
    for candidate in (
        normalize_uid_list(dm.participants),
        normalize_uid_list(dm.participant_uids),
        normalize_uid_map(dm.participants_map),
    ):
        if candidate:
            return candidate
    if isinstance(dm.key, str):
        return normalize_uid_list(dm.key.split("_"))
    return []


def resolve_author_id(message: Message) -> str | None:
    return normalize_uid(message.author_id) or normalize_uid(message.uid)


def _raw_entries(message: Message) -> list[Any]:
    if isinstance(message.mentions, list) and message.mentions:
        return list(message.mentions)
    if isinstance(message.mentions_map, Mapping):
        entries = []
        for key, value in message.mentions_map.items():
            body = dict(value) if isinstance(value, Mapping) else {}
            body.setdefault("uid", key)
            entries.append(body)
        return entries
    return []


def _classify(raw: Mapping[str, Any]) -> MentionEntry | None:
    uid = normalize_uid(raw.get("uid"))
    handle = normalize_uid(raw.get("handle"))
    label = raw.get("label") if isinstance(raw.get("label"), str) else None
    kind = raw.get("kind")

    if uid in SPECIAL_MARKERS or handle in SPECIAL_MARKERS:
        target = uid if uid in SPECIAL_MARKERS else handle
        return MentionEntry(target_id=target, kind=MentionEntryKind.SPECIAL, handle=handle, label=label)
    if not uid:
        return None
    if kind == "special":
        # Unknown special token; nothing to resolve it to.
        return None
    entry_kind = MentionEntryKind.ROLE if kind == "role" else MentionEntryKind.DIRECT
    return MentionEntry(target_id=uid, kind=entry_kind, handle=handle, label=label)


def extract_mentions(message: Message) -> list[MentionEntry]:
    """
    Mention entries of a message.

    The ``mentions`` list wins when non-empty, otherwise ``mentionsMap`` is
    read with its keys as ids. Malformed entries are skipped.
    """
    entries: list[MentionEntry] = []
    skipped = 0
    for raw in _raw_entries(message):
        if not isinstance(raw, Mapping):
            skipped += 1
            continue
        entry = _classify(raw)
        if entry is None:
            skipped += 1
            continue
        entries.append(entry)
    if skipped:
        logger.debug("mention_entries_skipped", count=skipped)
    return entries


class MentionSummary(BaseModel):
    """Mention entries grouped by what they target."""
    direct_uids: list[str] = Field(default_factory=list)
    role_ids: list[str] = Field(default_factory=list)
    everyone: bool = False
    here: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.direct_uids or self.role_ids or self.everyone or self.here)


def summarize_mentions(entries: Iterable[MentionEntry]) -> MentionSummary:
    direct: dict[str, None] = {}
    roles: dict[str, None] = {}
    everyone = here = False
    for entry in entries:
        if entry.kind == MentionEntryKind.SPECIAL:
            everyone = everyone or entry.target_id == EVERYONE_MARKER
            here = here or entry.target_id == HERE_MARKER
        elif entry.kind == MentionEntryKind.ROLE:
            roles.setdefault(entry.target_id, None)
        else:
            direct.setdefault(entry.target_id, None)
    return MentionSummary(direct_uids=list(direct), role_ids=list(roles), everyone=everyone, here=here)
