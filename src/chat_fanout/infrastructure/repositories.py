"""
Chat Fanout - Repository Layer.

Store contracts the fan-out reads from and writes to, plus in-memory
implementations used by tests and local runs.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field
import structlog

from ..domain.entities import (
    ActivityEntry, ChannelDoc, DeviceToken, DmDoc, DmRailEntry, IdentityRecord,
    Presence, RoleDoc, ServerDoc, ServerMember, ThreadDoc, UserProfile,
)

logger = structlog.get_logger(__name__)


class ChatStore(ABC):
    """Read access to chat documents, plus the DM rail write."""

    @abstractmethod
    async def get_message(self, message_id: str, *, server_id: str | None = None,
                          channel_id: str | None = None, thread_id: str | None = None,
                          dm_id: str | None = None) -> dict[str, Any] | None:
        """Raw message document by id."""
        pass

    @abstractmethod
    async def get_server(self, server_id: str) -> ServerDoc | None:
        pass

    @abstractmethod
    async def get_channel(self, server_id: str, channel_id: str) -> ChannelDoc | None:
        pass

    @abstractmethod
    async def get_thread(self, server_id: str, channel_id: str, thread_id: str) -> ThreadDoc | None:
        pass

    @abstractmethod
    async def get_dm(self, dm_id: str) -> DmDoc | None:
        pass

    @abstractmethod
    async def get_member(self, server_id: str, uid: str) -> ServerMember | None:
        pass

    @abstractmethod
    async def list_members(self, server_id: str) -> list[ServerMember]:
        pass

    @abstractmethod
    async def get_role(self, server_id: str, role_id: str) -> RoleDoc | None:
        pass

    @abstractmethod
    async def upsert_dm_rail(self, uid: str, entry: DmRailEntry) -> None:
        """Create or merge the DM rail entry for one participant."""
        pass


class SettingsStore(ABC):
    """Per-user preferences, presence and device registrations."""

    @abstractmethod
    async def get_settings(self, uid: str) -> dict[str, Any] | None:
        """Raw stored settings; defaults are applied by the caller."""
        pass

    @abstractmethod
    async def get_presence(self, uid: str) -> Presence | None:
        pass

    @abstractmethod
    async def get_device_tokens(self, uid: str, device_id: str | None = None) -> list[DeviceToken]:
        """All registered devices, or only ``device_id`` when given."""
        pass


class ActivityFeedStore(ABC):
    """Per-recipient activity feed."""

    @abstractmethod
    async def create_if_absent(self, uid: str, entry: ActivityEntry) -> bool:
        """Write the entry unless one with the same id exists. True if written."""
        pass

    @abstractmethod
    async def get(self, uid: str, activity_id: str) -> ActivityEntry | None:
        pass


class ProfileStore(ABC):
    @abstractmethod
    async def get_profile(self, uid: str) -> UserProfile | None:
        pass


class IdentityProvider(ABC):
    @abstractmethod
    async def get_user(self, uid: str) -> IdentityRecord | None:
        pass


class EmailAuditRecord(BaseModel):
    """One email attempt, sent or not."""
    to: str | None
    subject: str
    provider: str
    sent: bool
    reason: str | None = None
    message_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    duration_ms: float = 0.0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EmailAuditLog(ABC):
    @abstractmethod
    async def record(self, entry: EmailAuditRecord) -> None:
        pass


class InMemoryChatStore(ChatStore):
    """In-memory chat store."""

    def __init__(self) -> None:
        self._messages: dict[str, dict[str, Any]] = {}
        self._servers: dict[str, ServerDoc] = {}
        self._channels: dict[tuple[str, str], ChannelDoc] = {}
        self._threads: dict[tuple[str, str, str], ThreadDoc] = {}
        self._dms: dict[str, DmDoc] = {}
        self._members: dict[str, dict[str, ServerMember]] = defaultdict(dict)
        self._roles: dict[tuple[str, str], RoleDoc] = {}
        self._rails: dict[str, dict[str, DmRailEntry]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    def put_message(self, message_id: str, message: dict[str, Any]) -> None:
        self._messages[message_id] = message

    def put_server(self, server_id: str, server: ServerDoc) -> None:
        self._servers[server_id] = server

    def put_channel(self, server_id: str, channel_id: str, channel: ChannelDoc) -> None:
        self._channels[(server_id, channel_id)] = channel

    def put_thread(self, server_id: str, channel_id: str, thread_id: str, thread: ThreadDoc) -> None:
        self._threads[(server_id, channel_id, thread_id)] = thread

    def put_dm(self, dm_id: str, dm: DmDoc) -> None:
        self._dms[dm_id] = dm

    def put_member(self, server_id: str, member: ServerMember) -> None:
        self._members[server_id][member.uid] = member

    def put_role(self, server_id: str, role_id: str, role: RoleDoc) -> None:
        self._roles[(server_id, role_id)] = role

    def rail_for(self, uid: str) -> dict[str, DmRailEntry]:
        return dict(self._rails.get(uid, {}))

    async def get_message(self, message_id: str, *, server_id: str | None = None,
                          channel_id: str | None = None, thread_id: str | None = None,
                          dm_id: str | None = None) -> dict[str, Any] | None:
        return self._messages.get(message_id)

    async def get_server(self, server_id: str) -> ServerDoc | None:
        return self._servers.get(server_id)

    async def get_channel(self, server_id: str, channel_id: str) -> ChannelDoc | None:
        return self._channels.get((server_id, channel_id))

    async def get_thread(self, server_id: str, channel_id: str, thread_id: str) -> ThreadDoc | None:
        return self._threads.get((server_id, channel_id, thread_id))

    async def get_dm(self, dm_id: str) -> DmDoc | None:
        return self._dms.get(dm_id)

    async def get_member(self, server_id: str, uid: str) -> ServerMember | None:
        return self._members.get(server_id, {}).get(uid)

    async def list_members(self, server_id: str) -> list[ServerMember]:
        return list(self._members.get(server_id, {}).values())

    async def get_role(self, server_id: str, role_id: str) -> RoleDoc | None:
        return self._roles.get((server_id, role_id))

    async def upsert_dm_rail(self, uid: str, entry: DmRailEntry) -> None:
        async with self._lock:
            existing = self._rails[uid].get(entry.thread_id)
            if existing is None:
                self._rails[uid][entry.thread_id] = entry
                return
            merged = existing.model_dump()
            merged.update(entry.model_dump(exclude_none=True))
            self._rails[uid][entry.thread_id] = DmRailEntry.model_validate(merged)


class InMemorySettingsStore(SettingsStore):
    """In-memory settings, presence and device store."""

    def __init__(self) -> None:
        self._settings: dict[str, dict[str, Any]] = {}
        self._presence: dict[str, Presence] = {}
        self._devices: dict[str, dict[str, DeviceToken]] = defaultdict(dict)

    def put_settings(self, uid: str, settings: dict[str, Any]) -> None:
        self._settings[uid] = settings

    def put_presence(self, uid: str, presence: Presence) -> None:
        self._presence[uid] = presence

    def put_device(self, uid: str, device: DeviceToken) -> None:
        key = device.device_id or device.token or str(len(self._devices[uid]))
        self._devices[uid][key] = device

    async def get_settings(self, uid: str) -> dict[str, Any] | None:
        return self._settings.get(uid)

    async def get_presence(self, uid: str) -> Presence | None:
        return self._presence.get(uid)

    async def get_device_tokens(self, uid: str, device_id: str | None = None) -> list[DeviceToken]:
        devices = self._devices.get(uid, {})
        if device_id is not None:
            return [d for d in devices.values() if d.device_id == device_id]
        return list(devices.values())


class InMemoryActivityFeedStore(ActivityFeedStore):
    """In-memory activity feed with a conditional create."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, ActivityEntry]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    async def create_if_absent(self, uid: str, entry: ActivityEntry) -> bool:
        async with self._lock:
            if entry.id in self._entries[uid]:
                return False
            self._entries[uid][entry.id] = entry
            return True

    async def get(self, uid: str, activity_id: str) -> ActivityEntry | None:
        return self._entries.get(uid, {}).get(activity_id)

    def entries_for(self, uid: str) -> list[ActivityEntry]:
        return list(self._entries.get(uid, {}).values())


class InMemoryProfileStore(ProfileStore):
    def __init__(self, profiles: dict[str, UserProfile] | None = None) -> None:
        self._profiles = dict(profiles or {})

    def put_profile(self, uid: str, profile: UserProfile) -> None:
        self._profiles[uid] = profile

    async def get_profile(self, uid: str) -> UserProfile | None:
        return self._profiles.get(uid)


class InMemoryIdentityProvider(IdentityProvider):
    def __init__(self, users: dict[str, IdentityRecord] | None = None) -> None:
        self._users = dict(users or {})

    def put_user(self, record: IdentityRecord) -> None:
        self._users[record.uid] = record

    async def get_user(self, uid: str) -> IdentityRecord | None:
        return self._users.get(uid)


class InMemoryEmailAuditLog(EmailAuditLog):
    def __init__(self) -> None:
        self._records: list[EmailAuditRecord] = []
        self._lock = asyncio.Lock()

    async def record(self, entry: EmailAuditRecord) -> None:
        async with self._lock:
            self._records.append(entry)
        logger.debug("email_audit_recorded", provider=entry.provider, sent=entry.sent, reason=entry.reason)

    @property
    def records(self) -> list[EmailAuditRecord]:
        return list(self._records)
