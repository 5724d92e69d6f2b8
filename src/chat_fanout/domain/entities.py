"""
Chat Fanout - Domain Entities.

Value objects for messages, mention candidates, recipient preferences and
the chat documents the fan-out reads. Stored documents use camelCase keys,
so every document model accepts both the camelCase alias and the Python
field name.

Architecture Layer: Domain
"""
from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
import structlog

logger = structlog.get_logger(__name__)


class _Document(BaseModel):
    """Base for models read from camelCase documents."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def _coerce_timestamp(value: Any) -> datetime | None:
    """Accept datetimes, epoch milliseconds or ISO strings."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


class OriginType(str, Enum):
    """Where the triggering message was created."""
    CHANNEL = "channel"
    THREAD = "thread"
    DM = "dm"


class MentionKind(str, Enum):
    """Why a recipient is being notified. Higher priority wins a merge."""
    DM = "dm"
    DIRECT = "direct"
    ROLE = "role"
    HERE = "here"
    EVERYONE = "everyone"
    CHANNEL = "channel"

    @property
    def priority(self) -> int:
        return _MENTION_PRIORITY[self]

    @property
    def is_mention(self) -> bool:
        return self in (MentionKind.DIRECT, MentionKind.ROLE, MentionKind.HERE, MentionKind.EVERYONE)


_MENTION_PRIORITY: dict[MentionKind, int] = {
    MentionKind.DM: 6,
    MentionKind.DIRECT: 5,
    MentionKind.ROLE: 4,
    MentionKind.HERE: 3,
    MentionKind.EVERYONE: 2,
    MentionKind.CHANNEL: 1,
}


class MentionEntryKind(str, Enum):
    """Classification of a single mention token."""
    DIRECT = "direct"
    ROLE = "role"
    SPECIAL = "special"


class MentionEntry(BaseModel):
    """One mention token inside a message."""
    target_id: str
    kind: MentionEntryKind
    handle: str | None = None
    label: str | None = None

    model_config = ConfigDict(frozen=True)


class MessageAuthor(_Document):
    display_name: str | None = None
    photo_url: str | None = Field(default=None, alias="photoURL")


class Message(_Document):
    """A chat message as written by the chat layer."""
    uid: str | None = None
    author_id: str | None = None
    display_name: str | None = None
    author: MessageAuthor | None = None
    text: str | None = None
    content: str | None = None
    plain_text_content: str | None = None
    type: str | None = None
    mentions: Any = None
    mentions_map: Any = None
    created_at: datetime | None = None
    preview: str | None = None

    @field_validator("created_at", mode="before")
    @classmethod
    def parse_created_at(cls, v: Any) -> datetime | None:
        return _coerce_timestamp(v)

    @field_validator("author", mode="before")
    @classmethod
    def drop_malformed_author(cls, v: Any) -> Any:
        return v if isinstance(v, Mapping) or isinstance(v, MessageAuthor) else None

    @property
    def has_body(self) -> bool:
        """True when the message carries anything worth notifying about."""
        return any((self.plain_text_content, self.text, self.content, self.type, self.preview))


class CandidateTarget(BaseModel):
    """A recipient under consideration, before settings are applied."""
    uid: str
    kind: MentionKind
    role_id: str | None = None
    require_presence: bool = False

    model_config = ConfigDict(frozen=True)


def per_channel_key(server_id: str, channel_id: str) -> str:
    return f"{server_id}/{channel_id}"


def per_role_key(server_id: str, role_id: str) -> str:
    return f"{server_id}/{role_id}"


class NotificationSettings(_Document):
    """
    A recipient's standing notification preferences.

    Defaults: every push toggle enabled, nothing muted, email disabled
    unless explicitly turned on.
    """
    global_mute: bool = False
    do_not_disturb_until: datetime | None = None
    mute_dms: bool = Field(default=False, alias="muteDMs")
    mute_server_ids: list[str] = Field(default_factory=list)
    per_channel_mute: dict[str, bool] = Field(default_factory=dict)
    per_role_mute: dict[str, bool] = Field(default_factory=dict)
    allow_thread_push: bool = True
    allow_mention_push: bool = True
    allow_role_mention_push: bool = True
    allow_here_mention_push: bool = True
    allow_everyone_mention_push: bool = True
    allow_channel_message_push: bool = True
    push_channel_mentions_only: bool = False
    email_enabled: bool = False
    email_only_when_no_push: bool = True
    email_for_dms: bool = Field(default=True, alias="emailForDMs")
    email_for_mentions: bool = True
    email_for_channel_messages: bool = False
    email_for_all_channel_messages: bool = False
    email_channel_mentions_only: bool = False

    @field_validator("do_not_disturb_until", mode="before")
    @classmethod
    def parse_dnd(cls, v: Any) -> datetime | None:
        return _coerce_timestamp(v)

    def dnd_active(self, now: datetime | None = None) -> bool:
        if self.do_not_disturb_until is None:
            return False
        return self.do_not_disturb_until > (now or datetime.now(timezone.utc))

    def server_muted(self, server_id: str) -> bool:
        return server_id in self.mute_server_ids

    def channel_muted(self, server_id: str, channel_id: str) -> bool:
        return bool(self.per_channel_mute.get(per_channel_key(server_id, channel_id)))

    def role_muted(self, server_id: str, role_id: str) -> bool:
        return bool(self.per_role_mute.get(per_role_key(server_id, role_id)))


def resolve_settings(raw: Mapping[str, Any] | None) -> NotificationSettings:
    """
    Merge stored settings over the documented defaults.

    Null values and fields that fail validation fall back to their default
    instead of discarding the whole record.
    """
    if not raw:
        return NotificationSettings()
    data = {k: v for k, v in raw.items() if v is not None}
    try:
        return NotificationSettings.model_validate(data)
    except ValidationError as e:
        bad = {str(err["loc"][0]) for err in e.errors() if err.get("loc")}
        for name, field in NotificationSettings.model_fields.items():
            if name in bad or field.alias in bad:
                bad.update({name, field.alias or name})
        logger.warning("notification_settings_fields_invalid", fields=sorted(bad))
        cleaned = {k: v for k, v in data.items() if k not in bad}
        try:
            return NotificationSettings.model_validate(cleaned)
        except ValidationError:
            return NotificationSettings()


class DeliveryTarget(BaseModel):
    """A candidate that survived the gate, paired with its settings."""
    candidate: CandidateTarget
    settings: NotificationSettings
    email_only: bool = False
    suppression_reason: str | None = None

    @property
    def uid(self) -> str:
        return self.candidate.uid

    @property
    def kind(self) -> MentionKind:
        return self.candidate.kind

    @property
    def role_id(self) -> str | None:
        return self.candidate.role_id


class Presence(_Document):
    """Live presence document; either field may carry the state."""
    state: str | None = None
    status: str | None = None

    @property
    def normalized_state(self) -> str:
        return (self.state or self.status or "").strip().lower()


class WebPushSubscription(_Document):
    endpoint: str | None = None
    expiration_time: int | None = None
    keys: dict[str, str] = Field(default_factory=dict)

    @property
    def has_keys(self) -> bool:
        return bool(self.keys.get("auth") and self.keys.get("p256dh"))

    def to_subscription_info(self) -> dict[str, Any]:
        return {"endpoint": self.endpoint, "keys": dict(self.keys)}


class DeviceToken(_Document):
    """A registered push endpoint for a user."""
    device_id: str | None = None
    token: str | None = None
    platform: str | None = None
    permission: str | None = None
    enabled: bool | None = None
    subscription: WebPushSubscription | None = None

    @property
    def platform_tag(self) -> str:
        return (self.platform or "").strip().lower()

    @property
    def has_endpoint(self) -> bool:
        return bool(self.token) or bool(self.subscription and self.subscription.endpoint)

    @property
    def is_deliverable(self) -> bool:
        """Has an endpoint, permission granted or unset, and not disabled."""
        return (
            self.has_endpoint
            and self.permission in (None, "granted")
            and self.enabled is not False
        )


class ServerDoc(_Document):
    name: str | None = None
    icon: str | None = None
    default_role_id: str | None = None
    everyone_role_id: str | None = None

    @property
    def base_role_id(self) -> str | None:
        return self.default_role_id or self.everyone_role_id


class ChannelDoc(_Document):
    name: str | None = None
    type: str | None = None
    allowed_role_ids: list[str] | None = None

    @field_validator("allowed_role_ids", mode="before")
    @classmethod
    def ignore_non_list(cls, v: Any) -> Any:
        return v if isinstance(v, list) else None

    @property
    def is_voice(self) -> bool:
        return self.type == "voice"


class ThreadDoc(_Document):
    name: str | None = None


class DmDoc(_Document):
    participants: Any = None
    participant_uids: Any = None
    participants_map: Any = None
    key: Any = None
    name: str | None = None
    title: str | None = None
    last_message: str | None = None


class ServerMember(_Document):
    uid: str
    role: str | None = None
    role_ids: list[str] = Field(default_factory=list)
    nickname: str | None = None
    muted: bool | None = None

    @field_validator("role_ids", mode="before")
    @classmethod
    def ignore_non_list(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []


class RoleDoc(_Document):
    name: str | None = None


class UserProfile(_Document):
    email: str | None = None
    display_name: str | None = None
    name: str | None = None
    photo_url: str | None = Field(default=None, alias="photoURL")
    cached_photo_url: str | None = Field(default=None, alias="cachedPhotoURL")
    auth_photo_url: str | None = Field(default=None, alias="authPhotoURL")

    @property
    def best_photo_url(self) -> str | None:
        return self.cached_photo_url or self.photo_url or self.auth_photo_url


class IdentityRecord(BaseModel):
    """Identity-provider view of a user."""
    uid: str
    email: str | None = None
    display_name: str | None = None


class UserContact(BaseModel):
    email: str | None = None
    display_name: str | None = None


class DmRailEntry(BaseModel):
    """Sidebar entry that makes a DM visible to a participant."""
    thread_id: str
    other_uid: str | None = None
    participants: list[str] = Field(default_factory=list)
    last_message: str | None = None
    hidden: bool = False
    other_display_name: str | None = None
    other_email: str | None = None
    other_photo_url: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MessageContext(BaseModel):
    """Everything the pipeline knows about where a message lives."""
    origin: OriginType
    message_id: str
    author_id: str
    server_id: str | None = None
    channel_id: str | None = None
    thread_id: str | None = None
    dm_id: str | None = None
    server: ServerDoc | None = None
    channel: ChannelDoc | None = None
    thread: ThreadDoc | None = None
    dm: DmDoc | None = None
    role_names: dict[str, str] = Field(default_factory=dict)

    @property
    def is_dm(self) -> bool:
        return self.origin == OriginType.DM


class ActivityContext(BaseModel):
    server_id: str | None = None
    server_name: str | None = None
    channel_id: str | None = None
    channel_name: str | None = None
    thread_id: str | None = None
    thread_name: str | None = None
    dm_id: str | None = None


class ActivityMessageInfo(BaseModel):
    message_id: str
    author_id: str | None = None
    author_name: str
    preview_text: str
    created_at: datetime | None = None


class ActivityStatus(BaseModel):
    unread: bool = True
    read_at: datetime | None = None
    clicked: bool = False


class ActivityEntry(BaseModel):
    """Persisted "you were notified" record in a recipient's feed."""
    id: str
    type: str
    mention_kind: MentionKind
    context: ActivityContext
    message_info: ActivityMessageInfo
    status: ActivityStatus = Field(default_factory=ActivityStatus)
    title: str
    body: str
    deep_link: str
    has_push: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_notified_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def activity_id_for(message_id: str) -> str:
    """Activity ids are derived from the message so a replay hits the same entry."""
    return f"msg_{message_id}"
