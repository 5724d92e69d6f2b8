"""Chat Fanout - Domain Layer."""
from .entities import (
    ActivityEntry, CandidateTarget, DeliveryTarget, DeviceToken, MentionEntry,
    MentionEntryKind, MentionKind, Message, MessageContext, NotificationSettings,
    OriginType, resolve_settings,
)

__all__ = [
    "ActivityEntry",
    "CandidateTarget",
    "DeliveryTarget",
    "DeviceToken",
    "MentionEntry",
    "MentionEntryKind",
    "MentionKind",
    "Message",
    "MessageContext",
    "NotificationSettings",
    "OriginType",
    "resolve_settings",
]
