"""Chat Fanout - Infrastructure Layer."""
from .cache import TTLCache
from .repositories import (
    ActivityFeedStore, ChatStore, EmailAuditLog, EmailAuditRecord, IdentityProvider,
    InMemoryActivityFeedStore, InMemoryChatStore, InMemoryEmailAuditLog,
    InMemoryIdentityProvider, InMemoryProfileStore, InMemorySettingsStore,
    ProfileStore, SettingsStore,
)

__all__ = [
    "TTLCache",
    "ActivityFeedStore",
    "ChatStore",
    "EmailAuditLog",
    "EmailAuditRecord",
    "IdentityProvider",
    "InMemoryActivityFeedStore",
    "InMemoryChatStore",
    "InMemoryEmailAuditLog",
    "InMemoryIdentityProvider",
    "InMemoryProfileStore",
    "InMemorySettingsStore",
    "ProfileStore",
    "SettingsStore",
]
