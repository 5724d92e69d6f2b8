"""
Chat Fanout - Recipient Contact Resolution.
"""
from __future__ import annotations

import structlog

from ..infrastructure.cache import TTLCache
from ..infrastructure.repositories import IdentityProvider, ProfileStore
from ..utils import with_timeout
from .entities import UserContact, UserProfile

logger = structlog.get_logger(__name__)


def _clean(value: str | None) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class ContactResolver:
    """
    Email address and display name for a user.

    The profile record is read first and the identity provider fills any
    gaps. Results, including misses, are cached for the configured TTL.
    """

    def __init__(self, profiles: ProfileStore, identities: IdentityProvider | None = None,
                 cache: TTLCache[UserContact] | None = None,
                 call_timeout: float | None = 10.0) -> None:
        self._profiles = profiles
        self._identities = identities
        self._cache = cache
        self._timeout = call_timeout

    async def get_profile(self, uid: str) -> UserProfile | None:
        try:
            return await with_timeout(self._profiles.get_profile(uid), self._timeout)
        except Exception as e:
            logger.warning("profile_lookup_failed", uid=uid, error=str(e))
            return None

    async def resolve(self, uid: str) -> UserContact:
        if self._cache is not None:
            cached = self._cache.get(uid)
            if cached is not None:
                return cached

        profile = await self.get_profile(uid)
        email = _clean(profile.email) if profile else None
        display_name = _clean(profile.display_name or profile.name) if profile else None

        if (not email or not display_name) and self._identities is not None:
            try:
                record = await with_timeout(self._identities.get_user(uid), self._timeout)
            except Exception as e:
                logger.warning("identity_lookup_failed", uid=uid, error=str(e))
                record = None
            if record is not None:
                email = email or _clean(record.email)
                display_name = display_name or _clean(record.display_name)

        contact = UserContact(email=email, display_name=display_name)
        if self._cache is not None:
            self._cache.set(uid, contact)
        return contact
