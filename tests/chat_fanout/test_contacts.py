"""
Unit tests for recipient contact resolution.
"""
import pytest
from unittest.mock import AsyncMock

from chat_fanout.domain.contacts import ContactResolver
from chat_fanout.domain.entities import IdentityRecord, UserProfile
from chat_fanout.infrastructure.cache import TTLCache


class TestContactResolver:
    """Tests for profile-first contact lookup."""

    @pytest.mark.asyncio
    async def test_profile_wins(self, contacts, profile_store, identity_provider):
        """Test profile contact wins over identity."""
        profile_store.put_profile("B", UserProfile(email=" b@example.com ", display_name="Bea"))
        identity_provider.put_user(IdentityRecord(uid="B", email="other@example.com", display_name="B"))
        contact = await contacts.resolve("B")
        assert contact.email == "b@example.com"
        assert contact.display_name == "Bea"

    @pytest.mark.asyncio
    async def test_identity_fills_gaps(self, contacts, profile_store, identity_provider):
        """Test identity fills missing profile fields."""
        profile_store.put_profile("B", UserProfile(display_name="Bea"))
        identity_provider.put_user(IdentityRecord(uid="B", email="b@example.com"))
        contact = await contacts.resolve("B")
        assert contact.email == "b@example.com"
        assert contact.display_name == "Bea"

    @pytest.mark.asyncio
    async def test_unknown_user(self, contacts):
        """Test contact for an unknown user."""
        contact = await contacts.resolve("nobody")
        assert contact.email is None
        assert contact.display_name is None

    @pytest.mark.asyncio
    async def test_lookup_errors_degrade(self):
        """Test lookup errors degrade to empty contact."""
        profiles = AsyncMock()
        profiles.get_profile.side_effect = RuntimeError("down")
        identities = AsyncMock()
        identities.get_user.side_effect = RuntimeError("down")
        contact = await ContactResolver(profiles, identities).resolve("B")
        assert contact.email is None

    @pytest.mark.asyncio
    async def test_results_cached(self):
        """Test contact results are cached."""
        profiles = AsyncMock()
        profiles.get_profile.return_value = UserProfile(email="b@example.com", display_name="Bea")
        resolver = ContactResolver(profiles, cache=TTLCache(ttl_seconds=60))
        await resolver.resolve("B")
        await resolver.resolve("B")
        profiles.get_profile.assert_awaited_once_with("B")
