"""
Unit tests for mention extraction and uid normalization.
"""
import pytest

from chat_fanout.domain.entities import DmDoc, MentionEntryKind, Message
from chat_fanout.domain.mentions import (
    EVERYONE_MARKER, HERE_MARKER, extract_mentions, normalize_uid, normalize_uid_list,
    resolve_author_id, resolve_dm_participants, summarize_mentions,
)


class TestNormalizeUid:
    """Tests for uid normalization helpers."""

    def test_trims_strings(self):
        """Test uid trimming."""
        assert normalize_uid("  abc ") == "abc"

    @pytest.mark.parametrize("value", [None, "", "   ", 42, ["a"]])
    def test_rejects_non_strings_and_blanks(self, value):
        """Test non-string and blank uids are rejected."""
        assert normalize_uid(value) is None

    def test_list_drops_blanks_and_duplicates(self):
        """Test uid list drops blanks and duplicates."""
        assert normalize_uid_list(["a", " a", "", None, "b"]) == ["a", "b"]

    def test_list_rejects_non_list(self):
        """Test uid list rejects non-list input."""
        assert normalize_uid_list("a_b") == []


class TestExtractMentions:
    """Tests for the mention extractor."""

    def test_list_form(self):
        """Test mentions stored as a list."""
        message = Message(mentions=[
            {"uid": "B", "handle": "bob"},
            {"uid": "R1", "kind": "role", "handle": "eng"},
            {"uid": EVERYONE_MARKER},
        ])
        entries = extract_mentions(message)
        assert [(e.target_id, e.kind) for e in entries] == [
            ("B", MentionEntryKind.DIRECT),
            ("R1", MentionEntryKind.ROLE),
            (EVERYONE_MARKER, MentionEntryKind.SPECIAL),
        ]

    def test_map_form_uses_keys_as_ids(self):
        """Test mentions stored as a map."""
        message = Message.model_validate({
            "mentionsMap": {"B": {"handle": "bob"}, "R1": {"kind": "role"}},
        })
        entries = extract_mentions(message)
        assert {(e.target_id, e.kind) for e in entries} == {
            ("B", MentionEntryKind.DIRECT),
            ("R1", MentionEntryKind.ROLE),
        }

    def test_list_wins_over_map(self):
        """Test list form wins over map form."""
        message = Message(mentions=[{"uid": "B"}], mentions_map={"C": {}})
        assert [e.target_id for e in extract_mentions(message)] == ["B"]

    def test_empty_list_falls_back_to_map(self):
        """Test empty list falls back to map form."""
        message = Message(mentions=[], mentions_map={"C": {}})
        assert [e.target_id for e in extract_mentions(message)] == ["C"]

    def test_marker_in_handle_is_special(self):
        """Test marker in handle is a special mention."""
        message = Message(mentions=[{"uid": "x", "handle": HERE_MARKER, "kind": "member"}])
        entries = extract_mentions(message)
        assert entries[0].kind == MentionEntryKind.SPECIAL
        assert entries[0].target_id == HERE_MARKER

    @pytest.mark.parametrize("mentions", [None, "garbage", 12, [None, "x", 3, {}], {"a": 1}])
    def test_malformed_input_yields_nothing(self, mentions):
        """Test malformed mentions yield nothing."""
        assert extract_mentions(Message(mentions=mentions)) == []

    def test_summary_groups_entries(self):
        """Test mention summary grouping."""
        message = Message(mentions=[
            {"uid": "B"}, {"uid": "B"}, {"uid": "R1", "kind": "role"},
            {"uid": HERE_MARKER}, {"uid": EVERYONE_MARKER},
        ])
        summary = summarize_mentions(extract_mentions(message))
        assert summary.direct_uids == ["B"]
        assert summary.role_ids == ["R1"]
        assert summary.here is True
        assert summary.everyone is True


class TestDmParticipants:
    """Tests for DM participant resolution across stored shapes."""

    @pytest.mark.parametrize("dm", [
        DmDoc(participants=["A", "B"]),
        DmDoc(participant_uids=["A", "B"]),
        DmDoc(participants_map={"A": True, "B": True, "C": False}),
        DmDoc(key="A_B"),
    ])
    def test_every_representation_resolves_same_participants(self, dm):
        """Test every participant shape resolves the same uids."""
        assert resolve_dm_participants(dm) == ["A", "B"]

    def test_first_non_empty_source_wins(self):
        """Test first non-empty participant source wins."""
        dm = DmDoc(participants=[], participant_uids=["X", "Y"], key="A_B")
        assert resolve_dm_participants(dm) == ["X", "Y"]

    def test_missing_dm(self):
        """Test participants of a missing DM."""
        assert resolve_dm_participants(None) == []


class TestAuthorId:
    def test_prefers_author_id(self):
        """Test author id preferred."""
        assert resolve_author_id(Message(author_id=" A ", uid="B")) == "A"

    def test_falls_back_to_uid(self):
        """Test author falls back to uid."""
        assert resolve_author_id(Message(uid="B")) == "B"
