"""
Unit tests for notification copy: previews, titles, labels and links.
"""
import pytest

from chat_fanout.domain.entities import (
    ChannelDoc, DmDoc, MentionKind, Message, MessageAuthor, MessageContext, OriginType,
    ServerDoc, ThreadDoc,
)
from chat_fanout.domain.formatting import (
    EmailCopyRenderer, absolute_url, build_body, build_deep_link, build_title, collapse_key,
    describe_location, mention_label, pick_author_name, preview_from_message, truncate,
)


def _channel_context(thread=False):
    return MessageContext(
        origin=OriginType.THREAD if thread else OriginType.CHANNEL,
        message_id="m1", author_id="A", server_id="s1", channel_id="c1",
        thread_id="t1" if thread else None,
        server=ServerDoc(name="Acme"), channel=ChannelDoc(name="general"),
        thread=ThreadDoc(name="Launch") if thread else None,
    )


def _dm_context(participants):
    return MessageContext(origin=OriginType.DM, message_id="m1", author_id="A", dm_id="dm1",
                          dm=DmDoc(participants=participants, name="Crew"))


class TestPreview:
    """Tests for preview text."""

    def test_collapses_whitespace(self):
        """Test preview collapses whitespace."""
        assert truncate("  hello \n\n world  ") == "hello world"

    def test_truncates_with_ellipsis(self):
        """Test preview truncation with ellipsis."""
        result = truncate("x" * 200, 120)
        assert len(result) == 120
        assert result.endswith("…")

    def test_source_order(self):
        """Test preview source order."""
        message = Message(text="text", content="content", plain_text_content="plain")
        assert preview_from_message(message) == "plain"
        assert preview_from_message(Message(content="content")) == "content"

    @pytest.mark.parametrize("kind,expected", [
        ("gif", "Shared a GIF"),
        ("file", "Shared a file"),
        ("form", "Shared a form"),
        ("poll", "Shared a poll"),
        ("sticker", "New message"),
        (None, "New message"),
    ])
    def test_type_placeholders(self, kind, expected):
        """Test placeholders for attachment-only messages."""
        assert preview_from_message(Message(type=kind)) == expected


class TestAuthorName:
    def test_fallback_chain(self):
        """Test author name fallback chain."""
        assert pick_author_name(Message(display_name="Alice", author_id="A")) == "Alice"
        assert pick_author_name(Message(author=MessageAuthor(display_name="Al"), author_id="A")) == "Al"
        assert pick_author_name(Message(author_id="A")) == "A"
        assert pick_author_name(Message()) == "Someone"


class TestLabelsAndBody:
    @pytest.mark.parametrize("kind,label", [
        (MentionKind.DM, "[DM]"),
        (MentionKind.DIRECT, "[mention]"),
        (MentionKind.HERE, "[here]"),
        (MentionKind.EVERYONE, "[everyone]"),
        (MentionKind.CHANNEL, ""),
    ])
    def test_labels(self, kind, label):
        """Test mention labels."""
        assert mention_label(kind) == label

    def test_role_label_uses_name(self):
        """Test role label uses the role name."""
        assert mention_label(MentionKind.ROLE, "engineering") == "[@engineering]"
        assert mention_label(MentionKind.ROLE) == "[@role]"

    def test_body_with_and_without_label(self):
        """Test push body with and without a label."""
        assert build_body(MentionKind.HERE, "Alice", "hi") == "[here] Alice: hi"
        assert build_body(MentionKind.CHANNEL, "Alice", "hi") == "Alice: hi"


class TestTitles:
    def test_channel_title(self):
        """Test channel message title."""
        assert build_title(_channel_context(), "Alice") == "[Acme] #general"

    def test_thread_title(self):
        """Test thread message title."""
        assert build_title(_channel_context(thread=True), "Alice") == "[Acme] #general • Launch"

    def test_one_to_one_dm_title(self):
        """Test one-to-one DM title."""
        assert build_title(_dm_context(["A", "B"]), "Alice") == "Alice"

    def test_group_dm_title(self):
        """Test group DM title."""
        assert build_title(_dm_context(["A", "B", "C"]), "Alice") == "Alice in Crew"

    def test_location(self):
        """Test location text."""
        assert describe_location(_channel_context(thread=True)) == "Acme #general > Launch"
        assert describe_location(_dm_context(["A", "B"])) == "Direct messages"


class TestLinks:
    def test_channel_deep_link(self):
        """Test channel deep link."""
        assert build_deep_link(_channel_context()) == \
            "/servers/s1?origin=push&channel=c1&messageId=m1"

    def test_thread_deep_link(self):
        """Test thread deep link."""
        assert build_deep_link(_channel_context(thread=True)) == \
            "/servers/s1?origin=push&channel=c1&thread=t1&messageId=m1"

    def test_dm_deep_link(self):
        """Test DM deep link."""
        assert build_deep_link(_dm_context(["A", "B"])) == "/dms/dm1?origin=push&messageId=m1"

    def test_absolute_url(self):
        """Test joining paths onto the base URL."""
        assert absolute_url("/dms/dm1?origin=push", "https://chat.example.com/") == \
            "https://chat.example.com/dms/dm1?origin=push"

    def test_collapse_keys(self):
        """Test collapse keys per origin."""
        assert collapse_key(_channel_context()) == "channel-s1-c1"
        assert collapse_key(_dm_context(["A", "B"])) == "dm-dm1"


class TestEmailCopy:
    """Tests for rendered email copy."""

    @pytest.fixture
    def renderer(self):
        return EmailCopyRenderer("Chat", "https://chat.example.com")

    def test_dm_subject(self, renderer):
        """Test DM email subject."""
        copy = renderer.render(MentionKind.DM, _dm_context(["A", "B"]), "Alice", "hi", "/dms/dm1")
        assert copy.subject == "[Chat] New direct message from Alice"
        assert "Alice sent you a direct message." in copy.text
        assert "https://chat.example.com/dms/dm1" in copy.text

    def test_mention_and_channel_subjects(self, renderer):
        """Test mention and channel email subjects."""
        context = _channel_context()
        assert renderer.render(MentionKind.ROLE, context, "Alice", "hi", "/").subject == \
            "[Chat] You were mentioned in Acme #general"
        assert renderer.render(MentionKind.CHANNEL, context, "Alice", "hi", "/").subject == \
            "[Chat] New message in Acme #general"

    def test_html_escapes_preview_but_text_does_not(self, renderer):
        """Test HTML escaping in email copy."""
        copy = renderer.render(MentionKind.DIRECT, _channel_context(), "Alice", "<b>x</b> & y", "/")
        assert "&lt;b&gt;x&lt;/b&gt; &amp; y" in copy.html
        assert "<b>x</b> & y" in copy.text
