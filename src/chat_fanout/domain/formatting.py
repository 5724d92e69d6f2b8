"""
Chat Fanout - Notification Copy.

Human-facing text for pushes, activity entries and emails: previews,
titles, mention labels, deep links and the email templates.

Architecture Layer: Domain
"""
from __future__ import annotations

import re
from urllib.parse import urlencode, urljoin

from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateError
from pydantic import BaseModel
import structlog

from .entities import MentionKind, Message, MessageContext
from .mentions import resolve_author_id, resolve_dm_participants

logger = structlog.get_logger(__name__)

DEFAULT_PREVIEW = "New message"
DEFAULT_COLLAPSE_KEY = "chat-message"
MAX_APNS_COLLAPSE_ID = 64

_TYPE_PLACEHOLDERS = {
    "gif": "Shared a GIF",
    "file": "Shared a file",
    "form": "Shared a form",
    "poll": "Shared a poll",
}
_WHITESPACE = re.compile(r"\s+")


def truncate(text: str | None, max_length: int = 120) -> str:
    """Collapse whitespace and cap at ``max_length`` characters, ellipsis included."""
    if not text:
        return DEFAULT_PREVIEW
    cleaned = _WHITESPACE.sub(" ", text).strip()
    if not cleaned:
        return DEFAULT_PREVIEW
    if len(cleaned) <= max_length:
        return cleaned
    return f"{cleaned[:max_length - 1]}…"


def preview_from_message(message: Message, max_length: int = 120) -> str:
    for text in (message.plain_text_content, message.text, message.content):
        if text and text.strip():
            return truncate(text, max_length)
    return _TYPE_PLACEHOLDERS.get(message.type or "", DEFAULT_PREVIEW)


def pick_author_name(message: Message) -> str:
    author_display = message.author.display_name if message.author else None
    for name in (message.display_name, author_display):
        if name and name.strip():
            return name.strip()
    return resolve_author_id(message) or "Someone"


def mention_label(kind: MentionKind, role_name: str | None = None) -> str:
    """Body prefix for a mention kind. Plain channel messages carry none."""
    if kind == MentionKind.DM:
        return "[DM]"
    if kind == MentionKind.DIRECT:
        return "[mention]"
    if kind == MentionKind.ROLE:
        return f"[@{role_name or 'role'}]"
    if kind == MentionKind.HERE:
        return "[here]"
    if kind == MentionKind.EVERYONE:
        return "[everyone]"
    return ""


def build_body(kind: MentionKind, author_name: str, preview: str,
               role_name: str | None = None) -> str:
    label = mention_label(kind, role_name)
    return f"{label} {author_name}: {preview}" if label else f"{author_name}: {preview}"


def _channel_names(context: MessageContext) -> tuple[str, str]:
    server_name = (context.server.name if context.server else None) or "Server"
    channel = context.channel.name if context.channel else None
    return server_name, f"#{channel}" if channel else "#channel"


def describe_title(context: MessageContext) -> str:
    if context.is_dm:
        return "Direct message"
    server_name, channel_name = _channel_names(context)
    if context.thread_id:
        thread_name = (context.thread.name if context.thread else None) or "Thread"
        return f"[{server_name}] {channel_name} • {thread_name}"
    return f"[{server_name}] {channel_name}"


def describe_dm_title(context: MessageContext, sender: str) -> str:
    """Group DMs name the conversation; 1:1 DMs just show the sender."""
    if len(resolve_dm_participants(context.dm)) > 2:
        dm = context.dm
        name = (dm.name or dm.title) if dm else None
        return f"{sender} in {name or 'Group DM'}"
    return sender


def build_title(context: MessageContext, author_name: str) -> str:
    return describe_dm_title(context, author_name) if context.is_dm else describe_title(context)


def describe_location(context: MessageContext) -> str:
    if context.is_dm:
        return "Direct messages"
    server_name, channel_name = _channel_names(context)
    if context.thread_id:
        thread_name = (context.thread.name if context.thread else None) or "Thread"
        return f"{server_name} {channel_name} > {thread_name}"
    return f"{server_name} {channel_name}"


def build_deep_link(context: MessageContext) -> str:
    """Relative in-app path that opens the message."""
    if context.dm_id:
        params = {"origin": "push"}
        if context.message_id:
            params["messageId"] = context.message_id
        return f"/dms/{context.dm_id}?{urlencode(params)}"
    if context.server_id and context.channel_id:
        params = {"origin": "push", "channel": context.channel_id}
        if context.thread_id:
            params["thread"] = context.thread_id
        if context.message_id:
            params["messageId"] = context.message_id
        return f"/servers/{context.server_id}?{urlencode(params)}"
    return "/?origin=push"


def absolute_url(path: str, base_url: str) -> str:
    return urljoin(f"{base_url.rstrip('/')}/", path.lstrip("/"))


def collapse_key(context: MessageContext) -> str:
    """Grouping key so repeated notifications for a conversation coalesce."""
    if context.dm_id:
        key = f"dm-{context.dm_id}"
    elif context.server_id and context.channel_id:
        key = f"channel-{context.server_id}-{context.channel_id}"
    else:
        key = DEFAULT_COLLAPSE_KEY
    return key[:MAX_APNS_COLLAPSE_ID]


class EmailCopy(BaseModel):
    subject: str
    text: str
    html: str


_SUBJECT_TEMPLATE = "[{{ brand }}] {{ subject_context }}"

_TEXT_TEMPLATE = """{{ heading }}

{{ preview }}

Open {{ brand }}: {{ open_url }}

Manage email alerts in Settings → Notifications."""

_HTML_TEMPLATE = """<div style="font-family:Arial,sans-serif;line-height:1.5;color:#0f172a;max-width:600px;">
  <p>{{ heading }}</p>
  <div style="margin:12px 0;padding:12px;border-radius:10px;background:#0f172a;color:#e2e8f0;">
    {{ preview }}
  </div>
  <p><a href="{{ open_url }}" style="color:#0ea5e9;text-decoration:none;font-weight:600;" target="_blank" rel="noopener noreferrer">Open {{ brand }}</a></p>
  <p style="font-size:12px;color:#64748b;">You can change these emails in Settings → Notifications.</p>
</div>"""


class EmailCopyRenderer:
    """
    Jinja2 renderer for notification emails.

    Plain text and subject are rendered without escaping; the HTML body is
    autoescaped so message previews cannot inject markup.
    """

    def __init__(self, brand_name: str, app_base_url: str) -> None:
        self._brand = brand_name
        self._base_url = app_base_url
        self._text_env = Environment(loader=BaseLoader(), autoescape=False, undefined=StrictUndefined)
        self._html_env = Environment(loader=BaseLoader(), autoescape=True, undefined=StrictUndefined)
        self._subject = self._text_env.from_string(_SUBJECT_TEMPLATE)
        self._text = self._text_env.from_string(_TEXT_TEMPLATE)
        self._html = self._html_env.from_string(_HTML_TEMPLATE)

    def render(self, kind: MentionKind, context: MessageContext, author_name: str,
               preview: str, deep_link: str) -> EmailCopy:
        location = describe_location(context)
        if kind == MentionKind.DM:
            subject_context = f"New direct message from {author_name}"
            heading = f"{author_name} sent you a direct message."
        elif kind == MentionKind.CHANNEL:
            subject_context = f"New message in {location}"
            heading = f"{author_name} sent a new message in {location}."
        else:
            subject_context = f"You were mentioned in {location}"
            heading = f"{author_name} mentioned you in {location}."

        variables = {
            "brand": self._brand,
            "subject_context": subject_context,
            "heading": heading,
            "preview": preview,
            "open_url": absolute_url(deep_link, self._base_url),
        }
        try:
            return EmailCopy(
                subject=self._subject.render(**variables),
                text=self._text.render(**variables),
                html=self._html.render(**variables),
            )
        except TemplateError as e:
            logger.error("email_copy_render_failed", mention_kind=kind.value, error=str(e))
            raise
