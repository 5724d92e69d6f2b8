"""
Chat Fanout - Trigger Events and Results.

Document-created events emitted by the chat layer, and the result record
every fan-out invocation produces.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .domain.dispatcher import RecipientOutcome
from .domain.entities import OriginType
from .domain.gate import Suppression


class _TriggerEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    message_id: str | None = None
    message: dict[str, Any] | None = Field(default=None, description="Inline message document")
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChannelMessageCreated(_TriggerEvent):
    """A message was written to a server channel."""
    server_id: str | None = None
    channel_id: str | None = None


class ThreadMessageCreated(ChannelMessageCreated):
    """A message was written to a thread inside a channel."""
    thread_id: str | None = None


class DmMessageCreated(_TriggerEvent):
    """A message was written to a direct-message conversation."""
    dm_id: str | None = None


class FanoutStatus(str, Enum):
    NO_OP = "no_op"
    ATTEMPTED = "attempted"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class FanoutResult(BaseModel):
    """Terminal outcome of one invocation. Never carries pending state."""
    origin: OriginType
    message_id: str | None = None
    status: FanoutStatus
    reason: str | None = None
    candidate_count: int = 0
    recipient_count: int = 0
    suppressed: list[Suppression] = Field(default_factory=list)
    outcomes: list[RecipientOutcome] = Field(default_factory=list)
    processing_time_ms: float = 0.0

    @classmethod
    def no_op(cls, origin: OriginType, message_id: str | None, reason: str) -> FanoutResult:
        return cls(origin=origin, message_id=message_id, status=FanoutStatus.NO_OP, reason=reason)
