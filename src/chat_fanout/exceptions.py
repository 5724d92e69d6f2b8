"""
Chat Fanout - Exception Hierarchy.

Structured exceptions for the notification fan-out pipeline. None of these
escape an invocation: lookup failures degrade to defaults and delivery
failures become per-recipient outcome records.
"""
from __future__ import annotations

from typing import Any


class FanoutError(Exception):
    """Base exception for all fan-out errors."""
    error_code: str = "FANOUT_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None,
                 cause: Exception | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"code": self.error_code, "message": self.message,
                                  "details": self.details}
        if self.cause:
            result["cause"] = {"type": type(self.cause).__name__, "message": str(self.cause)}
        return result


class ConfigurationError(FanoutError):
    error_code = "CONFIGURATION_ERROR"


class LookupFailure(FanoutError):
    """Raised when a directory, settings, presence or contact read fails."""
    error_code = "LOOKUP_FAILURE"

    def __init__(self, resource: str, key: str, cause: Exception | None = None) -> None:
        self.resource = resource
        self.key = key
        super().__init__(f"Failed to read {resource} {key}",
                         details={"resource": resource, "key": key}, cause=cause)


class ChannelError(FanoutError):
    """Base exception for delivery channel errors."""
    error_code = "CHANNEL_ERROR"

    def __init__(self, channel: str, message: str) -> None:
        self.channel = channel
        super().__init__(f"[{channel}] {message}", details={"channel": channel})


class DeliveryError(ChannelError):
    """Raised when a push or email send fails for one recipient."""
    error_code = "DELIVERY_ERROR"

    def __init__(self, channel: str, recipient: str, reason: str,
                 status_code: int | None = None) -> None:
        self.recipient = recipient
        self.reason = reason
        self.status_code = status_code
        super().__init__(channel, f"Failed to deliver to {recipient}: {reason}")
