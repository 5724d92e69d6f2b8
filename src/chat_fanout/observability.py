"""
Chat Fanout - Structured Logging Setup.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import structlog

from .config import Environment, ServiceConfiguration

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def _add_service_context(service_name: str, environment: str) -> Callable[..., Any]:
    """Processor to add service context to logs."""
    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict["service"] = service_name
        event_dict["environment"] = environment
        return event_dict
    return processor


def configure_logging(settings: ServiceConfiguration) -> None:
    """Configure structlog for the fan-out service."""
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_service_context(settings.name, settings.env.value),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.env == Environment.DEVELOPMENT and settings.log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.extend([
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ])
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(settings.log_level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_invocation(message_id: str, origin: str) -> None:
    """Bind per-invocation context for every log line of a fan-out."""
    structlog.contextvars.bind_contextvars(message_id=message_id, origin=origin)


def clear_invocation() -> None:
    structlog.contextvars.unbind_contextvars("message_id", "origin")
