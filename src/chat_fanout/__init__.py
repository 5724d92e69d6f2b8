"""
Chat Fanout - notification fan-out and delivery for chat messages.

Given a newly created channel, thread or direct message, decides who is
notified and how (activity feed, push, email), and delivers it.
"""
from .config import FanoutServiceConfig, get_config, reset_config
from .exceptions import (
    ChannelError, ConfigurationError, DeliveryError, FanoutError, LookupFailure,
)

__version__ = "1.0.0"

__all__ = [
    "FanoutServiceConfig",
    "get_config",
    "reset_config",
    "ChannelError",
    "ConfigurationError",
    "DeliveryError",
    "FanoutError",
    "LookupFailure",
]
