"""Shared data models for ChatSage services."""

from .channel import ChannelChange, ManagedChannel, normalize_channel_name
from .subscription import BatchResult, EnsureResult, Subscription
from .token import AppToken, UserToken

__all__ = [
    "AppToken",
    "BatchResult",
    "ChannelChange",
    "EnsureResult",
    "ManagedChannel",
    "Subscription",
    "UserToken",
    "normalize_channel_name",
]
