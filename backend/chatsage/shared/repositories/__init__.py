"""Shared repository layer for ChatSage services."""

from .channel import ChannelRepository

__all__ = [
    "ChannelRepository",
]
