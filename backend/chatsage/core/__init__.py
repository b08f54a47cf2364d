"""Core modules for the ChatSage channel-state service."""

from .ad_schedule import AdBreakScheduler, parse_next_ad_at
from .bot import Bot
from .channel_sync import ChannelSynchronizer, SyncResult
from .config import BROADCASTER_SCOPES, REGISTRY_CHANGES_CHANNEL, BotSettings, get_settings
from .connection import ChannelContext, ChatConnection, ReadyState
from .credentials import CredentialManager, TokenState
from .health_server import HealthCheckServer
from .logging import setup_logging
from .pg_listener import pg_listen
from .subscriptions import SubscriptionManager, get_channel_subscriptions

__all__ = [
    # Settings
    "BotSettings",
    "get_settings",
    "setup_logging",
    # Constants
    "BROADCASTER_SCOPES",
    "REGISTRY_CHANGES_CHANNEL",
    # Collaborators
    "ChatConnection",
    "ChannelContext",
    "ReadyState",
    # Components
    "AdBreakScheduler",
    "Bot",
    "ChannelSynchronizer",
    "CredentialManager",
    "HealthCheckServer",
    "SubscriptionManager",
    "SyncResult",
    "TokenState",
    # Helpers
    "get_channel_subscriptions",
    "parse_next_ad_at",
    "pg_listen",
]
