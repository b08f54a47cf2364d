"""Data models for the managed_channels registry and its change stream."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

CHANGE_ADDED = "added"
CHANGE_MODIFIED = "modified"
CHANGE_REMOVED = "removed"
CHANGE_TYPES = (CHANGE_ADDED, CHANGE_MODIFIED, CHANGE_REMOVED)


def normalize_channel_name(name: str) -> str:
    """Lower-case and strip the leading ``#`` IRC marker."""
    return (name or "").strip().lower().lstrip("#")


@dataclass
class ManagedChannel:
    """One registry record, keyed by normalized channel name."""

    channel_name: str
    is_active: bool = False
    display_name: str | None = None
    email: str | None = None
    twitch_user_id: str | None = None
    refresh_token_secret_path: str | None = None
    ad_notifications_enabled: bool = False
    needs_reauth: bool = False
    last_token_error: str | None = None
    last_token_error_at: datetime | None = None
    added_at: datetime | None = None
    last_status_change: datetime | None = None

    def __post_init__(self) -> None:
        self.channel_name = normalize_channel_name(self.channel_name)

    @property
    def has_identity(self) -> bool:
        return bool(self.twitch_user_id)

    @property
    def can_refresh(self) -> bool:
        """True when a user-token refresh may be attempted."""
        return bool(self.twitch_user_id and self.refresh_token_secret_path) and not self.needs_reauth

    @property
    def ads_ready(self) -> bool:
        """Active, opted into ad notifications, and not degraded."""
        return self.is_active and self.ad_notifications_enabled and self.can_refresh

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> ManagedChannel:
        """Build from a DB row or a NOTIFY ``doc`` payload (unknown keys ignored)."""
        return cls(
            channel_name=record["channel_name"],
            is_active=bool(record.get("is_active")),
            display_name=record.get("display_name"),
            email=record.get("email"),
            twitch_user_id=record.get("twitch_user_id"),
            refresh_token_secret_path=record.get("refresh_token_secret_path"),
            ad_notifications_enabled=bool(record.get("ad_notifications_enabled")),
            needs_reauth=bool(record.get("needs_reauth")),
            last_token_error=record.get("last_token_error"),
            last_token_error_at=_as_datetime(record.get("last_token_error_at")),
            added_at=_as_datetime(record.get("added_at")),
            last_status_change=_as_datetime(record.get("last_status_change")),
        )


@dataclass
class ChannelChange:
    """One realtime registry change notification."""

    type: str
    channel: ManagedChannel


def _as_datetime(value: Any) -> datetime | None:
    # NOTIFY payloads carry ISO strings; asyncpg rows carry datetimes
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None
