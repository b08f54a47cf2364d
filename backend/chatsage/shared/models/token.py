"""In-memory OAuth access token records. Never persisted."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class AppToken:
    """Application-scope bearer token (client-credentials grant)."""

    value: str
    expires_at: float

    def is_valid(self, now: float, buffer: float) -> bool:
        return now < self.expires_at - buffer


@dataclass
class UserToken:
    """Broadcaster-scope bearer token (refresh-token grant)."""

    value: str
    broadcaster_id: str
    expires_at: float

    def is_valid(self, now: float, buffer: float) -> bool:
        return now < self.expires_at - buffer
