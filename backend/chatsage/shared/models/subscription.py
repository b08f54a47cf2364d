"""Data models for EventSub webhook subscriptions (platform-owned)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

STREAM_ONLINE = "stream.online"
STREAM_OFFLINE = "stream.offline"
AD_BREAK_BEGIN = "channel.ad_break.begin"


@dataclass
class Subscription:
    """A remote EventSub subscription as listed by Helix."""

    id: str
    type: str
    status: str = ""
    condition: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> Subscription:
        return cls(
            id=str(data.get("id", "")),
            type=str(data.get("type", "")),
            status=str(data.get("status", "")),
            condition=dict(data.get("condition") or {}),
            created_at=data.get("created_at"),
        )


@dataclass
class EnsureResult:
    """Outcome of one idempotent subscription create."""

    status: str  # "created" | "exists" | "error"
    subscription: Subscription | None = None
    error: str | None = None
    http_status: int | None = None

    @property
    def ok(self) -> bool:
        return self.status in ("created", "exists")


@dataclass
class BatchResult:
    """Per-channel outcome of an administrative batch operation."""

    successful: list[dict[str, Any]] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0
