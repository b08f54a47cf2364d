"""Interfaces of the collaborators this core drives but does not implement."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Protocol


class ReadyState(str, Enum):
    OPEN = "OPEN"
    CONNECTING = "CONNECTING"
    CLOSED = "CLOSED"


class ChatConnection(Protocol):
    """Streaming-chat transport (IRC-style join/part)."""

    def ready_state(self) -> ReadyState | str: ...

    def get_channels(self) -> Iterable[str]: ...

    async def join(self, channel_name: str) -> None: ...

    async def part(self, channel_name: str) -> None: ...

    async def connect(self) -> None: ...


class ChannelContext(Protocol):
    """Read-only view of per-channel stream state."""

    def known_channels(self) -> Iterable[str]: ...

    def is_live(self, channel_name: str) -> bool: ...


def state_of(connection: ChatConnection | None) -> ReadyState:
    """Normalize whatever the transport reports; unknown means CLOSED."""
    if connection is None:
        return ReadyState.CLOSED
    raw = connection.ready_state()
    try:
        return ReadyState(raw.value if isinstance(raw, ReadyState) else str(raw).upper())
    except ValueError:
        return ReadyState.CLOSED
