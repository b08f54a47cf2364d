"""Shared fixtures and fakes for the ChatSage test suite."""

from __future__ import annotations

from collections.abc import Callable
from unittest.mock import AsyncMock

import httpx
import pytest

from chatsage.core.config import BotSettings
from chatsage.core.connection import ReadyState
from chatsage.shared.errors import TransientNetworkError
from chatsage.shared.models.channel import ManagedChannel, normalize_channel_name

SECRET_PATH = "projects/p/secrets/alpha-refresh"


class FakeRepository:
    """In-memory stand-in for ChannelRepository."""

    def __init__(self, channels: list[ManagedChannel] | None = None):
        self.channels = {ch.channel_name: ch for ch in channels or []}
        self.scan_error: Exception | None = None
        self.invalidated: list[str] = []
        self.token_errors: list[tuple[str, str]] = []
        self.get_calls = 0

    def put(self, channel: ManagedChannel) -> None:
        self.channels[channel.channel_name] = channel

    async def get_channel(self, channel_name: str) -> ManagedChannel | None:
        self.get_calls += 1
        return self.channels.get(normalize_channel_name(channel_name))

    async def list_all_channels(self) -> list[ManagedChannel]:
        if self.scan_error is not None:
            raise self.scan_error
        return list(self.channels.values())

    async def list_active_channels(self) -> list[ManagedChannel]:
        return [ch for ch in await self.list_all_channels() if ch.is_active]

    async def mark_needs_reauth(self, channel_name: str, error: str) -> None:
        channel = self.channels[normalize_channel_name(channel_name)]
        channel.needs_reauth = True
        channel.last_token_error = error

    async def record_token_error(self, channel_name: str, error: str) -> None:
        self.token_errors.append((normalize_channel_name(channel_name), error))

    def invalidate(self, channel_name: str) -> None:
        self.invalidated.append(normalize_channel_name(channel_name))

    def prime(self, channels: list[ManagedChannel]) -> int:
        return len(channels)


class FakeSecretStore:
    def __init__(self, values: dict[str, str] | None = None):
        self.values = dict(values or {})
        self.set_calls: list[tuple[str, str]] = []
        self.invalidated: list[str] = []
        self.fail_set = False

    async def get(self, path: str) -> str:
        return self.values[path]

    async def set(self, path: str, value: str) -> None:
        self.set_calls.append((path, value))
        if self.fail_set:
            raise TransientNetworkError("secret store unavailable")
        self.values[path] = value

    def invalidate(self, path: str) -> None:
        self.invalidated.append(path)

    async def close(self) -> None:
        pass


class FakeConnection:
    """Chat transport that records join/part/connect."""

    def __init__(self, state: ReadyState | str = ReadyState.OPEN, channels: list[str] | None = None):
        self.state = state
        self.channels = set(channels or [])
        self.join = AsyncMock(side_effect=self._join)
        self.part = AsyncMock(side_effect=self._part)
        self.connect = AsyncMock()

    def ready_state(self):
        return self.state

    def get_channels(self):
        return [f"#{name}" for name in self.channels]

    async def _join(self, name: str) -> None:
        self.channels.add(name)

    async def _part(self, name: str) -> None:
        self.channels.discard(name)


class FakeContext:
    def __init__(self, live: set[str] | None = None, known: list[str] | None = None):
        self.live = set(live or [])
        self.known = list(known if known is not None else sorted(self.live))

    def known_channels(self):
        return self.known

    def is_live(self, channel_name: str) -> bool:
        return channel_name in self.live


class Clock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_channel(name: str = "alpha", **overrides) -> ManagedChannel:
    fields = {
        "channel_name": name,
        "is_active": True,
        "twitch_user_id": "1001",
        "refresh_token_secret_path": SECRET_PATH,
    }
    fields.update(overrides)
    return ManagedChannel(**fields)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_http() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Build an AsyncClient whose traffic is answered by *handler*."""

    def factory(handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture
def settings():
    return BotSettings(
        _env_file=None,
        twitch_client_id="cid",
        twitch_client_secret="csecret",
        database_url="postgresql://user:pw@localhost:5432/chatsage",
        public_url="https://bot.example.com/",
        eventsub_secret="webhook-secret-123",
    )
