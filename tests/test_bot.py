"""Tests for the orchestrator and its health endpoints."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from aiohttp.test_utils import make_mocked_request

from chatsage.core import bot as bot_module
from chatsage.core.bot import Bot
from chatsage.core.channel_sync import SyncResult
from chatsage.core.health_server import HealthCheckServer

from conftest import FakeConnection, FakeContext, FakeSecretStore


@pytest.fixture
def listen_calls(monkeypatch):
    calls = []

    async def fake_listen(pool, channel, handler, *, on_reconnect=None, **kwargs):
        calls.append((channel, handler, on_reconnect))
        await asyncio.Event().wait()

    monkeypatch.setattr(bot_module, "pg_listen", fake_listen)
    return calls


def _bot(settings):
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    bot = Bot(
        settings=settings,
        pool=MagicMock(),
        connection=FakeConnection(channels=["alpha"]),
        context=FakeContext(),
        notify=AsyncMock(),
        http=http,
        secrets=FakeSecretStore(),
    )
    bot.sync.sync_all = AsyncMock(return_value=SyncResult(joined=["alpha"]))
    return bot


@pytest.mark.asyncio
async def test_start_wires_listener_and_close_cancels_tasks(settings, listen_calls):
    bot = _bot(settings)

    async with bot:
        await asyncio.sleep(0)
        assert bot.running
        assert [c[0] for c in listen_calls] == ["managed_channels_changes"]
        assert listen_calls[0][1] == bot.sync.on_notification
        bot.sync.sync_all.assert_awaited_once()
        tasks = list(bot._tasks)

    assert not bot.running
    assert all(t.done() for t in tasks)


@pytest.mark.asyncio
async def test_reconnect_hook_runs_full_sync(settings, listen_calls):
    bot = _bot(settings)

    async with bot:
        await asyncio.sleep(0)
        on_reconnect = listen_calls[0][2]
        await on_reconnect()

    assert bot.sync.sync_all.await_count == 2


@pytest.mark.asyncio
async def test_periodic_sync_only_when_configured(settings, listen_calls):
    bot = _bot(settings)
    async with bot:
        assert "periodic-sync" not in {t.get_name() for t in bot._tasks}

    bot = _bot(settings.model_copy(update={"sync_interval_seconds": 60}))
    async with bot:
        assert "periodic-sync" in {t.get_name() for t in bot._tasks}


@pytest.mark.asyncio
async def test_health_endpoints_report_status(settings, listen_calls):
    bot = _bot(settings)
    database = MagicMock()
    database.check_health = AsyncMock(return_value=True)
    server = HealthCheckServer(bot, database, port=0)

    response = await server.health(make_mocked_request("GET", "/health"))
    assert json.loads(response.body) == {"status": "starting", "ready": False, "registry": True}

    async with bot:
        await asyncio.sleep(0)
        response = await server.status(make_mocked_request("GET", "/status"))
        status = json.loads(response.body)
        database.check_health.return_value = False
        response = await server.health(make_mocked_request("GET", "/health"))
        assert json.loads(response.body)["ready"] is False

    assert status["running"] is True
    assert status["connection_state"] == "OPEN"
    assert status["joined_channels"] == ["alpha"]
    assert status["pending_ad_timers"] == []
    assert status["app_token"] == "absent"

    pong = await server.ping(make_mocked_request("GET", "/ping"))
    assert pong.text == "pong"


@pytest.mark.asyncio
async def test_health_ready_without_registry_probe(settings, listen_calls):
    bot = _bot(settings)
    server = HealthCheckServer(bot, port=0)

    async with bot:
        await asyncio.sleep(0)
        response = await server.health(make_mocked_request("GET", "/health"))

    assert json.loads(response.body) == {"status": "healthy", "ready": True, "registry": None}
