from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Coroutine
from typing import Any

import asyncpg
import httpx

from chatsage.core.ad_schedule import AdBreakScheduler, NotifyCallback
from chatsage.core.channel_sync import ChannelSynchronizer
from chatsage.core.config import REGISTRY_CHANGES_CHANNEL, BotSettings
from chatsage.core.connection import ChannelContext, ChatConnection, state_of
from chatsage.core.credentials import CredentialManager, RotationAlert
from chatsage.core.pg_listener import pg_listen
from chatsage.core.subscriptions import SubscriptionManager
from chatsage.shared.repositories.channel import ChannelRepository
from chatsage.shared.secrets import SecretStore

LOGGER: logging.Logger = logging.getLogger("Bot")

POOL_HEARTBEAT_INTERVAL = 25


class Bot:
    """Owns every cache, timer and background task of the channel-state core."""

    def __init__(
        self,
        *,
        settings: BotSettings,
        pool: asyncpg.Pool,
        connection: ChatConnection,
        context: ChannelContext,
        notify: NotifyCallback,
        http: httpx.AsyncClient,
        secrets: SecretStore | None = None,
        on_rotation_failure: RotationAlert | None = None,
    ) -> None:
        self.settings = settings
        self.pool = pool
        self.connection = connection
        self.context = context
        self.http = http
        self.secrets = secrets or SecretStore()

        self.channels = ChannelRepository(pool)
        self.credentials = CredentialManager(
            settings.twitch_client_id,
            settings.twitch_client_secret,
            self.channels,
            self.secrets,
            http,
            on_rotation_failure=on_rotation_failure,
        )
        self.subscriptions = SubscriptionManager(
            self.credentials,
            http,
            callback_url=settings.eventsub_callback_url,
            webhook_secret=settings.eventsub_secret,
        )
        self.sync = ChannelSynchronizer(
            self.channels,
            connection,
            context,
            self.credentials,
            self.subscriptions,
            lazy_connect=settings.lazy_connect,
            queue_size=settings.change_queue_size,
        )
        self.ads = AdBreakScheduler(
            self.channels,
            self.credentials,
            context,
            notify,
            http,
            interval=settings.ad_poll_interval_seconds,
        )

        self._tasks: list[asyncio.Task] = []
        self.started_at: float | None = None

    async def __aenter__(self) -> Bot:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @property
    def running(self) -> bool:
        return self.started_at is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        self._tasks.append(asyncio.create_task(coro, name=name))

    async def start(self) -> None:
        if self.running:
            return
        self.started_at = time.time()

        self._spawn(
            pg_listen(
                self.pool,
                REGISTRY_CHANGES_CHANNEL,
                self.sync.on_notification,
                on_reconnect=self._resync_after_gap,
            ),
            "registry-listener",
        )
        self._spawn(self.sync.run_change_worker(), "registry-change-worker")
        self._spawn(self._initial_sync(), "initial-sync")
        if self.settings.sync_interval_seconds > 0:
            self._spawn(self.sync.run_periodic(self.settings.sync_interval_seconds), "periodic-sync")
        self._spawn(self.ads.run(), "ad-schedule")
        self._spawn(self.credentials.run_app_token_refresher(), "app-token-refresh")
        self._spawn(self._pool_heartbeat_loop(), "pool-heartbeat")
        LOGGER.info(f"Channel-state core started with {len(self._tasks)} background tasks")

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for task, result in zip(self._tasks, results):
            if isinstance(result, Exception):
                LOGGER.warning(f"Task {task.get_name()} ended with {type(result).__name__}: {result}")
        self._tasks.clear()
        self.ads.stop()
        self.started_at = None
        LOGGER.info("Channel-state core stopped")

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _initial_sync(self) -> None:
        try:
            result = await self.sync.sync_all()
            if result is not None:
                LOGGER.info(f"Initial sync: joined {len(result.joined)}, parted {len(result.parted)}")
        except Exception as e:
            LOGGER.exception(f"Initial channel sync failed: {e}")

    async def _resync_after_gap(self) -> None:
        """Notifications sent while LISTEN was down are gone; a full pass converges."""
        LOGGER.info("Registry listener reconnected, running full channel sync")
        await self.sync.sync_all()

    async def _pool_heartbeat_loop(self) -> None:
        """Periodically ping the registry pool to keep the idle connection alive."""
        while True:
            await asyncio.sleep(POOL_HEARTBEAT_INTERVAL)
            try:
                async with self.pool.acquire(timeout=10.0) as conn:
                    await conn.fetchval("SELECT 1")
                LOGGER.debug("Pool heartbeat OK")
            except Exception as e:
                LOGGER.warning(f"Pool heartbeat failed: {type(e).__name__}: {e}")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        last = self.sync.last_result
        return {
            "running": self.running,
            "uptime_seconds": int(time.time() - self.started_at) if self.started_at else 0,
            "connection_state": state_of(self.connection).value,
            "joined_channels": sorted(self.sync.joined_channels()),
            "syncing": self.sync.is_syncing,
            "last_sync": {"joined": last.joined, "parted": last.parted} if last else None,
            "pending_changes": self.sync.pending_changes,
            "dropped_changes": self.sync.dropped_changes,
            "pending_ad_timers": self.ads.pending_channels(),
            "app_token": self.credentials.app_token_state.value,
        }
