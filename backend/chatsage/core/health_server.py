"""Liveness/status HTTP endpoints for the channel-state core"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from aiohttp import web

if TYPE_CHECKING:
    from chatsage.core.bot import Bot
    from chatsage.shared.database import DatabaseManager

logger = logging.getLogger("Bot.Health")

HEARTBEAT_INTERVAL = 300


class HealthCheckServer:
    """``/health`` is always 200; ``ready`` combines core and registry state."""

    def __init__(
        self,
        bot: Bot | None = None,
        database: DatabaseManager | None = None,
        host: str = "0.0.0.0",
        port: int = 8080,
    ):
        self.bot: Any = bot
        self.database = database
        self.host = host
        self.port = port
        self.started_at = time.time()
        self.app = web.Application()
        self.app.add_routes(
            [
                web.get("/health", self.health),
                web.get("/status", self.status),
                web.get("/ping", self.ping),
            ]
        )
        self.runner: web.AppRunner | None = None
        self._heartbeat_task: asyncio.Task | None = None

    async def _registry_ok(self) -> bool | None:
        if self.database is None:
            return None
        return await self.database.check_health()

    async def health(self, request: web.Request) -> web.Response:
        core_running = self.bot is not None and self.bot.running
        registry = await self._registry_ok()
        ready = core_running and registry is not False
        return web.json_response(
            {"status": "healthy" if ready else "starting", "ready": ready, "registry": registry}
        )

    async def status(self, request: web.Request) -> web.Response:
        body: dict[str, Any] = {"service": "chatsage", "uptime_seconds": int(time.time() - self.started_at)}
        if self.bot is not None:
            body.update(self.bot.status())
        return web.json_response(body)

    async def ping(self, request: web.Request) -> web.Response:
        return web.Response(text="pong")

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(HEARTBEAT_INTERVAL)
            if self.bot is None:
                logger.info("Heartbeat: core not attached")
                continue
            s = self.bot.status()
            logger.info(
                f"Heartbeat: uptime={s['uptime_seconds']}s, connection={s['connection_state']}, "
                f"channels={len(s['joined_channels'])}, ad_timers={len(s['pending_ad_timers'])}, "
                f"dropped_changes={s['dropped_changes']}"
            )

    async def start(self) -> None:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        try:
            await web.TCPSite(self.runner, self.host, self.port).start()
        except OSError as e:
            logger.error(f"Health server could not bind {self.host}:{self.port}: {e}")
            await self.runner.cleanup()
            self.runner = None
            raise
        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        logger.info(f"Health server listening on {self.host}:{self.port} (/health, /status, /ping)")

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        if self.runner is not None:
            try:
                await self.runner.cleanup()
                logger.info("Health server stopped")
            except Exception as e:
                logger.exception(f"Error stopping health server: {e}")
            self.runner = None
