"""Service entry point.

The chat transport, the per-channel chat context and the pre-ad notification
sink belong to the embedding bot; this module wires everything else around
them and runs until cancelled.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from chatsage.core.ad_schedule import NotifyCallback
from chatsage.core.bot import Bot
from chatsage.core.config import BotSettings, get_settings
from chatsage.core.connection import ChannelContext, ChatConnection
from chatsage.core.credentials import RotationAlert
from chatsage.core.database import setup_registry_schema
from chatsage.core.health_server import HealthCheckServer
from chatsage.core.logging import setup_logging
from chatsage.shared.database import DatabaseManager, PoolConfig
from chatsage.shared.secrets import SecretStore

LOGGER: logging.Logger = logging.getLogger("Bot")


async def run_service(
    connection: ChatConnection,
    context: ChannelContext,
    notify: NotifyCallback,
    *,
    settings: BotSettings | None = None,
    on_rotation_failure: RotationAlert | None = None,
) -> None:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    database = DatabaseManager(settings.database_url, PoolConfig.preset("bot"))
    await database.connect()

    http = httpx.AsyncClient()
    secrets = SecretStore()
    health: HealthCheckServer | None = None

    try:
        async with database.pool.acquire() as conn:
            await setup_registry_schema(conn)

        async with Bot(
            settings=settings,
            pool=database.pool,
            connection=connection,
            context=context,
            notify=notify,
            http=http,
            secrets=secrets,
            on_rotation_failure=on_rotation_failure,
        ) as bot:
            health = HealthCheckServer(bot, database, port=settings.health_port)
            await health.start()
            await asyncio.Event().wait()
    finally:
        LOGGER.info("Shutting down channel-state core...")
        if health is not None:
            await health.stop()
        await secrets.close()
        await http.aclose()
        await database.disconnect()
