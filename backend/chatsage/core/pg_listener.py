"""PostgreSQL LISTEN/NOTIFY loop with keepalive and auto-reconnect."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import asyncpg

LOGGER = logging.getLogger("PgListener")

NotifyHandler = Callable[[Any, int, str, str], Any]


async def _drop_connection(
    pool: asyncpg.Pool, connection: asyncpg.Connection, channel: str, handler: NotifyHandler
) -> None:
    try:
        await connection.remove_listener(channel, handler)
    except Exception as e:
        LOGGER.debug(f"remove_listener('{channel}') failed: {e}")
    try:
        await pool.release(connection)
    except Exception:
        connection.terminate()


async def pg_listen(
    pool: asyncpg.Pool,
    channel: str,
    handler: NotifyHandler,
    *,
    on_reconnect: Callable[[], Awaitable[None]] | None = None,
    keepalive_interval: int = 30,
    reconnect_delay: int = 10,
) -> None:
    """Listen on *channel* until cancelled.

    *handler* is asyncpg's ``(connection, pid, channel, payload)`` callback and
    must not block. Notifications sent while the listener was down are lost,
    so *on_reconnect* runs after every re-established LISTEN (not the first).
    """
    first = True
    while True:
        connection: asyncpg.Connection | None = None
        try:
            connection = await pool.acquire()
            await connection.add_listener(channel, handler)
            LOGGER.info(f"LISTEN active on '{channel}'")

            if not first and on_reconnect is not None:
                try:
                    await on_reconnect()
                except Exception as e:
                    LOGGER.error(f"Reconnect hook for '{channel}' failed: {e}")
            first = False

            while True:
                await asyncio.sleep(keepalive_interval)
                await connection.execute("SELECT 1")

        except asyncio.CancelledError:
            LOGGER.info(f"LISTEN '{channel}' shutting down")
            if connection is not None:
                await _drop_connection(pool, connection, channel, handler)
            raise
        except Exception as e:
            LOGGER.error(f"LISTEN '{channel}' failed: {type(e).__name__}: {e}")
            if connection is not None:
                await _drop_connection(pool, connection, channel, handler)
            LOGGER.warning(f"Reconnecting LISTEN '{channel}' in {reconnect_delay}s...")
            await asyncio.sleep(reconnect_delay)
