"""PostgreSQL pool lifecycle for the channel registry."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, fields, replace
from typing import Any
from urllib.parse import urlparse

import asyncpg

from chatsage.shared.errors import RegistryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolConfig:
    """Registry pool sizing and connect-retry policy."""

    min_size: int = 1
    max_size: int = 5
    timeout: float = 10.0
    command_timeout: float = 15.0
    max_inactive_connection_lifetime: float = 45.0
    max_retries: int = 3
    retry_delay: float = 3.0

    @classmethod
    def preset(cls, role: str, **overrides) -> PoolConfig:
        """``bot`` keeps a LISTEN connection plus heartbeat; ``cli`` does a few short reads."""
        base = PRESETS.get(role, cls())
        known = {f.name for f in fields(cls)}
        return replace(base, **{k: v for k, v in overrides.items() if k in known})

    def create_pool_kwargs(self, dsn: str) -> dict[str, Any]:
        return {
            "dsn": dsn,
            "min_size": self.min_size,
            "max_size": self.max_size,
            "timeout": self.timeout,
            "command_timeout": self.command_timeout,
            "max_inactive_connection_lifetime": self.max_inactive_connection_lifetime,
        }


PRESETS: dict[str, PoolConfig] = {
    "bot": PoolConfig(min_size=2, max_size=5),
    "cli": PoolConfig(min_size=0, max_size=2, max_retries=1),
}


def describe_dsn(dsn: str) -> str:
    """host:port/dbname, never the credentials."""
    parsed = urlparse(dsn)
    return f"{parsed.hostname or 'unknown'}:{parsed.port or 5432}/{parsed.path.lstrip('/')}"


class DatabaseManager:
    """Owns the asyncpg pool used by the registry, listener and heartbeat."""

    def __init__(self, database_url: str, config: PoolConfig | None = None):
        self.database_url = database_url
        self.config = config or PoolConfig()
        self._pool: asyncpg.Pool | None = None

    async def _open_once(self) -> None:
        pool = await asyncpg.create_pool(**self.config.create_pool_kwargs(self.database_url))
        try:
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except BaseException:
            await pool.close()
            raise
        self._pool = pool

    async def connect(self) -> None:
        """Open and probe the pool; backoff doubles between attempts."""
        if self._pool is not None:
            logger.debug("connect() called with an open pool, ignoring")
            return

        cfg = self.config
        target = describe_dsn(self.database_url)
        delay = cfg.retry_delay
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._open_once()
            except (OSError, asyncpg.PostgresError, asyncio.TimeoutError) as e:
                if attempt >= cfg.max_retries:
                    logger.error(f"Registry database {target} unreachable after {attempt} attempt(s): {e}")
                    raise
                logger.warning(
                    f"Registry database {target} attempt {attempt} failed ({type(e).__name__}), "
                    f"next try in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                delay *= 2
                continue
            logger.info(f"Registry pool open on {target} [{cfg.min_size}..{cfg.max_size}]")
            return

    async def disconnect(self) -> None:
        pool, self._pool = self._pool, None
        if pool is None:
            return
        try:
            await pool.close()
        except Exception as e:
            logger.warning(f"Registry pool did not close cleanly: {e}")
        else:
            logger.info("Registry pool closed")

    async def check_health(self) -> bool:
        if self._pool is None:
            return False
        try:
            async with self._pool.acquire(timeout=2.0) as conn:
                return await conn.fetchval("SELECT 1") == 1
        except (OSError, asyncpg.PostgresError, asyncio.TimeoutError) as e:
            logger.debug(f"Registry health probe failed: {e}")
            return False

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RegistryError("Registry pool is not open")
        return self._pool
