"""Repository for the managed_channels registry table."""

from __future__ import annotations

import logging

import asyncpg

from chatsage.shared.cache import AsyncTTLCache, cached
from chatsage.shared.errors import RegistryError
from chatsage.shared.models.channel import ManagedChannel, normalize_channel_name

logger = logging.getLogger(__name__)

_COLUMNS = (
    "channel_name, is_active, display_name, email, twitch_user_id, "
    "refresh_token_secret_path, ad_notifications_enabled, needs_reauth, "
    "last_token_error, last_token_error_at, added_at, last_status_change"
)


class ChannelRepository:
    """SQL access to managed_channels.

    Point reads are cached per instance; change notifications and local
    writes invalidate the affected key. Scans always hit the database.
    """

    def __init__(self, pool: asyncpg.Pool, *, cache_ttl: float = 300.0) -> None:
        self.pool = pool
        self._channel_cache = AsyncTTLCache(maxsize=256, ttl=cache_ttl)

    # ==================== Reads ====================

    @cached("_channel_cache", key_func=lambda channel_name: f"channel:{normalize_channel_name(channel_name)}")
    async def get_channel(self, channel_name: str) -> ManagedChannel | None:
        """Point read by channel name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM managed_channels WHERE channel_name = $1",
                normalize_channel_name(channel_name),
            )
        if not row:
            return None
        return ManagedChannel.from_record(dict(row))

    async def list_active_channels(self) -> list[ManagedChannel]:
        """Filtered scan: ``is_active = TRUE``."""
        return await self._scan(f"SELECT {_COLUMNS} FROM managed_channels WHERE is_active = TRUE")

    async def list_all_channels(self) -> list[ManagedChannel]:
        """Full scan, active and inactive."""
        return await self._scan(f"SELECT {_COLUMNS} FROM managed_channels")

    async def _scan(self, query: str) -> list[ManagedChannel]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query)
        except Exception as e:
            raise RegistryError(f"Registry scan failed: {type(e).__name__}: {e}") from e

        channels: list[ManagedChannel] = []
        for row in rows:
            record = dict(row)
            if not isinstance(record.get("channel_name"), str) or not record["channel_name"]:
                logger.warning("Skipping managed_channels row without a valid channel_name")
                continue
            channels.append(ManagedChannel.from_record(record))
        return channels

    # ==================== Writes ====================

    async def mark_needs_reauth(self, channel_name: str, error: str) -> None:
        """Flag a channel so no further refresh is attempted until re-authorized."""
        name = normalize_channel_name(channel_name)
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE managed_channels SET
                    needs_reauth        = TRUE,
                    last_token_error    = $2,
                    last_token_error_at = NOW()
                WHERE channel_name = $1
                """,
                name,
                error,
            )
        self.invalidate(name)
        logger.warning(f"Marked {name} as needing re-authorization: {error}")

    async def record_token_error(self, channel_name: str, error: str) -> None:
        """Record a token error for alerting without blocking refreshes."""
        name = normalize_channel_name(channel_name)
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE managed_channels SET
                    last_token_error    = $2,
                    last_token_error_at = NOW()
                WHERE channel_name = $1
                """,
                name,
                error,
            )
        self.invalidate(name)

    # ==================== Cache ====================

    def invalidate(self, channel_name: str) -> None:
        self._channel_cache.invalidate(f"channel:{normalize_channel_name(channel_name)}")

    def prime(self, channels: list[ManagedChannel]) -> int:
        """Seed point-read cache from an already-fetched scan."""
        for ch in channels:
            self._channel_cache.set(f"channel:{ch.channel_name}", ch)
        return len(channels)
