"""Keep chat-connection membership and ad-break subscriptions in line with the registry.

Two paths converge on the same idempotent targets:
- full reconciliation (startup, optional timer, listener reconnect)
- incremental reconciliation of one realtime registry change
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field

from chatsage.core.connection import ChannelContext, ChatConnection, ReadyState, state_of
from chatsage.core.credentials import CredentialManager
from chatsage.core.subscriptions import SubscriptionManager
from chatsage.shared.errors import ChatSageError, NotConfiguredError
from chatsage.shared.models.channel import (
    CHANGE_ADDED,
    CHANGE_REMOVED,
    CHANGE_TYPES,
    ChannelChange,
    ManagedChannel,
    normalize_channel_name,
)
from chatsage.shared.repositories.channel import ChannelRepository

LOGGER = logging.getLogger("ChannelSync")


def wants_ad_break_sync(channel: ManagedChannel) -> bool:
    """Active with an identity, and either opted out or able to mint a user token."""
    if not (channel.is_active and channel.has_identity):
        return False
    return channel.ads_ready or not channel.ad_notifications_enabled


@dataclass
class SyncResult:
    joined: list[str] = field(default_factory=list)
    parted: list[str] = field(default_factory=list)


def parse_change(payload: str) -> ChannelChange | None:
    """Decode one ``{type, doc}`` NOTIFY payload; None if malformed."""
    try:
        data = json.loads(payload)
        change_type = data["type"]
        doc = data["doc"]
    except (ValueError, KeyError, TypeError) as e:
        LOGGER.warning(f"[NOTIFY] Ignoring malformed registry change: {type(e).__name__}")
        return None
    if change_type not in CHANGE_TYPES or not isinstance(doc, dict) or not doc.get("channel_name"):
        LOGGER.warning(f"[NOTIFY] Ignoring registry change of type {change_type!r} without a channel")
        return None
    return ChannelChange(type=change_type, channel=ManagedChannel.from_record(doc))


class ChannelSynchronizer:
    def __init__(
        self,
        repository: ChannelRepository,
        connection: ChatConnection,
        context: ChannelContext,
        credentials: CredentialManager,
        subscriptions: SubscriptionManager,
        *,
        lazy_connect: bool = False,
        queue_size: int = 256,
    ) -> None:
        self._repository = repository
        self._connection = connection
        self._context = context
        self._credentials = credentials
        self._subscriptions = subscriptions
        self._lazy_connect = lazy_connect

        self._syncing = False
        self._changes: asyncio.Queue[ChannelChange] = asyncio.Queue(maxsize=queue_size)
        self.last_result: SyncResult | None = None
        self.dropped_changes = 0

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def joined_channels(self) -> set[str]:
        return {normalize_channel_name(c) for c in self._connection.get_channels()}

    # ------------------------------------------------------------------
    # Full reconciliation
    # ------------------------------------------------------------------

    async def sync_all(self) -> SyncResult | None:
        """One full pass. Returns None if another pass is already running.

        Raises RegistryError when the registry cannot be scanned.
        """
        if self._syncing:
            LOGGER.info("Channel sync already in progress, skipping")
            return None

        self._syncing = True
        try:
            channels = await self._repository.list_all_channels()
            self._repository.prime(channels)

            desired = {ch.channel_name for ch in channels if ch.is_active}
            result = await self._sync_membership(desired)

            ad_channels = [ch for ch in channels if wants_ad_break_sync(ch)]
            await asyncio.gather(*(self._sync_ad_break(ch) for ch in ad_channels))

            LOGGER.info(
                f"Channel sync complete: {len(desired)} active, "
                f"joined {len(result.joined)}, parted {len(result.parted)}"
            )
            self.last_result = result
            return result
        finally:
            self._syncing = False

    async def _sync_membership(self, desired: set[str]) -> SyncResult:
        result = SyncResult()
        state = state_of(self._connection)
        if state is not ReadyState.OPEN:
            LOGGER.debug(f"Connection is {state.value}; skipping join/part")
            return result

        actual = self.joined_channels()
        to_join = sorted(desired - actual)
        to_part = sorted(actual - desired)
        if not to_join and not to_part:
            return result

        outcomes = await asyncio.gather(
            *(self._join(name) for name in to_join),
            *(self._part(name) for name in to_part),
        )
        joins, parts = outcomes[: len(to_join)], outcomes[len(to_join) :]
        result.joined = [name for name, ok in zip(to_join, joins) if ok]
        result.parted = [name for name, ok in zip(to_part, parts) if ok]
        return result

    async def _join(self, name: str) -> bool:
        try:
            await self._connection.join(name)
        except Exception as e:
            LOGGER.error(f"Failed to join {name}: {e}")
            return False
        LOGGER.info(f"Joined {name}")
        return True

    async def _part(self, name: str) -> bool:
        try:
            await self._connection.part(name)
        except Exception as e:
            LOGGER.error(f"Failed to part {name}: {e}")
            return False
        LOGGER.info(f"Parted {name}")
        return True

    async def _sync_ad_break(self, channel: ManagedChannel) -> None:
        try:
            outcome = await self._subscriptions.sync_channel_ad_break(channel)
        except NotConfiguredError as e:
            LOGGER.debug(f"Ad-break subscription sync for {channel.channel_name} skipped: {e}")
            return
        except ChatSageError as e:
            LOGGER.warning(f"Ad-break subscription sync for {channel.channel_name} skipped: {e}")
            return
        except Exception as e:
            LOGGER.exception(f"Ad-break subscription sync for {channel.channel_name} failed: {e}")
            return
        if outcome is not None and not outcome.ok:
            LOGGER.warning(f"Ad-break subscription for {channel.channel_name} not ensured: {outcome.error}")

    # ------------------------------------------------------------------
    # Incremental reconciliation
    # ------------------------------------------------------------------

    async def handle_change(self, change: ChannelChange) -> None:
        """Apply one realtime change.

        ``removed`` is deliberately not reconciled here; the next full pass
        parts a channel whose record disappeared.
        """
        channel = change.channel
        name = channel.channel_name
        self._repository.invalidate(name)

        if change.type == CHANGE_REMOVED:
            LOGGER.info(f"[NOTIFY] {name} removed from registry; left for the next full sync")
            return

        self._credentials.handle_channel_update(channel)
        LOGGER.info(f"[NOTIFY] {name} {change.type} (active={channel.is_active})")

        if channel.is_active and change.type == CHANGE_ADDED:
            await self._maybe_connect(name)

        state = state_of(self._connection)
        if state is ReadyState.OPEN:
            joined = name in self.joined_channels()
            if channel.is_active and not joined:
                await self._join(name)
            elif not channel.is_active and joined:
                await self._part(name)
        else:
            LOGGER.debug(f"Connection is {state.value}; not applying membership for {name}")

        if wants_ad_break_sync(channel):
            await self._sync_ad_break(channel)

    async def _maybe_connect(self, name: str) -> None:
        try:
            live = self._context.is_live(name)
        except Exception as e:
            LOGGER.warning(f"Liveness check for {name} failed: {e}")
            return
        if not live or not self._lazy_connect:
            return

        state = state_of(self._connection)
        if state in (ReadyState.OPEN, ReadyState.CONNECTING):
            return
        LOGGER.info(f"Lazy connect: {name} is live, establishing chat connection")
        try:
            await self._connection.connect()
        except Exception as e:
            LOGGER.error(f"Lazy connect for {name} failed: {e}")

    # ------------------------------------------------------------------
    # Realtime queue
    # ------------------------------------------------------------------

    def on_notification(self, connection, pid, channel, payload) -> None:
        """asyncpg listener callback; never blocks."""
        change = parse_change(payload)
        if change is None:
            return
        try:
            self._changes.put_nowait(change)
        except asyncio.QueueFull:
            self.dropped_changes += 1
            LOGGER.warning(
                f"[NOTIFY] Change queue full, dropping {change.type} for "
                f"{change.channel.channel_name}; next full sync will converge"
            )

    @property
    def pending_changes(self) -> int:
        return self._changes.qsize()

    async def run_change_worker(self) -> None:
        """Consume queued changes one at a time until cancelled."""
        while True:
            change = await self._changes.get()
            try:
                await self.handle_change(change)
            except Exception as e:
                LOGGER.exception(f"[NOTIFY] Error handling change for {change.channel.channel_name}: {e}")
            finally:
                self._changes.task_done()

    async def run_periodic(self, interval: float) -> None:
        """Full pass every *interval* seconds; misses never stop the loop."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sync_all()
            except Exception as e:
                LOGGER.error(f"Periodic channel sync failed: {e}")
