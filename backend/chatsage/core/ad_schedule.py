"""Pre-ad notifications driven by the Helix ad schedule.

Every sweep looks at the channels the chat context knows about and keeps at
most one single-shot timer per channel, armed 60s before ``next_ad_at``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from chatsage.core.config import BROADCASTER_SCOPES, HELIX_BASE
from chatsage.core.connection import ChannelContext
from chatsage.core.credentials import CredentialManager
from chatsage.shared.errors import (
    ChatSageError,
    NotConfiguredError,
    is_auth_status,
    is_retryable_status,
    response_message,
)
from chatsage.shared.models.channel import ManagedChannel, normalize_channel_name
from chatsage.shared.repositories.channel import ChannelRepository

LOGGER = logging.getLogger("AdSchedule")
ADS_SCOPE = BROADCASTER_SCOPES[0]

NOTIFY_LEAD_SECONDS = 60.0
MIN_FIRE_DELAY = 5.0
NOTIFIED_RETENTION = 600.0
SCHEDULE_TIMEOUT = 15.0
RETRY_DELAYS = (1.0, 3.0)

NotifyCallback = Callable[[str, int], Awaitable[Any]]


def parse_next_ad_at(value: Any) -> float | None:
    """Epoch seconds from an RFC3339 string, an epoch int or a numeric string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    try:
        epoch = float(text)
    except ValueError:
        pass
    else:
        return epoch if epoch > 0 else None

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


@dataclass
class AdOccurrence:
    """The ad a channel's timer is currently armed for."""

    channel_name: str
    next_ad_at: float
    fire_at: float
    notified: bool = False


class AdBreakScheduler:
    def __init__(
        self,
        repository: ChannelRepository,
        credentials: CredentialManager,
        context: ChannelContext,
        notify: NotifyCallback,
        http: httpx.AsyncClient,
        *,
        interval: float = 30.0,
        helix_base: str = HELIX_BASE,
        clock: Callable[[], float] = time.time,
        retry_delays: tuple[float, ...] = RETRY_DELAYS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._credentials = credentials
        self._context = context
        self._notify = notify
        self._http = http
        self._interval = interval
        self._ads_url = f"{helix_base}/channels/ads"
        self._clock = clock
        self._retry_delays = retry_delays
        self._sleep = sleep

        self._timers: dict[str, asyncio.Task] = {}
        self._occurrences: dict[str, AdOccurrence] = {}
        # Ads already announced, per channel; survives clear() and ages out
        self._notified: dict[str, set[float]] = {}

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def pending(self, channel_name: str) -> AdOccurrence | None:
        """The armed occurrence for a channel, if its timer has not fired yet."""
        name = normalize_channel_name(channel_name)
        task = self._timers.get(name)
        if task is None or task.done():
            return None
        return self._occurrences.get(name)

    def pending_channels(self) -> list[str]:
        return sorted(name for name in self._timers if self.pending(name) is not None)

    def already_notified(self, channel_name: str, next_ad_at: float) -> bool:
        return next_ad_at in self._notified.get(normalize_channel_name(channel_name), ())

    def _prune_notified(self) -> None:
        cutoff = self._clock() - NOTIFIED_RETENTION
        for name in list(self._notified):
            kept = {at for at in self._notified[name] if at >= cutoff}
            if kept:
                self._notified[name] = kept
            else:
                del self._notified[name]

    def clear(self, channel_name: str) -> None:
        """Cancel the channel's timer. Announced ads stay recorded."""
        name = normalize_channel_name(channel_name)
        task = self._timers.pop(name, None)
        if task is not None and not task.done():
            task.cancel()
            LOGGER.debug(f"Cleared ad timer for {name}")
        self._occurrences.pop(name, None)

    def _arm(self, name: str, next_ad_at: float, fire_in: float) -> AdOccurrence:
        self.clear(name)
        occurrence = AdOccurrence(channel_name=name, next_ad_at=next_ad_at, fire_at=self._clock() + fire_in)
        self._occurrences[name] = occurrence
        self._timers[name] = asyncio.create_task(self._fire_after(occurrence, fire_in))
        LOGGER.info(
            f"Ad notification for {name} scheduled in {int(fire_in)}s "
            f"(ad in {int(next_ad_at - self._clock())}s)"
        )
        return occurrence

    async def _fire_after(self, occurrence: AdOccurrence, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._fire(occurrence)

    async def _fire(self, occurrence: AdOccurrence) -> None:
        name = occurrence.channel_name
        remaining = max(0, round(occurrence.next_ad_at - self._clock()))
        try:
            await self._notify(name, remaining)
        except Exception as e:
            LOGGER.error(f"Pre-ad notification for {name} failed: {e}")
            # Forget the occurrence so a later sweep can re-arm it
            if self._occurrences.get(name) is occurrence:
                del self._occurrences[name]
            return
        occurrence.notified = True
        self._notified.setdefault(name, set()).add(occurrence.next_ad_at)
        LOGGER.info(f"Pre-ad notification sent for {name} ({remaining}s warning)")

    # ------------------------------------------------------------------
    # Schedule fetch
    # ------------------------------------------------------------------

    async def fetch_ad_schedule(self, channel: ManagedChannel) -> dict[str, Any] | None:
        """First schedule entry for *channel*, or None. Never raises for HTTP or auth trouble."""
        name = channel.channel_name
        try:
            token = await self._credentials.get_user_token(name)
        except NotConfiguredError as e:
            LOGGER.debug(f"Skipping ad schedule for {name}: {e}")
            return None
        except ChatSageError as e:
            LOGGER.warning(f"No user token for {name}, skipping ad schedule: {e}")
            return None

        headers = {"Authorization": f"Bearer {token.value}", "Client-Id": self._credentials.client_id}
        delays = list(self._retry_delays)
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await self._http.get(
                    self._ads_url,
                    params={"broadcaster_id": token.broadcaster_id},
                    headers=headers,
                    timeout=SCHEDULE_TIMEOUT,
                )
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                reason = type(e).__name__
            else:
                if response.status_code == 200:
                    entries = response.json().get("data") or []
                    if not entries:
                        LOGGER.debug(f"No ad schedule data for {name}")
                        return None
                    return entries[0]

                message = response_message(response)
                if is_auth_status(response.status_code) or "scope" in message.lower():
                    self._credentials.invalidate_user_token(name)
                    LOGGER.warning(
                        f"Ad schedule for {name} unauthorized (HTTP {response.status_code}: {message}). "
                        f"The broadcaster must re-authorize and grant {ADS_SCOPE}."
                    )
                    return None
                if not is_retryable_status(response.status_code):
                    LOGGER.error(f"Ad schedule for {name} failed: HTTP {response.status_code}: {message}")
                    return None
                reason = f"HTTP {response.status_code}"

            if not delays:
                LOGGER.error(f"Ad schedule for {name} failed after {attempt} attempts: {reason}")
                return None
            delay = delays.pop(0)
            LOGGER.warning(f"Ad schedule attempt {attempt} for {name} failed ({reason}), retrying in {delay}s")
            await self._sleep(delay)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep(self) -> None:
        """Re-evaluate every known channel once."""
        names = [normalize_channel_name(n) for n in self._context.known_channels()]
        LOGGER.debug(f"Ad schedule sweep over {len(names)} channels")
        self._prune_notified()
        for name in names:
            try:
                await self._sweep_channel(name)
            except Exception as e:
                LOGGER.exception(f"Ad schedule sweep failed for {name}: {e}")

        # Channels the context no longer knows about keep no timers
        for name in set(self._timers) - set(names):
            self.clear(name)

    async def _sweep_channel(self, name: str) -> None:
        if not self._context.is_live(name):
            self.clear(name)
            return

        channel = await self._repository.get_channel(name)
        if channel is None or not channel.ads_ready:
            self.clear(name)
            return

        schedule = await self.fetch_ad_schedule(channel)
        if not schedule:
            self.clear(name)
            return

        raw = schedule.get("next_ad_at")
        next_ad_at = parse_next_ad_at(raw)
        if next_ad_at is None:
            if raw not in (None, "", 0):
                LOGGER.warning(f"Invalid next_ad_at for {name}: {raw!r}")
            self.clear(name)
            return

        until = next_ad_at - self._clock()
        if until <= 0:
            LOGGER.debug(f"next_ad_at for {name} already passed")
            self.clear(name)
            return

        if self.already_notified(name, next_ad_at):
            LOGGER.debug(f"Ad at {int(next_ad_at)} already announced for {name}")
            return
        current = self._occurrences.get(name)
        if current is not None and current.next_ad_at == next_ad_at:
            return

        self._arm(name, next_ad_at, max(MIN_FIRE_DELAY, until - NOTIFY_LEAD_SECONDS))

    async def run(self) -> None:
        """Sweep every interval until cancelled."""
        try:
            while True:
                await asyncio.sleep(self._interval)
                try:
                    await self.sweep()
                except Exception as e:
                    LOGGER.error(f"Ad schedule sweep error: {e}")
        finally:
            self.stop()

    def stop(self) -> None:
        for name in list(self._timers):
            self.clear(name)
        self._occurrences.clear()
        self._notified.clear()
