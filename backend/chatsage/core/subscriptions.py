"""EventSub webhook subscription management against Helix."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chatsage.core.config import HELIX_BASE
from chatsage.core.credentials import CredentialManager
from chatsage.shared.errors import (
    AuthError,
    ChatSageError,
    ConfigurationError,
    TransientNetworkError,
    classify_http_error,
    is_auth_status,
    response_message,
)
from chatsage.shared.models.channel import ManagedChannel
from chatsage.shared.models.subscription import (
    AD_BREAK_BEGIN,
    STREAM_OFFLINE,
    STREAM_ONLINE,
    BatchResult,
    EnsureResult,
    Subscription,
)

LOGGER = logging.getLogger("Subscriptions")

HELIX_TIMEOUT = 15.0


def get_channel_subscriptions(broadcaster_user_id: str) -> list[tuple[str, dict[str, str]]]:
    """Standard (type, condition) pairs every managed channel needs."""
    condition = {"broadcaster_user_id": broadcaster_user_id}
    return [
        (STREAM_ONLINE, dict(condition)),
        (STREAM_OFFLINE, dict(condition)),
    ]


class SubscriptionManager:
    """Create, list and delete EventSub webhook subscriptions.

    Creation never pre-checks: Helix answers 409 for an existing
    type+condition pair and that is reported as ``exists``.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        http: httpx.AsyncClient,
        *,
        callback_url: str,
        webhook_secret: str,
        helix_base: str = HELIX_BASE,
    ) -> None:
        self._credentials = credentials
        self._http = http
        self.callback_url = callback_url
        self._webhook_secret = webhook_secret
        self._url = f"{helix_base}/eventsub/subscriptions"
        self._users_url = f"{helix_base}/users"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Client-Id": self._credentials.client_id}

    def _transport(self) -> dict[str, str]:
        if not self.callback_url:
            raise ConfigurationError("PUBLIC_URL is not set; cannot build EventSub callback")
        if not self._webhook_secret:
            raise ConfigurationError("EVENTSUB_SECRET is not set")
        return {"method": "webhook", "callback": self.callback_url, "secret": self._webhook_secret}

    def _check_app_response(self, response: httpx.Response, action: str) -> None:
        if is_auth_status(response.status_code):
            self._credentials.invalidate_app_token()
            raise AuthError(f"{action} unauthorized: {response_message(response)}")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise classify_http_error(e)(
                f"{action} failed: HTTP {response.status_code}: {response_message(response)}"
            ) from e

    # ------------------------------------------------------------------
    # Single operations
    # ------------------------------------------------------------------

    async def ensure(
        self,
        sub_type: str,
        condition: dict[str, Any],
        *,
        version: str = "1",
        user_token: str | None = None,
    ) -> EnsureResult:
        """Create a subscription; ``exists`` on conflict. Config errors raise."""
        body = {
            "type": sub_type,
            "version": version,
            "condition": condition,
            "transport": self._transport(),
        }

        try:
            token = user_token or await self._credentials.get_app_token()
        except ConfigurationError:
            raise
        except ChatSageError as e:
            return EnsureResult(status="error", error=f"app token unavailable: {e}")

        try:
            response = await self._http.post(
                self._url, json=body, headers=self._headers(token), timeout=HELIX_TIMEOUT
            )
        except httpx.HTTPError as e:
            LOGGER.error(f"Create {sub_type} {condition} failed: {type(e).__name__}")
            return EnsureResult(status="error", error=f"{type(e).__name__}: {e}")

        if response.status_code in (200, 202):
            data = (response.json().get("data") or [{}])[0]
            subscription = Subscription.from_payload(data)
            LOGGER.info(f"Created {sub_type} subscription {subscription.id} for {condition}")
            return EnsureResult(status="created", subscription=subscription)

        if response.status_code == 409:
            LOGGER.debug(f"{sub_type} subscription for {condition} already exists")
            return EnsureResult(status="exists")

        # A rejected user token is evicted by the caller that owns the channel
        if is_auth_status(response.status_code) and user_token is None:
            self._credentials.invalidate_app_token()

        message = response_message(response)
        LOGGER.error(f"Create {sub_type} for {condition} failed: HTTP {response.status_code}: {message}")
        return EnsureResult(
            status="error",
            error=f"HTTP {response.status_code}: {message}",
            http_status=response.status_code,
        )

    async def list_subscriptions(self) -> list[Subscription]:
        """All subscriptions owned by this client id, across pages."""
        token = await self._credentials.get_app_token()
        subscriptions: list[Subscription] = []
        cursor: str | None = None

        while True:
            params = {"after": cursor} if cursor else None
            try:
                response = await self._http.get(
                    self._url, params=params, headers=self._headers(token), timeout=HELIX_TIMEOUT
                )
            except httpx.HTTPError as e:
                raise TransientNetworkError(f"List subscriptions failed: {type(e).__name__}") from e
            self._check_app_response(response, "List subscriptions")

            payload = response.json()
            subscriptions.extend(Subscription.from_payload(d) for d in payload.get("data") or [])
            cursor = (payload.get("pagination") or {}).get("cursor")
            if not cursor:
                return subscriptions

    async def delete(self, subscription_id: str) -> bool:
        """Delete one subscription; False (logged) on any failure."""
        try:
            token = await self._credentials.get_app_token()
            response = await self._http.delete(
                self._url,
                params={"id": subscription_id},
                headers=self._headers(token),
                timeout=HELIX_TIMEOUT,
            )
            self._check_app_response(response, f"Delete subscription {subscription_id}")
        except (ChatSageError, httpx.HTTPError) as e:
            LOGGER.error(f"Failed to delete subscription {subscription_id}: {e}")
            return False

        LOGGER.info(f"Deleted subscription {subscription_id}")
        return True

    async def delete_all(self) -> int:
        """Delete every listed subscription; returns how many were deleted."""
        deleted = 0
        for subscription in await self.list_subscriptions():
            if await self.delete(subscription.id):
                deleted += 1
        return deleted

    async def resolve_user_id(self, channel: ManagedChannel) -> str | None:
        """Registry identity first, Helix lookup by login as fallback."""
        if channel.twitch_user_id:
            return channel.twitch_user_id

        token = await self._credentials.get_app_token()
        try:
            response = await self._http.get(
                self._users_url,
                params={"login": channel.channel_name},
                headers=self._headers(token),
                timeout=HELIX_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"User lookup failed: {type(e).__name__}") from e
        self._check_app_response(response, f"User lookup for {channel.channel_name}")

        users = response.json().get("data") or []
        return str(users[0]["id"]) if users and users[0].get("id") else None

    # ------------------------------------------------------------------
    # Ad-break subscriptions
    # ------------------------------------------------------------------

    async def ensure_ad_break(
        self, broadcaster_id: str, enabled: bool, user_token: str | None = None
    ) -> EnsureResult | None:
        """Ad-break data needs broadcaster authorization, so the user token is used.

        Disabling is a no-op here; explicit deletion only happens through the
        administrative ``delete``/``delete-all`` commands.
        """
        if not enabled:
            LOGGER.debug(f"Ad notifications disabled for {broadcaster_id}; leaving subscriptions as-is")
            return None
        if not user_token:
            return EnsureResult(status="error", error="user token required for ad-break subscription")
        return await self.ensure(
            AD_BREAK_BEGIN, {"broadcaster_id": broadcaster_id}, user_token=user_token
        )

    async def sync_channel_ad_break(self, channel: ManagedChannel) -> EnsureResult | None:
        """Match the ad-break subscription to the channel's flag.

        Degraded channels (no refresh secret, or awaiting re-authorization)
        are skipped. Other credential errors propagate. A 401/403 on create
        evicts the cached user token.
        """
        if not channel.twitch_user_id:
            return None
        if not channel.ad_notifications_enabled:
            return await self.ensure_ad_break(channel.twitch_user_id, False)
        if not channel.can_refresh:
            LOGGER.debug(f"Ad-break subscription for {channel.channel_name} skipped: channel is degraded")
            return None
        token = await self._credentials.get_user_token(channel.channel_name)
        result = await self.ensure_ad_break(channel.twitch_user_id, True, token.value)
        if result is not None and result.http_status is not None and is_auth_status(result.http_status):
            self._credentials.invalidate_user_token(channel.channel_name)
        return result

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    async def subscribe_all(self, channels: list[ManagedChannel]) -> BatchResult:
        """Ensure stream.online + stream.offline for every channel."""
        self._transport()
        result = BatchResult(total=len(channels))

        for channel in channels:
            name = channel.channel_name
            try:
                user_id = await self.resolve_user_id(channel)
                if not user_id:
                    LOGGER.warning(f"Could not resolve user id for {name}")
                    result.failed.append({"channel": name, "error": "User not found"})
                    continue

                outcomes = {
                    sub_type: await self.ensure(sub_type, condition)
                    for sub_type, condition in get_channel_subscriptions(user_id)
                }
                errors = [f"{t}: {r.error}" for t, r in outcomes.items() if not r.ok]
                if errors:
                    result.failed.append({"channel": name, "user_id": user_id, "error": "; ".join(errors)})
                else:
                    result.successful.append(
                        {
                            "channel": name,
                            "user_id": user_id,
                            "subscriptions": {t: r.status for t, r in outcomes.items()},
                        }
                    )
            except ConfigurationError:
                raise
            except Exception as e:
                LOGGER.exception(f"Error subscribing {name}: {e}")
                result.failed.append({"channel": name, "error": str(e)})

        LOGGER.info(
            f"Subscription batch complete: {len(result.successful)} ok, "
            f"{len(result.failed)} failed, {result.total} total"
        )
        return result

    async def subscribe_ad_breaks(self, channels: list[ManagedChannel]) -> BatchResult:
        """Ensure ad-break subscriptions for every eligible channel."""
        self._transport()
        eligible = [ch for ch in channels if ch.ads_ready]
        skipped = len(channels) - len(eligible)
        if skipped:
            LOGGER.info(f"Skipping {skipped} channel(s) without ad notifications or credentials")
        result = BatchResult(total=len(eligible))

        for channel in eligible:
            name = channel.channel_name
            try:
                outcome = await self.sync_channel_ad_break(channel)
            except ConfigurationError:
                raise
            except Exception as e:
                LOGGER.error(f"Ad-break subscription for {name} failed: {e}")
                result.failed.append({"channel": name, "error": str(e)})
                continue

            if outcome is not None and outcome.ok:
                result.successful.append(
                    {"channel": name, "user_id": channel.twitch_user_id, "status": outcome.status}
                )
            else:
                error = outcome.error if outcome is not None else "not subscribed"
                result.failed.append({"channel": name, "user_id": channel.twitch_user_id, "error": error})

        return result
