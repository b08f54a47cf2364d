"""Twitch credential lifecycle.

Token types:
- App Access Token: client-credentials grant, one shared instance. Cached until
  it enters the expiry buffer, retried on timeouts/5xx/429.
- User Access Token: one per channel, obtained by exchanging the broadcaster's
  refresh token (kept in Secret Manager). Twitch rotates the refresh token on
  every use, so a new value is written back before the call returns.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import httpx

from chatsage.core.config import OAUTH_TOKEN_URL
from chatsage.shared.errors import (
    ChatSageError,
    ConfigurationError,
    InvalidRefreshTokenError,
    NotConfiguredError,
    TransientNetworkError,
    is_retryable_status,
    response_message,
)
from chatsage.shared.models.channel import ManagedChannel, normalize_channel_name
from chatsage.shared.models.token import AppToken, UserToken
from chatsage.shared.repositories.channel import ChannelRepository
from chatsage.shared.secrets import SecretStore

LOGGER = logging.getLogger("Credentials")

TOKEN_EXPIRY_BUFFER = 300.0
APP_TOKEN_ATTEMPTS = 3
APP_TOKEN_BACKOFF = 5.0
APP_TOKEN_TIMEOUT = 10.0
USER_TOKEN_TIMEOUT = 15.0
DEFAULT_USER_TOKEN_TTL = 3600

RotationAlert = Callable[[str, Exception], Awaitable[None]]


def _json_body(response: httpx.Response) -> dict[str, Any]:
    """Decoded JSON object, or {} for a body that is not one."""
    try:
        data = response.json()
    except ValueError:
        LOGGER.warning(f"Token endpoint returned a non-JSON body (HTTP {response.status_code})")
        return {}
    return data if isinstance(data, dict) else {}


class TokenState(str, Enum):
    ABSENT = "absent"
    VALID = "valid"
    EXPIRING = "expiring"


class CredentialManager:
    """Owns the app-token cache and the per-channel user-token cache."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        repository: ChannelRepository | None,
        secrets: SecretStore,
        http: httpx.AsyncClient,
        *,
        token_url: str = OAUTH_TOKEN_URL,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_rotation_failure: RotationAlert | None = None,
    ) -> None:
        self.client_id = client_id
        self._client_secret = client_secret
        self._repository = repository
        self._secrets = secrets
        self._http = http
        self._token_url = token_url
        self._clock = clock
        self._sleep = sleep
        self._on_rotation_failure = on_rotation_failure

        self._app_token: AppToken | None = None
        self._app_token_lock = asyncio.Lock()
        self._user_tokens: dict[str, UserToken] = {}
        # Channels whose refresh token was rejected in this process
        self._reauth_required: set[str] = set()

    def _require_client_credentials(self) -> None:
        if not self.client_id or not self._client_secret:
            raise ConfigurationError("Missing TWITCH_CLIENT_ID or TWITCH_CLIENT_SECRET")

    # ------------------------------------------------------------------
    # App token
    # ------------------------------------------------------------------

    @property
    def app_token_state(self) -> TokenState:
        token = self._app_token
        if token is None or self._clock() >= token.expires_at:
            return TokenState.ABSENT
        if not token.is_valid(self._clock(), TOKEN_EXPIRY_BUFFER):
            return TokenState.EXPIRING
        return TokenState.VALID

    async def get_app_token(self) -> str:
        """Return a valid app access token, fetching one if needed."""
        token = self._app_token
        if token and token.is_valid(self._clock(), TOKEN_EXPIRY_BUFFER):
            return token.value

        async with self._app_token_lock:
            token = self._app_token
            if token and token.is_valid(self._clock(), TOKEN_EXPIRY_BUFFER):
                return token.value
            self._app_token = await self._fetch_app_token()
            return self._app_token.value

    def invalidate_app_token(self) -> None:
        """Drop the cached app token; called by anyone who saw a 401 with it."""
        if self._app_token is not None:
            LOGGER.info("App access token invalidated")
        self._app_token = None

    async def _fetch_app_token(self) -> AppToken:
        self._require_client_credentials()
        last_error: ChatSageError | None = None

        for attempt in range(1, APP_TOKEN_ATTEMPTS + 1):
            try:
                response = await self._http.post(
                    self._token_url,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self._client_secret,
                        "grant_type": "client_credentials",
                    },
                    timeout=APP_TOKEN_TIMEOUT,
                )
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                last_error = TransientNetworkError(f"App token request failed: {type(e).__name__}")
            else:
                if response.status_code == 200:
                    data = _json_body(response)
                    access_token = data.get("access_token")
                    if access_token:
                        expires_in = float(data.get("expires_in") or 0)
                        token = AppToken(value=access_token, expires_at=self._clock() + expires_in)
                        LOGGER.info(f"Fetched app access token (expires in {int(expires_in)}s)")
                        return token
                    last_error = TransientNetworkError("App token response had no access_token")
                elif is_retryable_status(response.status_code):
                    last_error = TransientNetworkError(
                        f"App token request failed: HTTP {response.status_code}"
                    )
                else:
                    message = response_message(response)
                    LOGGER.error(f"App token request rejected: HTTP {response.status_code}: {message}")
                    raise ConfigurationError(
                        f"App token request rejected (HTTP {response.status_code}: {message}). "
                        "Check TWITCH_CLIENT_ID and TWITCH_CLIENT_SECRET."
                    )

            if attempt < APP_TOKEN_ATTEMPTS:
                delay = APP_TOKEN_BACKOFF * (2 ** (attempt - 1))
                LOGGER.warning(
                    f"App token attempt {attempt}/{APP_TOKEN_ATTEMPTS} failed: {last_error}, "
                    f"retrying in {delay:.0f}s"
                )
                await self._sleep(delay)

        LOGGER.error(f"App token fetch failed after {APP_TOKEN_ATTEMPTS} attempts: {last_error}")
        raise last_error  # type: ignore[misc]

    async def run_app_token_refresher(self, *, idle_interval: float = 60.0) -> None:
        """Re-fetch the app token as soon as it enters its expiry buffer."""
        while True:
            token = self._app_token
            if token is None:
                delay = idle_interval
            else:
                delay = max(token.expires_at - TOKEN_EXPIRY_BUFFER - self._clock(), idle_interval / 2)
            await asyncio.sleep(delay)

            if self.app_token_state is TokenState.EXPIRING:
                try:
                    await self.get_app_token()
                except ChatSageError as e:
                    LOGGER.warning(f"Background app token refresh failed: {e}")

    # ------------------------------------------------------------------
    # User tokens
    # ------------------------------------------------------------------

    def cached_user_token(self, channel_name: str) -> UserToken | None:
        token = self._user_tokens.get(normalize_channel_name(channel_name))
        if token and token.is_valid(self._clock(), TOKEN_EXPIRY_BUFFER):
            return token
        return None

    async def get_user_token(self, channel_name: str) -> UserToken:
        """Return a valid broadcaster token for *channel_name*.

        Raises NotConfiguredError, InvalidRefreshTokenError, TransientNetworkError,
        or the secret store's errors. Never retries the exchange itself.
        """
        name = normalize_channel_name(channel_name)
        cached = self.cached_user_token(name)
        if cached is not None:
            return cached

        if name in self._reauth_required:
            raise NotConfiguredError(f"{name} requires re-authorization")

        if self._repository is None:
            raise NotConfiguredError("No channel registry configured")
        channel = await self._repository.get_channel(name)
        if channel is None:
            raise NotConfiguredError(f"{name} is not a managed channel")
        if channel.needs_reauth:
            raise NotConfiguredError(f"{name} requires re-authorization")
        if not channel.twitch_user_id or not channel.refresh_token_secret_path:
            raise NotConfiguredError(f"{name} has no twitch_user_id or refresh token secret")

        self._require_client_credentials()
        refresh_token = await self._secrets.get(channel.refresh_token_secret_path)
        data = await self._exchange_refresh_token(name, refresh_token)

        new_refresh_token = data.get("refresh_token")
        if new_refresh_token and new_refresh_token != refresh_token:
            await self._store_rotated_refresh_token(channel, new_refresh_token)

        expires_in = float(data.get("expires_in") or DEFAULT_USER_TOKEN_TTL)
        token = UserToken(
            value=data["access_token"],
            broadcaster_id=channel.twitch_user_id,
            expires_at=self._clock() + expires_in,
        )
        self._user_tokens[name] = token
        LOGGER.debug(f"Obtained user token for {name} (expires in {int(expires_in)}s)")
        return token

    def invalidate_user_token(self, channel_name: str) -> None:
        if self._user_tokens.pop(normalize_channel_name(channel_name), None) is not None:
            LOGGER.info(f"User token for {normalize_channel_name(channel_name)} invalidated")

    def handle_channel_update(self, channel: ManagedChannel) -> None:
        """Apply a registry change to the credential caches.

        Clearing ``needs_reauth`` means a new refresh token was stored by the
        re-authorization flow, so the cached secret value is stale as well.
        """
        name = channel.channel_name
        if channel.needs_reauth:
            self.invalidate_user_token(name)
            return
        if name in self._reauth_required:
            self._reauth_required.discard(name)
            if channel.refresh_token_secret_path:
                self._secrets.invalidate(channel.refresh_token_secret_path)
            LOGGER.info(f"{name} re-authorized; refresh attempts resumed")
        cached = self._user_tokens.get(name)
        if cached is not None and cached.broadcaster_id != channel.twitch_user_id:
            self.invalidate_user_token(name)

    async def _exchange_refresh_token(self, channel_name: str, refresh_token: str) -> dict[str, Any]:
        try:
            response = await self._http.post(
                self._token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                },
                timeout=USER_TOKEN_TIMEOUT,
            )
        except httpx.HTTPError as e:
            LOGGER.error(f"Token refresh for {channel_name} failed: {type(e).__name__}")
            raise TransientNetworkError(
                f"Token refresh for {channel_name} failed: {type(e).__name__}"
            ) from e

        if response.status_code == 200:
            data = _json_body(response)
            if not data.get("access_token"):
                raise TransientNetworkError(f"Token refresh for {channel_name} returned no access_token")
            return data

        message = response_message(response)
        if response.status_code in (400, 401) and "invalid refresh token" in message.lower():
            LOGGER.warning(
                f"Refresh token for {channel_name} was rejected ({message}). "
                "Broadcaster must re-authorize."
            )
            self._reauth_required.add(channel_name)
            self.invalidate_user_token(channel_name)
            try:
                await self._repository.mark_needs_reauth(channel_name, message)
            except Exception as e:
                LOGGER.error(f"Failed to mark {channel_name} as needing re-auth: {e}")
            raise InvalidRefreshTokenError(f"Refresh token for {channel_name} is invalid")

        LOGGER.error(f"Token refresh for {channel_name} failed: HTTP {response.status_code}: {message}")
        raise TransientNetworkError(
            f"Token refresh for {channel_name} failed: HTTP {response.status_code}: {message}"
        )

    async def _store_rotated_refresh_token(self, channel: ManagedChannel, new_refresh_token: str) -> None:
        name = channel.channel_name
        try:
            await self._secrets.set(channel.refresh_token_secret_path or "", new_refresh_token)
        except Exception as e:
            await self._report_rotation_failure(name, e)
            return
        LOGGER.info(f"Refresh token for {name} rotated and stored")

    async def _report_rotation_failure(self, name: str, error: Exception) -> None:
        message = f"Failed to store rotated refresh token: {type(error).__name__}: {error}"
        LOGGER.error(f"CRITICAL: {message} ({name}); the next refresh will use a consumed token")
        try:
            await self._repository.record_token_error(name, message)
        except Exception as e:
            LOGGER.error(f"Failed to record token error for {name}: {e}")
        if self._on_rotation_failure is not None:
            try:
                await self._on_rotation_failure(name, error)
            except Exception as e:
                LOGGER.error(f"Rotation failure alert for {name} raised: {e}")
