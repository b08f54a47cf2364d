"""Error taxonomy shared by every ChatSage component.

Classes map onto how a failure is handled, not where it came from:

    ConfigurationError      missing/invalid credentials or URLs; fatal, never retried
    TransientNetworkError   timeout, 5xx, 429; retried per component policy
    AuthError               401/403; evicts cached credentials, not retried at the same layer
    NotFoundError           secret or record absent; terminal for the call
    DataError               malformed timestamps / payloads; logged and skipped
    NotConfiguredError      channel lacks what a user token needs
    RegistryError           registry unreachable during a full reconciliation
"""

from __future__ import annotations

import httpx


class ChatSageError(Exception):
    """Base class for all ChatSage errors."""


class ConfigurationError(ChatSageError):
    pass


class TransientNetworkError(ChatSageError):
    pass


class AuthError(ChatSageError):
    pass


class InvalidRefreshTokenError(AuthError):
    """The platform rejected a refresh token; the broadcaster must re-authorize."""


class NotFoundError(ChatSageError):
    pass


class SecretNotFoundError(NotFoundError):
    pass


class DataError(ChatSageError):
    pass


class NotConfiguredError(ChatSageError):
    """A channel is missing identity, secret path, or is flagged for re-auth."""


class RegistryError(ChatSageError):
    pass


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def is_auth_status(status_code: int) -> bool:
    return status_code in (401, 403)


def classify_http_error(exc: Exception) -> type[ChatSageError]:
    """Map an httpx exception onto the taxonomy above."""
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return TransientNetworkError
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if is_retryable_status(status):
            return TransientNetworkError
        if is_auth_status(status):
            return AuthError
        if status == 404:
            return NotFoundError
        return ConfigurationError
    return TransientNetworkError


def response_message(response: httpx.Response) -> str:
    """Best-effort human message from a Twitch error body."""
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"
