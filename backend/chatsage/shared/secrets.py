"""Cached, retrying access to Google Secret Manager.

Paths may be a secret name (``projects/p/secrets/s``, read as ``latest``) or a
full version path (``projects/p/secrets/s/versions/7``). Values are cached for
the life of the store under both the requested path and the concrete version
the server resolved it to. Secret values never reach a log record.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from google.api_core import exceptions as gexc
from google.cloud import secretmanager

from chatsage.shared.errors import AuthError, SecretNotFoundError, TransientNetworkError
from chatsage.shared.redact import describe_secret_path

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    asyncio.TimeoutError,
)

# add_secret_version is not idempotent; only a refused request is safe to resend
WRITE_RETRY_ERRORS: tuple[type[BaseException], ...] = (gexc.ServiceUnavailable,)


def version_path(path: str) -> str:
    """``projects/p/secrets/s`` -> ``projects/p/secrets/s/versions/latest``."""
    path = path.rstrip("/")
    return path if "/versions/" in path else f"{path}/versions/latest"


def secret_parent(path: str) -> str:
    """Strip any ``/versions/...`` suffix."""
    return path.rstrip("/").split("/versions/")[0]


class SecretStore:
    """Accessor/mutator for versioned secret values."""

    def __init__(
        self,
        client: Any | None = None,
        *,
        max_attempts: int = 3,
        backoff: float = 0.5,
        timeout: float = 15.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._cache: dict[str, str] = {}
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.timeout = timeout
        self._sleep = sleep

    @property
    def client(self) -> Any:
        if self._client is None:
            logger.info("Initializing Secret Manager client")
            self._client = secretmanager.SecretManagerServiceAsyncClient()
        return self._client

    async def get(self, path: str) -> str:
        """Return the secret value at *path*; raises ``SecretNotFoundError``."""
        name = version_path(path)
        if name in self._cache:
            return self._cache[name]

        label = describe_secret_path(name)
        response = await self._with_retry(
            "access",
            label,
            lambda: self.client.access_secret_version(request={"name": name}, timeout=self.timeout),
        )

        data = getattr(getattr(response, "payload", None), "data", None)
        if not data:
            raise SecretNotFoundError(f"Secret {label} has an empty payload")
        value = data.decode("utf-8")

        self._cache[name] = value
        resolved = getattr(response, "name", None)
        if resolved and resolved != name:
            self._cache[resolved] = value
        logger.info(f"Retrieved secret {label} (served {describe_secret_path(resolved or name)})")
        return value

    async def set(self, path: str, value: str) -> None:
        """Add a new version to the secret at *path*; raises on failure."""
        if not value:
            raise ValueError("Refusing to store an empty secret value")
        parent = secret_parent(path)
        label = describe_secret_path(parent)
        response = await self._with_retry(
            "add-version",
            label,
            lambda: self.client.add_secret_version(
                request={"parent": parent, "payload": {"data": value.encode("utf-8")}},
                timeout=self.timeout,
            ),
            retry_on=WRITE_RETRY_ERRORS,
        )

        self._cache[version_path(parent)] = value
        resolved = getattr(response, "name", None)
        if resolved:
            self._cache[resolved] = value
        logger.info(f"Stored new version of secret {describe_secret_path(resolved or parent)}")

    def invalidate(self, path: str) -> None:
        self._cache.pop(version_path(path), None)

    async def close(self) -> None:
        """Close the gRPC channel if a client was ever created."""
        if self._client is None:
            return
        try:
            await self._client.transport.close()
        except Exception as e:
            logger.debug(f"Ignoring Secret Manager close error: {e}")
        self._client = None
        self._cache.clear()

    async def _with_retry(
        self,
        op: str,
        label: str,
        call: Callable[[], Awaitable[T]],
        *,
        retry_on: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
    ) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await call()
            except gexc.NotFound as e:
                logger.error(f"Secret {op} failed for {label}: not found")
                raise SecretNotFoundError(f"Secret {label} not found") from e
            except gexc.PermissionDenied as e:
                logger.error(f"Secret {op} failed for {label}: permission denied, check IAM roles")
                raise AuthError(f"Permission denied for secret {label}") from e
            except TRANSIENT_ERRORS as e:
                if attempt >= self.max_attempts or not isinstance(e, retry_on):
                    logger.error(
                        f"Secret {op} failed for {label} after {attempt} attempts: {type(e).__name__}"
                    )
                    raise TransientNetworkError(
                        f"Secret {op} for {label} failed: {type(e).__name__}"
                    ) from e
                delay = self.backoff * attempt
                logger.warning(
                    f"Secret {op} attempt {attempt}/{self.max_attempts} for {label} failed "
                    f"({type(e).__name__}), retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")
