"""Tests for the Secret Manager access layer."""

import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from google.api_core import exceptions as gexc

from chatsage.shared.errors import AuthError, SecretNotFoundError, TransientNetworkError
from chatsage.shared.redact import describe_secret_path, redact
from chatsage.shared.secrets import SecretStore, secret_parent, version_path

SECRET = "projects/p/secrets/alpha-refresh"


def _response(value: bytes, version: str = "7"):
    return SimpleNamespace(name=f"{SECRET}/versions/{version}", payload=SimpleNamespace(data=value))


def _store(client):
    return SecretStore(client, sleep=AsyncMock())


def test_version_path_defaults_to_latest():
    assert version_path(SECRET) == f"{SECRET}/versions/latest"
    assert version_path(f"{SECRET}/versions/3") == f"{SECRET}/versions/3"
    assert secret_parent(f"{SECRET}/versions/3") == SECRET


@pytest.mark.asyncio
async def test_get_caches_requested_and_resolved_paths():
    client = MagicMock()
    client.access_secret_version = AsyncMock(return_value=_response(b"rt-one"))
    store = _store(client)

    assert await store.get(SECRET) == "rt-one"
    assert await store.get(SECRET) == "rt-one"
    assert await store.get(f"{SECRET}/versions/7") == "rt-one"

    client.access_secret_version.assert_awaited_once()
    assert client.access_secret_version.call_args.kwargs["request"] == {"name": f"{SECRET}/versions/latest"}


@pytest.mark.asyncio
async def test_get_retries_transient_errors_with_linear_backoff():
    client = MagicMock()
    client.access_secret_version = AsyncMock(
        side_effect=[gexc.ServiceUnavailable("down"), gexc.DeadlineExceeded("slow"), _response(b"v")]
    )
    store = _store(client)

    assert await store.get(SECRET) == "v"
    assert [c.args[0] for c in store._sleep.await_args_list] == [0.5, 1.0]


@pytest.mark.asyncio
async def test_get_gives_up_after_three_transient_failures():
    client = MagicMock()
    client.access_secret_version = AsyncMock(side_effect=gexc.ServiceUnavailable("down"))
    store = _store(client)

    with pytest.raises(TransientNetworkError):
        await store.get(SECRET)
    assert client.access_secret_version.await_count == 3


@pytest.mark.asyncio
async def test_not_found_fails_immediately():
    client = MagicMock()
    client.access_secret_version = AsyncMock(side_effect=gexc.NotFound("missing"))
    store = _store(client)

    with pytest.raises(SecretNotFoundError):
        await store.get(SECRET)
    assert client.access_secret_version.await_count == 1
    store._sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_permission_denied_is_auth_error_without_retry():
    client = MagicMock()
    client.access_secret_version = AsyncMock(side_effect=gexc.PermissionDenied("iam"))
    store = _store(client)

    with pytest.raises(AuthError):
        await store.get(SECRET)
    assert client.access_secret_version.await_count == 1


@pytest.mark.asyncio
async def test_empty_payload_is_not_found():
    client = MagicMock()
    client.access_secret_version = AsyncMock(return_value=_response(b""))

    with pytest.raises(SecretNotFoundError):
        await _store(client).get(SECRET)


@pytest.mark.asyncio
async def test_set_overwrites_latest_cache_entry():
    client = MagicMock()
    client.access_secret_version = AsyncMock(return_value=_response(b"old"))
    client.add_secret_version = AsyncMock(return_value=SimpleNamespace(name=f"{SECRET}/versions/8"))
    store = _store(client)

    assert await store.get(SECRET) == "old"
    await store.set(f"{SECRET}/versions/7", "new")

    assert await store.get(SECRET) == "new"
    assert await store.get(f"{SECRET}/versions/8") == "new"
    client.access_secret_version.assert_awaited_once()
    request = client.add_secret_version.call_args.kwargs["request"]
    assert request == {"parent": SECRET, "payload": {"data": b"new"}}


@pytest.mark.asyncio
async def test_set_rejects_empty_value():
    store = _store(MagicMock())
    with pytest.raises(ValueError):
        await store.set(SECRET, "")


@pytest.mark.asyncio
async def test_secret_value_never_logged(caplog):
    client = MagicMock()
    client.access_secret_version = AsyncMock(return_value=_response(b"super-secret-refresh"))
    client.add_secret_version = AsyncMock(return_value=SimpleNamespace(name=f"{SECRET}/versions/8"))
    store = _store(client)

    with caplog.at_level(logging.DEBUG):
        await store.get(SECRET)
        await store.set(SECRET, "another-secret-value")

    assert "alpha-refresh@" in caplog.text
    assert "super-secret-refresh" not in caplog.text
    assert "another-secret-value" not in caplog.text


@pytest.mark.asyncio
async def test_invalidate_forces_refetch():
    client = MagicMock()
    client.access_secret_version = AsyncMock(side_effect=[_response(b"a"), _response(b"b", "8")])
    store = _store(client)

    assert await store.get(SECRET) == "a"
    store.invalidate(SECRET)
    assert await store.get(SECRET) == "b"


def test_redact_helpers():
    assert redact("abcdef") == "abc***"
    assert redact("ab") == "***"
    assert redact("") == "[empty]"
    assert describe_secret_path(f"{SECRET}/versions/4") == "alpha-refresh@4"
    assert describe_secret_path(SECRET) == "alpha-refresh@latest"


@pytest.mark.asyncio
async def test_set_does_not_resend_after_deadline_exceeded():
    client = MagicMock()
    client.add_secret_version = AsyncMock(side_effect=gexc.DeadlineExceeded("slow"))
    store = _store(client)

    with pytest.raises(TransientNetworkError):
        await store.set(SECRET, "rotated")

    client.add_secret_version.assert_awaited_once()
    store._sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_set_retries_refused_write():
    client = MagicMock()
    client.add_secret_version = AsyncMock(
        side_effect=[gexc.ServiceUnavailable("down"), SimpleNamespace(name=f"{SECRET}/versions/9")]
    )
    store = _store(client)

    await store.set(SECRET, "rotated")

    assert client.add_secret_version.await_count == 2
    assert await store.get(SECRET) == "rotated"
