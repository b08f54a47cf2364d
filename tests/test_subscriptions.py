"""Tests for EventSub subscription management."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from chatsage.core.credentials import CredentialManager, TokenState
from chatsage.core.subscriptions import SubscriptionManager, get_channel_subscriptions
from chatsage.shared.errors import AuthError, ConfigurationError
from chatsage.shared.models.subscription import AD_BREAK_BEGIN, STREAM_OFFLINE, STREAM_ONLINE

from conftest import SECRET_PATH, FakeRepository, FakeSecretStore, make_channel

CALLBACK = "https://bot.example.com/twitch/event"


class Helix:
    """Routes token and Helix requests; records what it saw."""

    def __init__(self):
        self.created: list[dict] = []
        self.auth_headers: list[str] = []
        self.deleted: list[str] = []
        self.token_requests = 0
        self.create_status: dict[tuple[str, str], int] = {}
        self.pages: list[dict] = [{"data": [], "pagination": {}}]
        self.users: dict[str, str] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "id.twitch.tv":
            self.token_requests += 1
            form = request.content.decode()
            if "refresh_token" in form:
                return httpx.Response(200, json={"access_token": "user-tok", "expires_in": 3600})
            return httpx.Response(200, json={"access_token": f"app-{self.token_requests}", "expires_in": 3600})

        path = request.url.path
        if path.endswith("/users"):
            login = request.url.params["login"]
            data = [{"id": self.users[login], "login": login}] if login in self.users else []
            return httpx.Response(200, json={"data": data})

        if request.method == "POST":
            body = json.loads(request.content)
            self.created.append(body)
            self.auth_headers.append(request.headers["Authorization"])
            key = (body["type"], next(iter(body["condition"].values())))
            status = self.create_status.get(key, 202)
            if status == 202:
                return httpx.Response(
                    202, json={"data": [{"id": f"sub-{len(self.created)}", "type": body["type"], "status": "webhook_callback_verification_pending", "condition": body["condition"]}]}
                )
            return httpx.Response(status, json={"status": status, "message": "nope"})

        if request.method == "GET":
            after = request.url.params.get("after")
            index = int(after) if after else 0
            return httpx.Response(200, json=self.pages[index])

        if request.method == "DELETE":
            sub_id = request.url.params["id"]
            if sub_id == "broken":
                return httpx.Response(404, json={"message": "not found"})
            self.deleted.append(sub_id)
            return httpx.Response(204)

        return httpx.Response(405)


def _build(helix, clock, *, callback=CALLBACK, secret="webhook-secret-123", repository=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(helix))
    credentials = CredentialManager(
        "cid",
        "csecret",
        repository or FakeRepository([make_channel()]),
        FakeSecretStore({SECRET_PATH: "rt-1"}),
        http,
        clock=clock,
        sleep=AsyncMock(),
    )
    return credentials, SubscriptionManager(credentials, http, callback_url=callback, webhook_secret=secret)


def test_channel_subscriptions_are_online_and_offline():
    pairs = get_channel_subscriptions("42")
    assert [t for t, _ in pairs] == [STREAM_ONLINE, STREAM_OFFLINE]
    assert all(c == {"broadcaster_user_id": "42"} for _, c in pairs)


@pytest.mark.asyncio
async def test_ensure_created_then_conflict_is_exists(clock):
    helix = Helix()
    _, subs = _build(helix, clock)

    first = await subs.ensure(STREAM_ONLINE, {"broadcaster_user_id": "1001"})
    helix.create_status[(STREAM_ONLINE, "1001")] = 409
    second = await subs.ensure(STREAM_ONLINE, {"broadcaster_user_id": "1001"})

    assert first.status == "created" and first.subscription.id == "sub-1"
    assert second.status == "exists" and second.ok
    body = helix.created[0]
    assert body["transport"] == {"method": "webhook", "callback": CALLBACK, "secret": "webhook-secret-123"}
    assert body["version"] == "1"
    assert helix.auth_headers[0] == "Bearer app-1"


@pytest.mark.asyncio
async def test_ensure_unauthorized_invalidates_app_token(clock):
    helix = Helix()
    helix.create_status[(STREAM_ONLINE, "1001")] = 401
    _, subs = _build(helix, clock)

    result = await subs.ensure(STREAM_ONLINE, {"broadcaster_user_id": "1001"})
    assert result.status == "error"
    assert "401" in result.error

    helix.create_status.clear()
    await subs.ensure(STREAM_ONLINE, {"broadcaster_user_id": "1001"})
    assert helix.token_requests == 2


@pytest.mark.asyncio
async def test_ensure_without_callback_is_configuration_error(clock):
    helix = Helix()
    _, subs = _build(helix, clock, callback="")

    with pytest.raises(ConfigurationError):
        await subs.ensure(STREAM_ONLINE, {"broadcaster_user_id": "1001"})
    assert helix.created == []


@pytest.mark.asyncio
async def test_list_follows_pagination(clock):
    helix = Helix()
    helix.pages = [
        {"data": [{"id": "a", "type": STREAM_ONLINE}], "pagination": {"cursor": "1"}},
        {"data": [{"id": "b", "type": STREAM_OFFLINE}], "pagination": {"cursor": "2"}},
        {"data": [{"id": "c", "type": AD_BREAK_BEGIN}], "pagination": {}},
    ]
    _, subs = _build(helix, clock)

    listed = await subs.list_subscriptions()
    assert [s.id for s in listed] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_delete_and_delete_all(clock):
    helix = Helix()
    helix.pages = [{"data": [{"id": "a"}, {"id": "broken"}, {"id": "c"}], "pagination": {}}]
    _, subs = _build(helix, clock)

    assert await subs.delete("x") is True
    assert await subs.delete("broken") is False
    assert await subs.delete_all() == 2
    assert helix.deleted == ["x", "a", "c"]


@pytest.mark.asyncio
async def test_subscribe_all_partial_failure_does_not_abort(clock):
    helix = Helix()
    helix.users = {"beta": "2002"}
    helix.create_status[(STREAM_OFFLINE, "3003")] = 500
    _, subs = _build(helix, clock)

    channels = [
        make_channel("alpha", twitch_user_id="1001"),
        make_channel("beta", twitch_user_id=None),
        make_channel("gamma", twitch_user_id="3003"),
        make_channel("ghost", twitch_user_id=None),
    ]
    result = await subs.subscribe_all(channels)

    assert result.total == 4
    assert [s["channel"] for s in result.successful] == ["alpha", "beta"]
    assert result.successful[1]["user_id"] == "2002"
    failed = {f["channel"]: f["error"] for f in result.failed}
    assert set(failed) == {"gamma", "ghost"}
    assert STREAM_OFFLINE in failed["gamma"]
    assert failed["ghost"] == "User not found"


@pytest.mark.asyncio
async def test_ensure_ad_break_uses_user_token_and_broadcaster_condition(clock):
    helix = Helix()
    _, subs = _build(helix, clock)

    result = await subs.ensure_ad_break("1001", True, "user-tok")

    assert result.status == "created"
    assert helix.created[0]["type"] == AD_BREAK_BEGIN
    assert helix.created[0]["condition"] == {"broadcaster_id": "1001"}
    assert helix.auth_headers[0] == "Bearer user-tok"


@pytest.mark.asyncio
async def test_ensure_ad_break_disabled_is_noop(clock):
    helix = Helix()
    _, subs = _build(helix, clock)

    assert await subs.ensure_ad_break("1001", False) is None
    assert helix.created == []
    assert helix.token_requests == 0


@pytest.mark.asyncio
async def test_subscribe_ad_breaks_only_eligible_channels(clock):
    helix = Helix()
    repository = FakeRepository(
        [
            make_channel("alpha", ad_notifications_enabled=True),
            make_channel("beta", ad_notifications_enabled=False),
            make_channel("gamma", ad_notifications_enabled=True, needs_reauth=True),
        ]
    )
    _, subs = _build(helix, clock, repository=repository)

    result = await subs.subscribe_ad_breaks(list(repository.channels.values()))

    assert result.total == 1
    assert [s["channel"] for s in result.successful] == ["alpha"]
    assert [b["type"] for b in helix.created] == [AD_BREAK_BEGIN]


@pytest.mark.asyncio
async def test_ensure_forbidden_invalidates_app_token(clock):
    helix = Helix()
    helix.create_status[(STREAM_ONLINE, "1001")] = 403
    _, subs = _build(helix, clock)

    result = await subs.ensure(STREAM_ONLINE, {"broadcaster_user_id": "1001"})
    assert result.http_status == 403

    helix.create_status.clear()
    await subs.ensure(STREAM_ONLINE, {"broadcaster_user_id": "1001"})
    assert helix.token_requests == 2


@pytest.mark.asyncio
async def test_list_forbidden_invalidates_app_token(clock):
    helix = Helix()
    helix.pages = [{"data": [], "pagination": {}}]
    credentials, subs = _build(helix, clock)
    await credentials.get_app_token()

    forbidden = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(403, json={"message": "no"})))
    subs._http = forbidden
    with pytest.raises(AuthError):
        await subs.list_subscriptions()

    assert credentials.app_token_state is TokenState.ABSENT


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_rejected_ad_break_create_evicts_user_token(clock, status):
    helix = Helix()
    helix.create_status[(AD_BREAK_BEGIN, "1001")] = status
    credentials, subs = _build(helix, clock)
    channel = make_channel("alpha", ad_notifications_enabled=True)

    result = await subs.sync_channel_ad_break(channel)

    assert result.status == "error"
    assert credentials.cached_user_token("alpha") is None

    helix.create_status.clear()
    assert (await subs.sync_channel_ad_break(channel)).status == "created"
    assert helix.token_requests == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [{"needs_reauth": True}, {"refresh_token_secret_path": None}],
)
async def test_degraded_channel_ad_break_sync_is_skipped(clock, overrides):
    helix = Helix()
    _, subs = _build(helix, clock)

    result = await subs.sync_channel_ad_break(make_channel("alpha", ad_notifications_enabled=True, **overrides))

    assert result is None
    assert helix.created == []
    assert helix.token_requests == 0
