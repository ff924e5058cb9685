"""Tests for the client-side refresh coordinator.

A fake API behind httpx.MockTransport answers 401 for stale tokens and
counts how often /auth/refresh is hit.
"""

import asyncio
import base64
import json

import httpx
import pytest

from dichoptic.client.api import ApiClient, ApiError, SessionEndedError
from dichoptic.client.events import REFRESH_FAILED, REFRESH_UNAVAILABLE, SessionEvents
from dichoptic.client.session import (
    ClientSession,
    FileTokenStorage,
    MemoryTokenStorage,
)

UNAUTHORIZED = {"status": "error", "error": {"code": "unauthorized", "message": "Unauthorized"}}


def _fake_jwt(sub="user-1", email="player@example.com", marker="x"):
    def seg(data):
        return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

    return f"{seg({'alg': 'HS256'})}.{seg({'sub': sub, 'email': email, 'm': marker})}.sig"


STALE = _fake_jwt(marker="stale")
FRESH = _fake_jwt(marker="fresh")


class FakeApi:
    def __init__(self, *, refresh_ok=True, always_unauthorized=False, refresh_delay=0.05):
        self.refresh_ok = refresh_ok
        self.refresh_delay = refresh_delay
        self.always_unauthorized = always_unauthorized
        self.refresh_calls = 0
        self.refresh_bodies = []
        self.hits = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/refresh":
            self.refresh_calls += 1
            self.refresh_bodies.append(json.loads(request.content))
            # Hold the refresh open so concurrent 401s pile up behind it
            await asyncio.sleep(self.refresh_delay)
            if not self.refresh_ok:
                return httpx.Response(
                    401,
                    json={"status": "error", "error": {"code": "invalid_token", "message": "Invalid refresh token"}},
                )
            return httpx.Response(200, json={"access_token": FRESH})

        self.hits.append((request.url.path, request.headers.get("Authorization")))
        if self.always_unauthorized or request.headers.get("Authorization") != f"Bearer {FRESH}":
            return httpx.Response(401, json=UNAUTHORIZED)
        return httpx.Response(200, json={"path": request.url.path})


def _client(api: FakeApi, session: ClientSession) -> ApiClient:
    return ApiClient("http://api.test", session, transport=httpx.MockTransport(api.handler))


@pytest.fixture
def events():
    return SessionEvents()


@pytest.fixture
def session(events):
    session = ClientSession(MemoryTokenStorage(), events)
    session.establish(STALE, "refresh-token")
    return session


class TestRefreshCoordinator:
    async def test_concurrent_401s_share_one_refresh(self, session):
        api = FakeApi()
        client = _client(api, session)

        paths = [f"/scores/item{i}" for i in range(5)]
        results = await asyncio.gather(*(client.request("GET", p) for p in paths))
        await client.aclose()

        assert api.refresh_calls == 1
        assert api.refresh_bodies == [{"refreshToken": "refresh-token"}]
        assert [r["path"] for r in results] == paths
        assert session.access_token == FRESH
        replays = [path for path, auth in api.hits if auth == f"Bearer {FRESH}"]
        assert sorted(replays) == sorted(paths)

    async def test_refresh_failure_rejects_everyone(self, session, events):
        api = FakeApi(refresh_ok=False)
        client = _client(api, session)
        reasons = []
        events.subscribe(reasons.append)

        results = await asyncio.gather(
            *(client.request("GET", f"/scores/item{i}") for i in range(4)),
            return_exceptions=True,
        )
        await client.aclose()

        assert api.refresh_calls == 1
        assert all(isinstance(r, ApiError) and r.status_code == 401 for r in results)
        assert len({id(r) for r in results}) == 1
        assert reasons == [REFRESH_FAILED]
        assert session.access_token is None
        assert session.refresh_token is None
        assert session.storage.load() == {}

    async def test_replayed_401_is_not_refreshed_again(self, session):
        api = FakeApi(always_unauthorized=True)
        client = _client(api, session)

        with pytest.raises(ApiError) as excinfo:
            await client.request("GET", "/auth/profile")
        await client.aclose()

        assert excinfo.value.status_code == 401
        assert excinfo.value.code == "unauthorized"
        assert api.refresh_calls == 1
        assert len(api.hits) == 2

    async def test_missing_refresh_token_ends_session_without_network(self, events):
        session = ClientSession(MemoryTokenStorage(), events)
        session.access_token = STALE
        api = FakeApi()
        client = _client(api, session)
        reasons = []
        events.subscribe(reasons.append)

        with pytest.raises(SessionEndedError):
            await client.request("GET", "/settings")
        await client.aclose()

        assert api.refresh_calls == 0
        assert reasons == [REFRESH_UNAVAILABLE]
        assert session.access_token is None

    async def test_public_endpoints_skip_refresh(self, session):
        api = FakeApi()
        client = _client(api, session)

        with pytest.raises(ApiError):
            await client.request("POST", "/auth/login", json={}, renew_on_401=False)
        await client.aclose()

        assert api.refresh_calls == 0

    async def test_other_errors_pass_through(self, session):
        async def handler(request):
            return httpx.Response(
                404, json={"status": "error", "error": {"code": "not_found", "message": "User not found"}}
            )

        client = ApiClient("http://api.test", session, transport=httpx.MockTransport(handler))
        with pytest.raises(ApiError) as excinfo:
            await client.request("POST", "/auth/resend-verification", json={"email": "x@example.com"})
        await client.aclose()

        assert excinfo.value.status_code == 404
        assert excinfo.value.message == "User not found"
        assert session.access_token == STALE

    async def test_settings_fall_back_to_defaults(self, session):
        async def handler(request):
            return httpx.Response(200, json=None)

        client = ApiClient("http://api.test", session, transport=httpx.MockTransport(handler))
        prefs = await client.settings_or_defaults()
        await client.aclose()

        assert prefs == {
            "leftEyeColor": "#FF0000",
            "rightEyeColor": "#0000FF",
            "eyeDominance": "left-active",
        }

    async def test_queued_requests_replay_in_arrival_order(self, session):
        api = FakeApi(refresh_delay=0.1)
        client = _client(api, session)

        async def staggered(index):
            await asyncio.sleep(index * 0.01)
            return await client.request("GET", f"/scores/item{index}")

        # Created in reverse so arrival order, not creation order, decides the queue
        await asyncio.wait_for(
            asyncio.gather(*(staggered(i) for i in reversed(range(5)))), 1
        )
        await client.aclose()

        replays = [path for path, auth in api.hits if auth == f"Bearer {FRESH}"]
        assert replays == [f"/scores/item{i}" for i in range(5)]
        assert api.refresh_calls == 1

    async def test_cancelled_waiter_does_not_block_the_rest(self, session):
        api = FakeApi(refresh_delay=0.1)
        client = _client(api, session)

        first = asyncio.create_task(client.request("GET", "/scores/first"))
        await asyncio.sleep(0.02)
        second = asyncio.create_task(client.request("GET", "/scores/second"))
        third = asyncio.create_task(client.request("GET", "/scores/third"))
        await asyncio.sleep(0.02)
        second.cancel()

        results = await asyncio.wait_for(
            asyncio.gather(first, second, third, return_exceptions=True), 1
        )
        await client.aclose()

        assert results[0] == {"path": "/scores/first"}
        assert isinstance(results[1], asyncio.CancelledError)
        assert results[2] == {"path": "/scores/third"}
        assert api.refresh_calls == 1

    async def test_cancelled_refresh_releases_waiters(self, session, events):
        api = FakeApi(refresh_delay=0.2)
        client = _client(api, session)
        reasons = []
        events.subscribe(reasons.append)

        leader = asyncio.create_task(client.request("GET", "/scores/first"))
        await asyncio.sleep(0.02)
        waiter = asyncio.create_task(client.request("GET", "/scores/second"))
        await asyncio.sleep(0.02)
        leader.cancel()

        with pytest.raises(asyncio.CancelledError):
            await leader
        with pytest.raises(ApiError) as excinfo:
            await asyncio.wait_for(waiter, 1)
        assert excinfo.value.status_code == 401
        assert client._refreshing is False
        # Cancellation is not a dead session
        assert reasons == []
        assert session.refresh_token == "refresh-token"

        api.refresh_delay = 0
        later = await asyncio.wait_for(client.request("GET", "/scores/third"), 1)
        await client.aclose()

        assert later == {"path": "/scores/third"}
        assert api.refresh_calls == 2


class TestClientSession:
    def test_establish_and_hydrate(self, tmp_path, events):
        path = tmp_path / "tokens.json"
        ClientSession(FileTokenStorage(path), events).establish(FRESH, "refresh-token")

        restored = ClientSession(FileTokenStorage(path), SessionEvents())

        assert restored.hydrate() is True
        assert restored.access_token == FRESH
        assert restored.refresh_token == "refresh-token"
        assert restored.user.id == "user-1"
        assert restored.user.email == "player@example.com"
        assert json.loads(path.read_text()) == {"token": FRESH, "refreshToken": "refresh-token"}

    def test_hydrate_with_nothing_stored(self, tmp_path):
        session = ClientSession(FileTokenStorage(tmp_path / "missing.json"))
        assert session.hydrate() is False
        assert session.is_authenticated is False

    def test_undecodable_token_has_no_user(self):
        session = ClientSession()
        session.establish("not-a-jwt", "refresh")
        assert session.user is None
        assert session.is_authenticated is True

    def test_session_ended_signal_tears_down(self, session, events):
        events.publish(REFRESH_FAILED)
        assert session.access_token is None
        assert session.user is None

    def test_failing_listener_does_not_block_others(self, session, events):
        def broken(reason):
            raise RuntimeError("listener bug")

        seen = []
        events.subscribe(broken)
        events.subscribe(seen.append)

        events.publish(REFRESH_FAILED)

        assert seen == [REFRESH_FAILED]
        assert session.access_token is None

    def test_unsubscribe(self, events):
        seen = []
        unsubscribe = events.subscribe(seen.append)
        unsubscribe()
        events.publish(REFRESH_FAILED)
        assert seen == []


class TestApiClientAgainstApp:
    """Drives the real FastAPI app through the client's typed helpers."""

    async def test_full_lifecycle(self):
        from dichoptic import app as app_module
        from dichoptic.service.runtime import get_runtime

        transport = httpx.ASGITransport(app=app_module.app)
        session = ClientSession()
        client = ApiClient("http://testserver", session, transport=transport)

        await client.register("coord@example.com", "TestPassword123!")
        token = get_runtime().store.get_user_by_email("coord@example.com").verification_token
        await client.verify_email(token)
        user = await client.login("coord@example.com", "TestPassword123!")
        assert user.email == "coord@example.com"

        entry = await client.submit_score("snake", 12, date="2024-05-01", time="08:00:00")
        assert entry["score"] == 12

        # Corrupt the access token; the next call must refresh and succeed
        session.access_token = "stale.token.value"
        top = await client.list_scores("snake")
        assert [s["score"] for s in top] == [12]
        assert session.access_token != "stale.token.value"

        saved = await client.update_settings("#123456", "#ABCDEF", "left-active")
        assert saved["leftEyeColor"] == "#123456"
        assert (await client.get_settings()) == saved

        await client.logout()
        assert session.access_token is None
        await client.aclose()
