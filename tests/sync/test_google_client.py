"""Unit tests for GoogleCalendarClient request shaping and error mapping."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime

import httpx
import pytest

from compass.sync.client import (
    GOOGLE_CALENDAR_API_BASE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
    GoogleCalendarClient,
    GoogleOAuthCredentials,
)
from compass.sync.errors import (
    RemoteAccessRevokedError,
    RemoteNotFoundError,
    RemoteRequestError,
    SyncTokenExpiredError,
    TransientRemoteError,
)
from compass.sync.importer import ImportEngine

pytestmark = pytest.mark.unit

_TOKEN_RESPONSE = {"access_token": "tok-1", "expires_in": 3600}


def _make_client(
    handler: Callable[[httpx.Request], httpx.Response], **kwargs
) -> GoogleCalendarClient:
    return GoogleCalendarClient(
        credentials=GoogleOAuthCredentials(
            client_id="cid", client_secret="secret", refresh_token="rtok"
        ),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


def _api(path: str) -> str:
    return f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"


class TestListEvents:
    async def test_sends_tokens_and_parses_page(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                return httpx.Response(200, json=_TOKEN_RESPONSE)
            return httpx.Response(
                200,
                json={
                    "items": [
                        {
                            "id": "g1",
                            "status": "confirmed",
                            "summary": "Standup",
                            "start": {"dateTime": "2026-03-05T09:00:00Z"},
                            "end": {"dateTime": "2026-03-05T09:15:00Z"},
                        },
                        {"id": "g2", "status": "cancelled"},
                        {
                            "id": "g3",
                            "start": {"date": "2026-03-06"},
                            "end": {"date": "2026-03-07"},
                        },
                    ],
                    "nextSyncToken": "sync-2",
                },
            )

        client = _make_client(handler, page_size=50)
        try:
            page = await client.list_events(
                calendar_id="team@group.calendar.google.com",
                sync_token="sync-1",
                page_token="p2",
            )
        finally:
            await client.shutdown()

        api_call = requests[-1]
        assert api_call.url.path.endswith("/calendars/team@group.calendar.google.com/events")
        assert api_call.url.params["syncToken"] == "sync-1"
        assert api_call.url.params["pageToken"] == "p2"
        assert api_call.url.params["maxResults"] == "50"
        assert api_call.headers["Authorization"] == "Bearer tok-1"

        assert page.next_sync_token == "sync-2"
        assert page.next_page_token is None
        assert [e.id for e in page.events] == ["g1", "g2", "g3"]
        assert page.events[0].start.at == datetime(2026, 3, 5, 9, 0, tzinfo=UTC)
        assert page.events[1].cancelled
        assert page.events[1].start is None
        assert page.events[2].start.is_all_day

    async def test_410_with_sync_token_raises_expired(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                return httpx.Response(200, json=_TOKEN_RESPONSE)
            return httpx.Response(410, json={"error": {"message": "Sync token is no longer valid"}})

        client = _make_client(handler)
        try:
            with pytest.raises(SyncTokenExpiredError):
                await client.list_events(calendar_id="primary", sync_token="stale")
        finally:
            await client.shutdown()

    async def test_transport_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                return httpx.Response(200, json=_TOKEN_RESPONSE)
            raise httpx.ConnectError("connection refused", request=request)

        client = _make_client(handler)
        try:
            with pytest.raises(TransientRemoteError):
                await client.list_events(calendar_id="primary")
        finally:
            await client.shutdown()


class TestWatchAndStop:
    async def test_watch_posts_channel_and_parses_response(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                return httpx.Response(200, json=_TOKEN_RESPONSE)
            return httpx.Response(
                200,
                json={"id": "chan-1", "resourceId": "res-1", "expiration": "1773316800000"},
            )

        client = _make_client(
            handler, webhook_address="https://compass.example/notify", webhook_token="shh"
        )
        expiration = datetime(2026, 3, 12, 12, 0, tzinfo=UTC)
        try:
            response = await client.watch_events(
                calendar_id="primary", channel_id="chan-1", expiration=expiration
            )
        finally:
            await client.shutdown()

        call = requests[-1]
        assert call.method == "POST"
        assert str(call.url) == _api("/calendars/primary/events/watch")
        body = json.loads(call.content)
        assert body == {
            "id": "chan-1",
            "type": "web_hook",
            "address": "https://compass.example/notify",
            "expiration": str(int(expiration.timestamp() * 1000)),
            "token": "shh",
        }
        assert response.resource_id == "res-1"
        assert response.expiration == datetime.fromtimestamp(1773316800, tz=UTC)

    async def test_watch_requires_webhook_address(self):
        client = _make_client(lambda request: httpx.Response(500))
        try:
            with pytest.raises(ValueError):
                await client.watch_events(
                    calendar_id="primary",
                    channel_id="chan-1",
                    expiration=datetime(2026, 3, 12, tzinfo=UTC),
                )
        finally:
            await client.shutdown()

    async def test_stop_missing_channel_raises_not_found(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                return httpx.Response(200, json=_TOKEN_RESPONSE)
            assert json.loads(request.content) == {"id": "chan-1", "resourceId": "res-1"}
            return httpx.Response(404, json={"error": {"message": "Channel not found"}})

        client = _make_client(handler)
        try:
            with pytest.raises(RemoteNotFoundError):
                await client.stop_channel(channel_id="chan-1", resource_id="res-1")
        finally:
            await client.shutdown()


class TestAuthErrors:
    async def test_invalid_grant_means_access_revoked(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        client = _make_client(handler)
        try:
            with pytest.raises(RemoteAccessRevokedError):
                await client.list_events(calendar_id="primary")
        finally:
            await client.shutdown()

    async def test_second_401_after_forced_refresh_means_access_revoked(self):
        token_requests = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal token_requests
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                token_requests += 1
                return httpx.Response(200, json=_TOKEN_RESPONSE)
            return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})

        client = _make_client(handler)
        try:
            with pytest.raises(RemoteAccessRevokedError):
                await client.list_calendars()
        finally:
            await client.shutdown()

        assert token_requests == 2

    async def test_plain_403_is_request_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                return httpx.Response(200, json=_TOKEN_RESPONSE)
            return httpx.Response(
                403,
                json={"error": {"message": "Forbidden", "errors": [{"reason": "forbidden"}]}},
            )

        client = _make_client(handler)
        try:
            with pytest.raises(RemoteRequestError) as exc_info:
                await client.create_event(calendar_id="primary", body={"summary": "x"})
        finally:
            await client.shutdown()

        assert exc_info.value.status_code == 403


class TestRateLimits:
    async def test_429_is_retried_honoring_retry_after(self, monkeypatch):
        sleeps: list[float] = []

        async def _fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        monkeypatch.setattr("compass.sync.client.asyncio.sleep", _fake_sleep)
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                return httpx.Response(200, json=_TOKEN_RESPONSE)
            attempts += 1
            if attempts == 1:
                return httpx.Response(429, headers={"Retry-After": "7"})
            return httpx.Response(200, json={"items": [], "nextSyncToken": "s1"})

        client = _make_client(handler)
        try:
            page = await client.list_events(calendar_id="primary")
        finally:
            await client.shutdown()

        assert page.next_sync_token == "s1"
        assert sleeps == [7.0]

    async def test_rate_limited_403_is_transient_once_retries_run_out(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                return httpx.Response(200, json=_TOKEN_RESPONSE)
            return httpx.Response(
                403,
                json={
                    "error": {
                        "message": "Rate Limit Exceeded",
                        "errors": [{"reason": "rateLimitExceeded"}],
                    }
                },
            )

        client = _make_client(handler, max_retries=0)
        try:
            with pytest.raises(TransientRemoteError):
                await client.list_events(calendar_id="primary")
        finally:
            await client.shutdown()


class TestEventWrites:
    async def test_delete_of_already_deleted_event_succeeds(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                return httpx.Response(200, json=_TOKEN_RESPONSE)
            assert request.method == "DELETE"
            return httpx.Response(410)

        client = _make_client(handler)
        try:
            await client.delete_event(calendar_id="primary", event_id="g1")
        finally:
            await client.shutdown()

    async def test_update_uses_put(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                return httpx.Response(200, json=_TOKEN_RESPONSE)
            return httpx.Response(200, json={"id": "g1", "summary": "Moved"})

        client = _make_client(handler)
        try:
            event = await client.update_event(
                calendar_id="primary", event_id="g1", body={"summary": "Moved"}
            )
        finally:
            await client.shutdown()

        assert requests[-1].method == "PUT"
        assert str(requests[-1].url) == _api("/calendars/primary/events/g1")
        assert event.summary == "Moved"

    async def test_list_calendars_parses_entries(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
                return httpx.Response(200, json=_TOKEN_RESPONSE)
            return httpx.Response(
                200,
                json={
                    "items": [
                        {"id": "primary@example.com", "primary": True},
                        {"summary": "no id"},
                        {"id": "work", "deleted": True},
                    ],
                    "nextSyncToken": "cal-sync",
                },
            )

        client = _make_client(handler)
        try:
            page = await client.list_calendars()
        finally:
            await client.shutdown()

        assert [c.id for c in page.calendars] == ["primary@example.com", "work"]
        assert page.calendars[1].deleted is True
        assert page.next_sync_token == "cal-sync"


class TestMalformedEvents:
    @staticmethod
    def _handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
            return httpx.Response(200, json=_TOKEN_RESPONSE)
        return httpx.Response(
            200,
            json={
                "items": [
                    {
                        "id": "good",
                        "summary": "Standup",
                        "start": {"dateTime": "2026-03-05T09:00:00Z"},
                        "end": {"dateTime": "2026-03-05T09:15:00Z"},
                    },
                    {
                        "id": "bad",
                        "status": "confirmed",
                        "start": {"dateTime": "garbage"},
                        "end": {"dateTime": "2026-03-05T09:15:00Z"},
                        "updated": "not a timestamp",
                    },
                ],
                "nextSyncToken": "sync-1",
            },
        )

    async def test_unparseable_event_keeps_only_id_and_status(self):
        client = _make_client(self._handler)
        try:
            page = await client.list_events(calendar_id="primary")
        finally:
            await client.shutdown()

        good, bad = page.events
        assert good.start is not None
        assert (bad.id, bad.status, bad.start, bad.end, bad.updated) == (
            "bad",
            "confirmed",
            None,
            None,
            None,
        )
        assert page.next_sync_token == "sync-1"

    async def test_import_skips_unparseable_event_and_keeps_the_rest(
        self, sync_store, event_store
    ):
        client = _make_client(self._handler)

        async def client_for(user_id: str) -> GoogleCalendarClient:
            return client

        engine = ImportEngine(store=sync_store, event_store=event_store, client_for=client_for)
        try:
            summary = await engine.import_full("user-1", ["primary"])
        finally:
            await client.shutdown()

        assert summary.failures == []
        [result] = summary.results
        assert result.imported_count == 1
        assert result.skipped_count == 1
        assert result.next_sync_token == "sync-1"
        assert event_store.remote_ids("user-1") == {"good"}
