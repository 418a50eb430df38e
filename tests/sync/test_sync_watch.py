"""Unit tests for WatchChannelManager channel lifecycle."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from compass.sync.errors import (
    AccessRevoked,
    ChannelDoesNotExist,
    ChannelStaleError,
    MissingResourceId,
    NoActiveWatches,
    RemoteAccessRevokedError,
    RemoteNotFoundError,
    StopFailed,
    TransientRemoteError,
    WatchAlreadyExists,
)
from compass.sync.models import ChannelState, RemoteCalendar
from compass.sync.watch import WatchChannelManager

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 4, 12, 0, tzinfo=UTC)
USER = "user-1"


@pytest.fixture
def manager(sync_store, client_for) -> WatchChannelManager:
    return WatchChannelManager(store=sync_store, client_for=client_for, clock=lambda: NOW)


def _channel(calendar_id: str, *, expires_in: timedelta, token: str | None = None) -> ChannelState:
    return ChannelState(
        calendar_id=calendar_id,
        channel_id=f"chan-{calendar_id}",
        resource_id=f"res-{calendar_id}",
        expiration=NOW + expires_in,
        sync_token=token,
    )


class TestStartWatching:
    async def test_persists_channel_with_seven_day_expiration(
        self, manager, sync_store, calendar_client
    ):
        channel = await manager.start_watching(USER, "primary")

        assert channel.calendar_id == "primary"
        assert channel.resource_id == "res-primary-1"
        assert channel.expiration == NOW + timedelta(days=7)
        assert channel.sync_token is None
        assert calendar_client.watch_calls[0]["channel_id"] == channel.channel_id

        record = await sync_store.get(USER)
        assert record is not None
        assert record.events["primary"] == channel

    async def test_second_start_for_same_calendar_raises(
        self, manager, sync_store, calendar_client
    ):
        first = await manager.start_watching(USER, "primary")

        with pytest.raises(WatchAlreadyExists):
            await manager.start_watching(USER, "primary")

        record = await sync_store.get(USER)
        assert list(record.events) == ["primary"]
        assert record.events["primary"].channel_id == first.channel_id
        assert len(calendar_client.watch_calls) == 1

    async def test_missing_resource_id_persists_nothing(self, manager, sync_store, calendar_client):
        calendar_client.omit_resource_id = True

        with pytest.raises(MissingResourceId):
            await manager.start_watching(USER, "primary")

        assert await sync_store.get(USER) is None

    async def test_losing_insert_race_stops_duplicate_channel(
        self, manager, sync_store, calendar_client, monkeypatch
    ):
        async def _already_taken(user_id, channel):
            return False

        monkeypatch.setattr(sync_store, "insert_channel", _already_taken)

        with pytest.raises(WatchAlreadyExists):
            await manager.start_watching(USER, "primary")

        opened = calendar_client.watch_calls[0]["channel_id"]
        assert calendar_client.stop_calls == [(opened, "res-primary-1")]

    async def test_custom_ttl_is_used(self, sync_store, client_for):
        manager = WatchChannelManager(
            store=sync_store,
            client_for=client_for,
            channel_ttl=timedelta(hours=6),
            clock=lambda: NOW,
        )
        channel = await manager.start_watching(USER, "primary")
        assert channel.expiration == NOW + timedelta(hours=6)


class TestStartWatchingAll:
    async def test_watches_every_selected_calendar_and_stores_list_token(
        self, manager, sync_store, calendar_client
    ):
        calendar_client.calendars = [
            RemoteCalendar(id="primary", primary=True),
            RemoteCalendar(id="work"),
            RemoteCalendar(id="old", deleted=True),
            RemoteCalendar(id="hidden", selected=False),
            RemoteCalendar(id="family"),
        ]
        calendar_client.calendar_list_token = "callist-9"

        summary = await manager.start_watching_all(USER)

        assert [c.calendar_id for c in summary.started] == ["primary", "work", "family"]
        assert summary.failures == []
        record = await sync_store.get(USER)
        assert record.calendar_list.sync_token == "callist-9"
        assert set(record.events) == {"primary", "work", "family"}

    async def test_skips_watched_calendars_and_collects_failures(
        self, manager, sync_store, calendar_client
    ):
        calendar_client.calendars = [
            RemoteCalendar(id="primary"),
            RemoteCalendar(id="work"),
            RemoteCalendar(id="broken"),
        ]
        calendar_client.watch_errors["broken"] = TransientRemoteError("503")
        await manager.start_watching(USER, "primary")

        summary = await manager.start_watching_all(USER)

        assert summary.skipped_calendar_ids == ["primary"]
        assert [c.calendar_id for c in summary.started] == ["work"]
        assert [(f.calendar_id, f.error_type) for f in summary.failures] == [
            ("broken", "TransientRemoteError")
        ]

    async def test_access_revoked_propagates(self, manager, calendar_client):
        calendar_client.watch_errors["primary"] = RemoteAccessRevokedError("revoked")

        with pytest.raises(RemoteAccessRevokedError):
            await manager.start_watching_all(USER)


class TestStopWatching:
    async def test_success_deletes_channel(self, manager, sync_store, calendar_client):
        channel = await manager.start_watching(USER, "primary")

        result = await manager.stop_watching(USER, channel.channel_id, channel.resource_id)

        assert result.channel_id == channel.channel_id
        assert calendar_client.stop_calls == [(channel.channel_id, channel.resource_id)]
        record = await sync_store.get(USER)
        assert record.events == {}

    async def test_remote_not_found_deletes_channel_and_is_stale_not_fatal(
        self, manager, sync_store, calendar_client
    ):
        channel = await manager.start_watching(USER, "primary")
        await manager.start_watching(USER, "work")
        calendar_client.stop_errors[channel.channel_id] = RemoteNotFoundError("gone")

        with pytest.raises(ChannelDoesNotExist) as exc_info:
            await manager.stop_watching(USER, channel.channel_id, channel.resource_id)

        assert isinstance(exc_info.value, ChannelStaleError)
        record = await sync_store.get(USER)
        assert set(record.events) == {"work"}

    async def test_access_revoked_deletes_all_sync_state(
        self, manager, sync_store, calendar_client
    ):
        await sync_store.set_calendar_list_token(USER, "callist-1")
        channel = await manager.start_watching(USER, "primary")
        await manager.start_watching(USER, "work")
        calendar_client.stop_errors[channel.channel_id] = RemoteAccessRevokedError("revoked")

        with pytest.raises(AccessRevoked):
            await manager.stop_watching(USER, channel.channel_id, channel.resource_id)

        assert await sync_store.get(USER) is None

    async def test_other_failure_raises_stop_failed_without_mutation(
        self, manager, sync_store, calendar_client
    ):
        channel = await manager.start_watching(USER, "primary")
        calendar_client.stop_errors[channel.channel_id] = TransientRemoteError("timeout")

        with pytest.raises(StopFailed):
            await manager.stop_watching(USER, channel.channel_id, channel.resource_id)

        record = await sync_store.get(USER)
        assert record.events["primary"] == channel


class TestStopAllWatching:
    async def test_no_channels_raises(self, manager):
        with pytest.raises(NoActiveWatches):
            await manager.stop_all_watching(USER)

    async def test_tolerates_gone_channels_and_collects_failures(
        self, manager, sync_store, calendar_client
    ):
        primary = await manager.start_watching(USER, "primary")
        work = await manager.start_watching(USER, "work")
        family = await manager.start_watching(USER, "family")
        calendar_client.stop_errors[work.channel_id] = RemoteNotFoundError("gone")
        calendar_client.stop_errors[family.channel_id] = TransientRemoteError("boom")

        summary = await manager.stop_all_watching(USER)

        assert summary.stopped_count == 1
        assert summary.already_gone_count == 1
        assert [f.channel_id for f in summary.failures] == [family.channel_id]
        record = await sync_store.get(USER)
        assert set(record.events) == {"family"}
        assert primary.channel_id in {c for c, _ in calendar_client.stop_calls}

    async def test_access_revoked_ends_loop(self, manager, sync_store, calendar_client):
        primary = await manager.start_watching(USER, "primary")
        await manager.start_watching(USER, "work")
        calendar_client.stop_errors[primary.channel_id] = RemoteAccessRevokedError("revoked")

        with pytest.raises(AccessRevoked):
            await manager.stop_all_watching(USER)

        assert len(calendar_client.stop_calls) == 1
        assert await sync_store.get(USER) is None


class TestRefresh:
    async def test_refresh_replaces_channel_and_keeps_sync_token(
        self, manager, sync_store, calendar_client
    ):
        old = _channel("primary", expires_in=timedelta(hours=2), token="tok-7")
        await sync_store.insert_channel(USER, old)

        fresh = await manager.refresh_watching(USER, old)

        assert calendar_client.stop_calls == [(old.channel_id, old.resource_id)]
        assert fresh.channel_id != old.channel_id
        assert fresh.sync_token == "tok-7"
        assert fresh.refreshed_at == NOW
        assert fresh.expiration == NOW + timedelta(days=7)
        record = await sync_store.get(USER)
        assert record.events["primary"] == fresh

    async def test_refresh_tolerates_already_gone_channel(
        self, manager, sync_store, calendar_client
    ):
        old = _channel("primary", expires_in=timedelta(hours=2))
        await sync_store.insert_channel(USER, old)
        calendar_client.stop_errors[old.channel_id] = RemoteNotFoundError("gone")

        fresh = await manager.refresh_watching(USER, old)

        assert fresh.calendar_id == "primary"
        assert (await sync_store.get(USER)).events["primary"].channel_id == fresh.channel_id

    async def test_refresh_expiring_only_touches_channels_inside_window(
        self, manager, sync_store, calendar_client
    ):
        await sync_store.insert_channel(USER, _channel("soon", expires_in=timedelta(hours=3)))
        await sync_store.insert_channel(USER, _channel("later", expires_in=timedelta(days=5)))

        refreshed = await manager.refresh_expiring(USER)

        assert [c.calendar_id for c in refreshed] == ["soon"]
        assert calendar_client.stop_calls == [("chan-soon", "res-soon")]
        record = await sync_store.get(USER)
        assert record.events["later"].channel_id == "chan-later"

    async def test_refresh_expiring_with_custom_window(self, manager, sync_store):
        await sync_store.insert_channel(USER, _channel("later", expires_in=timedelta(days=5)))

        refreshed = await manager.refresh_expiring(USER, within=timedelta(days=6))

        assert [c.calendar_id for c in refreshed] == ["later"]

    async def test_refresh_expiring_without_state_is_noop(self, manager, calendar_client):
        assert await manager.refresh_expiring(USER) == []
        assert calendar_client.watch_calls == []
