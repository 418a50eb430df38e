"""Push-notification channel lifecycle: start, stop, refresh.

Channel identity lives only in the ``SyncStore``; the manager keeps no
per-user state between calls.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from compass.core.telemetry import sync_span
from compass.sync.client import CalendarClient, ClientFactory
from compass.sync.errors import (
    AccessRevoked,
    ChannelDoesNotExist,
    CompassSyncError,
    MissingResourceId,
    NoActiveWatches,
    RemoteAccessRevokedError,
    RemoteNotFoundError,
    StopFailed,
    WatchAlreadyExists,
)
from compass.sync.models import (
    ChannelState,
    RemoteCalendar,
    StartAllSummary,
    StopAllSummary,
    StopResult,
    WatchFailure,
)
from compass.sync.store import SyncStore

logger = logging.getLogger(__name__)

# Google caps events watch channels at 7 days.
DEFAULT_CHANNEL_TTL = timedelta(days=7)
DEFAULT_REFRESH_WINDOW = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WatchChannelManager:
    """Opens, closes, and refreshes per-calendar watch channels."""

    def __init__(
        self,
        *,
        store: SyncStore,
        client_for: ClientFactory,
        channel_ttl: timedelta = DEFAULT_CHANNEL_TTL,
        refresh_window: timedelta = DEFAULT_REFRESH_WINDOW,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._client_for = client_for
        self._channel_ttl = channel_ttl
        self._refresh_window = refresh_window
        self._clock = clock

    async def start_watching(
        self,
        user_id: str,
        calendar_id: str,
        *,
        client: CalendarClient | None = None,
        sync_token: str | None = None,
    ) -> ChannelState:
        """Open a channel on ``calendar_id`` and persist its state.

        Raises ``WatchAlreadyExists`` if the calendar is already watched and
        ``MissingResourceId`` if the remote response lacks a resource id.
        """
        with sync_span("watch.start", user_id=user_id, calendar_id=calendar_id):
            if await self._is_watching(user_id, calendar_id):
                raise WatchAlreadyExists(user_id, calendar_id)

            if client is None:
                client = await self._client_for(user_id)

            channel_id = str(uuid.uuid4())
            expiration = self._clock() + self._channel_ttl
            logger.debug(
                "Setting up event watch: calendar_id=%s channel_id=%s user=%s",
                calendar_id,
                channel_id,
                user_id,
            )
            response = await client.watch_events(
                calendar_id=calendar_id,
                channel_id=channel_id,
                expiration=expiration,
            )
            if response.resource_id is None:
                raise MissingResourceId(
                    f"Calendar watch for {calendar_id!r} returned no resource id"
                )

            channel = ChannelState(
                calendar_id=calendar_id,
                channel_id=channel_id,
                resource_id=response.resource_id,
                expiration=response.expiration or expiration,
                sync_token=sync_token,
            )
            if not await self._store.insert_channel(user_id, channel):
                # Lost a race with a concurrent start; close the channel just opened.
                logger.warning(
                    "Concurrent watch detected for calendar_id=%s user=%s; "
                    "stopping duplicate channel %s",
                    calendar_id,
                    user_id,
                    channel_id,
                )
                await self._stop_remote_quietly(client, channel)
                raise WatchAlreadyExists(user_id, calendar_id)

            logger.info(
                "Started watching calendar_id=%s channel_id=%s expires=%s",
                calendar_id,
                channel_id,
                channel.expiration.isoformat(),
            )
            return channel

    async def start_watching_all(self, user_id: str) -> StartAllSummary:
        """Watch every calendar the user subscribes to.

        The calendar-list sync token is recorded before any channel is opened.
        Already-watched calendars are skipped; other per-calendar failures are
        collected rather than aborting the remaining calendars.
        """
        with sync_span("watch.start_all", user_id=user_id):
            client = await self._client_for(user_id)
            calendars, list_token = await self._list_calendars(client)
            await self._store.set_calendar_list_token(user_id, list_token)

            summary = StartAllSummary()
            for calendar in calendars:
                try:
                    channel = await self.start_watching(user_id, calendar.id, client=client)
                except WatchAlreadyExists:
                    logger.info("Skipping calendar_id=%s: already watching", calendar.id)
                    summary.skipped_calendar_ids.append(calendar.id)
                except RemoteAccessRevokedError:
                    raise
                except CompassSyncError as exc:
                    logger.warning("Failed to watch calendar_id=%s: %s", calendar.id, exc)
                    summary.failures.append(
                        WatchFailure(
                            calendar_id=calendar.id,
                            error_type=type(exc).__name__,
                            error=str(exc)[:300],
                        )
                    )
                else:
                    summary.started.append(channel)
            return summary

    async def stop_watching(
        self,
        user_id: str,
        channel_id: str,
        resource_id: str,
        *,
        client: CalendarClient | None = None,
    ) -> StopResult:
        """Close a channel and delete its state.

        Raises:
            AccessRevoked: access was revoked; all of the user's sync state
                was deleted first.
            ChannelDoesNotExist: the remote channel was already gone; its
                local state was deleted. Callers may treat this as resolved.
            StopFailed: any other failure; local state is untouched.
        """
        with sync_span("watch.stop", user_id=user_id, channel_id=channel_id):
            logger.debug("Stopping watch channel_id=%s resource_id=%s", channel_id, resource_id)
            try:
                if client is None:
                    client = await self._client_for(user_id)
                await client.stop_channel(channel_id=channel_id, resource_id=resource_id)
            except RemoteAccessRevokedError as exc:
                logger.warning("Access revoked for user=%s; deleting all sync state", user_id)
                await self._store.delete(user_id)
                raise AccessRevoked("Stop ignored, sync state deleted") from exc
            except RemoteNotFoundError as exc:
                await self._store.delete_channel(user_id, channel_id)
                raise ChannelDoesNotExist(
                    f"Channel {channel_id!r} no longer exists remotely; sync state deleted"
                ) from exc
            except CompassSyncError as exc:
                logger.error("Failed to stop channel_id=%s: %s", channel_id, exc)
                raise StopFailed(f"Stop failed for channel {channel_id!r}: {exc}") from exc

            await self._store.delete_channel(user_id, channel_id)
            return StopResult(channel_id=channel_id, resource_id=resource_id)

    async def stop_all_watching(self, user_id: str) -> StopAllSummary:
        """Stop every channel the user has open, one at a time.

        ``ChannelDoesNotExist`` is counted as already gone and ``StopFailed``
        is collected. ``AccessRevoked`` ends the loop, since all state is gone.
        """
        with sync_span("watch.stop_all", user_id=user_id):
            logger.debug("Stopping all event watches for user=%s", user_id)
            record = await self._store.get(user_id)
            if record is None or not record.events:
                raise NoActiveWatches(f"No active watches for user {user_id!r}")

            client = await self._client_for(user_id)
            summary = StopAllSummary()
            for channel in list(record.events.values()):
                try:
                    await self.stop_watching(
                        user_id, channel.channel_id, channel.resource_id, client=client
                    )
                except ChannelDoesNotExist:
                    summary.already_gone_count += 1
                except StopFailed as exc:
                    summary.failures.append(
                        WatchFailure(
                            calendar_id=channel.calendar_id,
                            channel_id=channel.channel_id,
                            error_type=type(exc).__name__,
                            error=str(exc)[:300],
                        )
                    )
                else:
                    summary.stopped_count += 1
            return summary

    async def refresh_watching(
        self,
        user_id: str,
        channel: ChannelState,
        *,
        client: CalendarClient | None = None,
    ) -> ChannelState:
        """Replace ``channel`` with a fresh one on the same calendar.

        The old channel's sync token carries over so the next import stays
        incremental.
        """
        with sync_span("watch.refresh", user_id=user_id, calendar_id=channel.calendar_id):
            if client is None:
                client = await self._client_for(user_id)
            try:
                await self.stop_watching(
                    user_id, channel.channel_id, channel.resource_id, client=client
                )
            except ChannelDoesNotExist:
                logger.info(
                    "Channel %s already gone while refreshing calendar_id=%s",
                    channel.channel_id,
                    channel.calendar_id,
                )

            fresh = await self.start_watching(
                user_id, channel.calendar_id, client=client, sync_token=channel.sync_token
            )
            refreshed_at = self._clock()
            updated = await self._store.update_channel(
                user_id, channel.calendar_id, refreshed_at=refreshed_at
            )
            return updated or fresh.model_copy(update={"refreshed_at": refreshed_at})

    async def refresh_expiring(
        self,
        user_id: str,
        *,
        within: timedelta | None = None,
    ) -> list[ChannelState]:
        """Refresh every channel expiring within ``within`` of now."""
        window = self._refresh_window if within is None else within
        record = await self._store.get(user_id)
        if record is None:
            return []

        deadline = self._clock() + window
        expiring = [c for c in record.events.values() if c.is_expired(now=deadline)]
        if not expiring:
            return []

        client = await self._client_for(user_id)
        refreshed: list[ChannelState] = []
        for channel in expiring:
            refreshed.append(await self.refresh_watching(user_id, channel, client=client))
        logger.info("Refreshed %d expiring channel(s) for user=%s", len(refreshed), user_id)
        return refreshed

    async def _is_watching(self, user_id: str, calendar_id: str) -> bool:
        record = await self._store.get(user_id)
        return record is not None and calendar_id in record.events

    @staticmethod
    async def _list_calendars(
        client: CalendarClient,
    ) -> tuple[list[RemoteCalendar], str | None]:
        calendars: list[RemoteCalendar] = []
        page_token: str | None = None
        list_token: str | None = None
        while True:
            page = await client.list_calendars(page_token=page_token)
            calendars.extend(c for c in page.calendars if c.selected and not c.deleted)
            if page.next_sync_token is not None:
                list_token = page.next_sync_token
            page_token = page.next_page_token
            if page_token is None:
                break
        return calendars, list_token

    @staticmethod
    async def _stop_remote_quietly(client: CalendarClient, channel: ChannelState) -> None:
        try:
            await client.stop_channel(
                channel_id=channel.channel_id, resource_id=channel.resource_id
            )
        except CompassSyncError:
            logger.warning(
                "Could not stop duplicate channel %s; it will expire at %s",
                channel.channel_id,
                channel.expiration.isoformat(),
            )
