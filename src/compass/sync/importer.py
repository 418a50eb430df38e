"""Full and incremental import of remote calendar events into the local mirror."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from compass.core.telemetry import sync_span
from compass.events.models import (
    UNTITLED_EVENT_TITLE,
    EventQuery,
    MirroredEvent,
    Origin,
)
from compass.events.store import EventStore
from compass.sync.client import CalendarClient, ClientFactory
from compass.sync.errors import (
    AccessRevoked,
    CompassSyncError,
    InvalidRemoteEvent,
    NotFoundError,
    RemoteAccessRevokedError,
    SyncTokenExpiredError,
)
from compass.sync.models import (
    ImportFailure,
    ImportMode,
    ImportResult,
    ImportSummary,
    RemoteEvent,
)
from compass.sync.store import SyncStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def map_remote_event(user_id: str, calendar_id: str, remote: RemoteEvent) -> MirroredEvent:
    """Map a remote event to its local mirror.

    Raises ``InvalidRemoteEvent`` when the payload has no id or no start/end.
    """
    if not remote.id:
        raise InvalidRemoteEvent("Remote event has no id")
    if remote.start is None or remote.end is None:
        raise InvalidRemoteEvent(f"Remote event {remote.id!r} has no start or end")

    title = (remote.summary or "").strip() or UNTITLED_EVENT_TITLE
    return MirroredEvent(
        user=user_id,
        calendar_id=calendar_id,
        remote_id=remote.id,
        title=title,
        description=remote.description,
        start=remote.start,
        end=remote.end,
        origin=Origin.GOOGLE_IMPORT,
    )


class ImportEngine:
    """Pulls remote events into the ``EventStore`` and advances sync tokens."""

    def __init__(
        self,
        *,
        store: SyncStore,
        event_store: EventStore,
        client_for: ClientFactory,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._event_store = event_store
        self._client_for = client_for
        self._clock = clock

    async def import_full(
        self,
        user_id: str,
        calendar_ids: Sequence[str] | None = None,
    ) -> ImportSummary:
        """Re-import every event of each calendar, ignoring stored tokens.

        With no ``calendar_ids`` the user's watched calendars are imported, or
        the primary calendar when nothing is watched. Calendars run
        concurrently; one calendar failing does not stop the others.
        """
        with sync_span("import.full", user_id=user_id):
            if calendar_ids is None:
                record = await self._store.get(user_id)
                calendar_ids = list(record.events) if record and record.events else ["primary"]
            client = await self._client_for(user_id)
            targets = {calendar_id: None for calendar_id in calendar_ids}
            return await self._import_many(user_id, client, targets)

    async def import_incremental(
        self,
        user_id: str,
        calendar_id: str | None = None,
    ) -> ImportSummary:
        """Import changes since the stored token for watched calendars.

        When ``calendar_id`` is given only that calendar is imported and its
        failure propagates; otherwise failures are collected per calendar.
        """
        with sync_span("import.incremental", user_id=user_id):
            record = await self._store.get(user_id)
            channels = record.events if record is not None else {}

            if calendar_id is not None:
                channel = channels.get(calendar_id)
                if channel is None:
                    raise NotFoundError(
                        f"Calendar {calendar_id!r} is not watched for user {user_id!r}"
                    )
                client = await self._client_for(user_id)
                result = await self.import_calendar(
                    user_id, calendar_id, channel.sync_token, client=client
                )
                return ImportSummary(results=[result])

            if not channels:
                logger.info("No watched calendars for user=%s; nothing to import", user_id)
                return ImportSummary()

            client = await self._client_for(user_id)
            targets = {cid: channel.sync_token for cid, channel in channels.items()}
            return await self._import_many(user_id, client, targets)

    async def import_calendar(
        self,
        user_id: str,
        calendar_id: str,
        sync_token: str | None,
        *,
        client: CalendarClient | None = None,
    ) -> ImportResult:
        """Import one calendar: incremental with a token, full without.

        An expired token falls back to a full re-import of this calendar only.
        The resulting token and bookkeeping are written to the calendar's
        channel when it is watched.
        """
        with sync_span("import.calendar", user_id=user_id, calendar_id=calendar_id):
            if client is None:
                client = await self._client_for(user_id)
            try:
                if sync_token is None:
                    result = await self._import_full_calendar(user_id, calendar_id, client)
                else:
                    try:
                        result = await self._import_changes(
                            user_id, calendar_id, sync_token, client
                        )
                    except SyncTokenExpiredError:
                        logger.warning(
                            "Sync token expired for calendar_id=%s user=%s; "
                            "falling back to full import",
                            calendar_id,
                            user_id,
                        )
                        await self._store.update_channel(user_id, calendar_id, sync_token=None)
                        result = await self._import_full_calendar(user_id, calendar_id, client)
            except RemoteAccessRevokedError as exc:
                logger.warning("Access revoked for user=%s; deleting all sync state", user_id)
                await self._store.delete(user_id)
                raise AccessRevoked("Import aborted, sync state deleted") from exc
            except Exception as exc:
                await self._store.update_channel(user_id, calendar_id, last_error=str(exc)[:300])
                raise

            stored = await self._store.update_channel(
                user_id,
                calendar_id,
                sync_token=result.next_sync_token,
                last_synced_at=self._clock(),
                last_error=None,
            )
            if stored is None:
                logger.debug(
                    "Calendar %s is not watched for user=%s; next sync token not stored",
                    calendar_id,
                    user_id,
                )
            logger.info(
                "Imported calendar_id=%s mode=%s imported=%d deleted=%d skipped=%d",
                calendar_id,
                result.mode,
                result.imported_count,
                result.deleted_count,
                result.skipped_count,
            )
            return result

    async def _import_many(
        self,
        user_id: str,
        client: CalendarClient,
        targets: dict[str, str | None],
    ) -> ImportSummary:
        calendar_ids = list(targets)
        outcomes = await asyncio.gather(
            *(
                self.import_calendar(user_id, calendar_id, targets[calendar_id], client=client)
                for calendar_id in calendar_ids
            ),
            return_exceptions=True,
        )

        summary = ImportSummary()
        revoked: AccessRevoked | None = None
        for calendar_id, outcome in zip(calendar_ids, outcomes, strict=True):
            if isinstance(outcome, ImportResult):
                summary.results.append(outcome)
                continue
            if isinstance(outcome, AccessRevoked):
                revoked = outcome
            elif not isinstance(outcome, Exception):
                raise outcome
            logger.error("Import failed for calendar_id=%s: %s", calendar_id, outcome)
            summary.failures.append(
                ImportFailure(
                    calendar_id=calendar_id,
                    error_type=type(outcome).__name__,
                    error=str(outcome)[:300],
                )
            )

        if revoked is not None:
            raise revoked
        return summary

    async def _import_full_calendar(
        self, user_id: str, calendar_id: str, client: CalendarClient
    ) -> ImportResult:
        remote_events, next_token = await self._collect(client, calendar_id, sync_token=None)
        result = await self._apply(user_id, calendar_id, remote_events, next_token, mode="full")

        # Anything mirrored from this calendar that the full listing no longer
        # contains was deleted remotely while no token was tracking it.
        seen = {event.id for event in remote_events if event.id and not event.cancelled}
        local = await self._event_store.find(user_id, EventQuery(calendar_id=calendar_id))
        stale = [e.remote_id for e in local if e.remote_id and e.remote_id not in seen]
        if stale:
            pruned = await self._event_store.delete_many(user_id, "remote_id", stale)
            result = result.model_copy(update={"deleted_count": result.deleted_count + pruned})
        return result

    async def _import_changes(
        self, user_id: str, calendar_id: str, sync_token: str, client: CalendarClient
    ) -> ImportResult:
        remote_events, next_token = await self._collect(client, calendar_id, sync_token=sync_token)
        return await self._apply(
            user_id, calendar_id, remote_events, next_token, mode="incremental"
        )

    @staticmethod
    async def _collect(
        client: CalendarClient,
        calendar_id: str,
        *,
        sync_token: str | None,
    ) -> tuple[list[RemoteEvent], str]:
        page_token: str | None = None
        events: list[RemoteEvent] = []
        next_token: str | None = None

        while True:
            page = await client.list_events(
                calendar_id=calendar_id,
                sync_token=sync_token,
                page_token=page_token,
            )
            events.extend(page.events)
            if page.next_sync_token is not None:
                next_token = page.next_sync_token
            page_token = page.next_page_token
            if page_token is None:
                break

        if next_token is None:
            raise CompassSyncError(
                f"Events listing for calendar {calendar_id!r} returned no next sync token"
            )
        return events, next_token

    async def _apply(
        self,
        user_id: str,
        calendar_id: str,
        remote_events: list[RemoteEvent],
        next_token: str,
        *,
        mode: ImportMode,
    ) -> ImportResult:
        # Later pages supersede earlier ones for the same event.
        latest: dict[str, RemoteEvent] = {}
        skipped = 0
        for remote in remote_events:
            if not remote.id:
                logger.warning(
                    "Skipping remote event without id in calendar_id=%s", calendar_id
                )
                skipped += 1
                continue
            latest[remote.id] = remote

        cancelled_ids: list[str] = []
        upserts: list[MirroredEvent] = []
        for remote_id, remote in latest.items():
            if remote.cancelled:
                cancelled_ids.append(remote_id)
                continue
            try:
                upserts.append(map_remote_event(user_id, calendar_id, remote))
            except InvalidRemoteEvent as exc:
                logger.warning("Skipping remote event in calendar_id=%s: %s", calendar_id, exc)
                skipped += 1

        deleted = 0
        if cancelled_ids:
            deleted = await self._event_store.delete_many(user_id, "remote_id", cancelled_ids)
        imported = await self._event_store.upsert_by_remote_id(upserts) if upserts else 0

        return ImportResult(
            calendar_id=calendar_id,
            mode=mode,
            next_sync_token=next_token,
            imported_count=imported,
            deleted_count=deleted,
            skipped_count=skipped,
        )
