"""Shared test doubles for the sync engine and event service tests.

The in-memory stores implement the ``SyncStore`` and ``EventStore``
protocols with the same conditional-write semantics as the Postgres stores,
and ``FakeCalendarClient`` stands in for the remote calendar service.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import pytest

from compass.events.models import EventQuery, EventTime, MirroredEvent
from compass.sync.client import CalendarClient
from compass.sync.errors import SyncTokenExpiredError
from compass.sync.models import (
    CalendarListPage,
    CalendarListSync,
    ChannelState,
    EventPage,
    RemoteCalendar,
    RemoteEvent,
    SyncRecord,
    WatchResponse,
)

FIXED_NOW = datetime(2026, 3, 4, 12, 0, tzinfo=UTC)


class InMemorySyncStore:
    def __init__(self) -> None:
        self.records: dict[str, SyncRecord] = {}

    async def get(self, user_id: str) -> SyncRecord | None:
        record = self.records.get(user_id)
        return record.model_copy(deep=True) if record is not None else None

    async def put(self, record: SyncRecord) -> None:
        self.records[record.user_id] = record.model_copy(deep=True)

    async def delete(self, user_id: str) -> bool:
        return self.records.pop(user_id, None) is not None

    async def insert_channel(self, user_id: str, channel: ChannelState) -> bool:
        record = self.records.setdefault(user_id, SyncRecord(user_id=user_id))
        if channel.calendar_id in record.events:
            return False
        record.events[channel.calendar_id] = channel.model_copy(deep=True)
        return True

    async def update_channel(
        self, user_id: str, calendar_id: str, **fields: Any
    ) -> ChannelState | None:
        unknown = set(fields) - set(ChannelState.model_fields)
        if unknown:
            raise ValueError(f"Unknown channel fields: {sorted(unknown)}")
        record = self.records.get(user_id)
        if record is None or calendar_id not in record.events:
            return None
        updated = record.events[calendar_id].model_copy(update=fields)
        record.events[calendar_id] = updated
        return updated.model_copy(deep=True)

    async def delete_channel(self, user_id: str, channel_id: str) -> bool:
        record = self.records.get(user_id)
        if record is None:
            return False
        for calendar_id, channel in list(record.events.items()):
            if channel.channel_id == channel_id:
                del record.events[calendar_id]
                return True
        return False

    async def find_by_resource_id(self, resource_id: str) -> tuple[str, ChannelState] | None:
        for user_id, record in self.records.items():
            channel = record.channel_by_resource(resource_id)
            if channel is not None:
                return user_id, channel.model_copy(deep=True)
        return None

    async def set_calendar_list_token(self, user_id: str, sync_token: str | None) -> None:
        record = self.records.setdefault(user_id, SyncRecord(user_id=user_id))
        record.calendar_list = CalendarListSync(sync_token=sync_token, updated_at=FIXED_NOW)


class InMemoryEventStore:
    def __init__(self) -> None:
        self.events: dict[str, MirroredEvent] = {}
        self.fail_inserts = False

    def _find_remote(self, user_id: str, remote_id: str) -> MirroredEvent | None:
        for event in self.events.values():
            if event.user == user_id and event.remote_id == remote_id:
                return event
        return None

    async def insert_one(self, event: MirroredEvent) -> MirroredEvent:
        if self.fail_inserts:
            raise RuntimeError("insert failed")
        if event.remote_id is not None and self._find_remote(event.user, event.remote_id):
            raise RuntimeError("duplicate remote_id")
        stored = event.model_copy(update={"id": str(uuid.uuid4()), "updated_at": FIXED_NOW})
        self.events[stored.id] = stored
        return stored

    async def insert_many(self, events: Sequence[MirroredEvent]) -> int:
        if self.fail_inserts:
            raise RuntimeError("insert failed")
        inserted = 0
        for event in events:
            if event.remote_id is not None and self._find_remote(event.user, event.remote_id):
                continue
            await self.insert_one(event)
            inserted += 1
        return inserted

    async def upsert_by_remote_id(self, events: Sequence[MirroredEvent]) -> int:
        written = 0
        for event in events:
            if event.remote_id is None:
                raise ValueError("upsert_by_remote_id requires every event to have a remote_id")
            existing = self._find_remote(event.user, event.remote_id)
            if existing is None:
                await self.insert_one(event)
            else:
                self.events[existing.id] = event.model_copy(
                    update={
                        "id": existing.id,
                        "priority": existing.priority,
                        "is_someday": existing.is_someday,
                        "origin": existing.origin,
                        "updated_at": FIXED_NOW,
                    }
                )
            written += 1
        return written

    async def find(
        self, user_id: str, query: EventQuery | None = None, *, limit: int | None = None
    ) -> list[MirroredEvent]:
        query = query or EventQuery()
        matches = [
            e
            for e in self.events.values()
            if e.user == user_id
            and e.is_someday == query.someday
            and (query.calendar_id is None or e.calendar_id == query.calendar_id)
            and (query.end is None or e.start.as_datetime() < query.end)
            and (query.start is None or e.end.as_datetime() > query.start)
        ]
        matches.sort(key=lambda e: (e.start.as_datetime(), e.id))
        if limit is not None:
            matches = matches[:limit]
        return [m.model_copy(deep=True) for m in matches]

    async def find_one(self, user_id: str, event_id: str) -> MirroredEvent | None:
        event = self.events.get(event_id)
        if event is None or event.user != user_id:
            return None
        return event.model_copy(deep=True)

    async def replace(
        self, user_id: str, event_id: str, event: MirroredEvent
    ) -> MirroredEvent | None:
        current = self.events.get(event_id)
        if current is None or current.user != user_id:
            return None
        stored = event.model_copy(update={"id": event_id, "updated_at": FIXED_NOW})
        self.events[event_id] = stored
        return stored.model_copy(deep=True)

    async def delete_many(self, user_id: str, key: str, ids: Sequence[str]) -> int:
        wanted = set(ids)
        doomed = [
            event_id
            for event_id, event in self.events.items()
            if event.user == user_id and getattr(event, key) in wanted
        ]
        for event_id in doomed:
            del self.events[event_id]
        return len(doomed)

    async def delete_all(self, user_id: str) -> int:
        return await self.delete_many(user_id, "user", [user_id])

    def remote_ids(self, user_id: str) -> set[str]:
        return {e.remote_id for e in self.events.values() if e.user == user_id and e.remote_id}


class FakeCalendarClient(CalendarClient):
    """Remote calendar double with paginated listings and per-call failure hooks."""

    def __init__(self, *, page_size: int = 2) -> None:
        self.page_size = page_size
        self.calendars: list[RemoteCalendar] = [RemoteCalendar(id="primary", primary=True)]
        self.calendar_list_token: str | None = "callist-1"
        # Live events per calendar, as a full listing returns them.
        self.remote_events: dict[str, dict[str, RemoteEvent]] = {}
        # Changes returned for any incremental listing of a calendar.
        self.changes: dict[str, list[RemoteEvent]] = {}
        self.expired_tokens: set[str] = set()
        self.list_errors: dict[str, Exception] = {}
        self.watch_errors: dict[str, Exception] = {}
        self.stop_errors: dict[str, Exception] = {}
        self.create_error: Exception | None = None
        self.omit_resource_id = False
        self.token_counter = 0

        self.list_calls: list[tuple[str, str | None, str | None]] = []
        self.watch_calls: list[dict[str, Any]] = []
        self.stop_calls: list[tuple[str, str]] = []
        self.created: list[tuple[str, dict[str, Any]]] = []
        self.updated: list[tuple[str, str, dict[str, Any]]] = []
        self.deleted: list[tuple[str, str]] = []

    def add_event(self, calendar_id: str, event: RemoteEvent) -> None:
        self.remote_events.setdefault(calendar_id, {})[event.id] = event

    async def watch_events(
        self, *, calendar_id: str, channel_id: str, expiration: datetime
    ) -> WatchResponse:
        self.watch_calls.append(
            {"calendar_id": calendar_id, "channel_id": channel_id, "expiration": expiration}
        )
        if calendar_id in self.watch_errors:
            raise self.watch_errors[calendar_id]
        resource_id = f"res-{calendar_id}-{len(self.watch_calls)}"
        if self.omit_resource_id:
            resource_id = None
        return WatchResponse(channel_id=channel_id, resource_id=resource_id, expiration=expiration)

    async def stop_channel(self, *, channel_id: str, resource_id: str) -> None:
        self.stop_calls.append((channel_id, resource_id))
        if channel_id in self.stop_errors:
            raise self.stop_errors[channel_id]

    async def list_events(
        self,
        *,
        calendar_id: str,
        sync_token: str | None = None,
        page_token: str | None = None,
    ) -> EventPage:
        self.list_calls.append((calendar_id, sync_token, page_token))
        if calendar_id in self.list_errors:
            raise self.list_errors[calendar_id]
        if sync_token is not None and sync_token in self.expired_tokens:
            raise SyncTokenExpiredError(f"token {sync_token} expired")

        if sync_token is None:
            items = list(self.remote_events.get(calendar_id, {}).values())
        else:
            items = list(self.changes.get(calendar_id, []))

        start = int(page_token or 0)
        end = start + self.page_size
        page = items[start:end]
        if end < len(items):
            return EventPage(events=page, next_page_token=str(end))
        self.token_counter += 1
        return EventPage(events=page, next_sync_token=f"{calendar_id}-token-{self.token_counter}")

    async def list_calendars(self, *, page_token: str | None = None) -> CalendarListPage:
        start = int(page_token or 0)
        end = start + self.page_size
        page = self.calendars[start:end]
        if end < len(self.calendars):
            return CalendarListPage(calendars=page, next_page_token=str(end))
        return CalendarListPage(calendars=page, next_sync_token=self.calendar_list_token)

    async def create_event(self, *, calendar_id: str, body: dict[str, Any]) -> RemoteEvent:
        if self.create_error is not None:
            raise self.create_error
        self.created.append((calendar_id, body))
        return RemoteEvent(id=f"g-{len(self.created)}", summary=body.get("summary"))

    async def update_event(
        self, *, calendar_id: str, event_id: str, body: dict[str, Any]
    ) -> RemoteEvent:
        self.updated.append((calendar_id, event_id, body))
        return RemoteEvent(id=event_id, summary=body.get("summary"))

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        self.deleted.append((calendar_id, event_id))

    async def shutdown(self) -> None:
        return None


def remote_event(
    event_id: str | None,
    summary: str | None = "Standup",
    *,
    day: int = 5,
    status: str = "confirmed",
) -> RemoteEvent:
    start = datetime(2026, 3, day, 9, 0, tzinfo=UTC)
    return RemoteEvent(
        id=event_id,
        status=status,
        summary=summary,
        start=EventTime(at=start),
        end=EventTime(at=start.replace(hour=10)),
    )


def timed_event(user_id: str = "user-1", **overrides: Any) -> MirroredEvent:
    start = datetime(2026, 3, 5, 9, 0, tzinfo=UTC)
    values: dict[str, Any] = {
        "user": user_id,
        "title": "Dentist",
        "start": EventTime(at=start),
        "end": EventTime(at=start.replace(hour=10)),
    }
    values.update(overrides)
    return MirroredEvent(**values)


@pytest.fixture
def sync_store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def calendar_client() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def client_for(calendar_client: FakeCalendarClient):
    async def _client_for(user_id: str) -> CalendarClient:
        return calendar_client

    return _client_for


@pytest.fixture
def make_remote_event():
    return remote_event


@pytest.fixture
def make_event():
    return timed_event
