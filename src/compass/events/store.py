"""Local event mirror persistence.

Events live in the ``events`` table. A partial unique index on
``(user_id, remote_id) WHERE remote_id IS NOT NULL`` makes upsert-by-remote-id
the idempotent write path for imports.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping, Sequence
from typing import Any, Literal, Protocol

from compass.db import affected_rows, decode_jsonb, encode_jsonb
from compass.events.models import EventQuery, EventTime, MirroredEvent

logger = logging.getLogger(__name__)

DeleteKey = Literal["id", "remote_id"]

_EVENT_COLUMNS = (
    "id, user_id, calendar_id, remote_id, title, description, start_time, end_time, "
    "is_someday, priority, origin, updated_at"
)

# Column list shared by the bulk statements that read rows from a JSONB array.
_RECORDSET = """
    jsonb_to_recordset($1::jsonb) AS x(
        user_id text,
        calendar_id text,
        remote_id text,
        title text,
        description text,
        start_time jsonb,
        end_time jsonb,
        starts_at timestamptz,
        ends_at timestamptz,
        all_day boolean,
        is_someday boolean,
        priority text,
        origin text
    )
"""


class EventStore(Protocol):
    """CRUD contract for the local event mirror."""

    async def insert_one(self, event: MirroredEvent) -> MirroredEvent:
        """Insert an event and return it with its generated id."""
        ...

    async def insert_many(self, events: Sequence[MirroredEvent]) -> int:
        """Insert events, skipping remote-id duplicates. Returns how many were inserted."""
        ...

    async def upsert_by_remote_id(self, events: Sequence[MirroredEvent]) -> int:
        """Insert or update events keyed by ``(user, remote_id)``. Returns rows written."""
        ...

    async def find(
        self, user_id: str, query: EventQuery | None = None, *, limit: int | None = None
    ) -> list[MirroredEvent]:
        ...

    async def find_one(self, user_id: str, event_id: str) -> MirroredEvent | None:
        ...

    async def replace(
        self, user_id: str, event_id: str, event: MirroredEvent
    ) -> MirroredEvent | None:
        """Replace an event by id and owner; ``None`` if no such event."""
        ...

    async def delete_many(self, user_id: str, key: DeleteKey, ids: Sequence[str]) -> int:
        ...

    async def delete_all(self, user_id: str) -> int:
        ...


def _row_values(event: MirroredEvent) -> dict[str, Any]:
    return {
        "user_id": event.user,
        "calendar_id": event.calendar_id,
        "remote_id": event.remote_id,
        "title": event.title,
        "description": event.description,
        "start_time": event.start.to_wire(),
        "end_time": event.end.to_wire(),
        "starts_at": event.start.as_datetime().isoformat(),
        "ends_at": event.end.as_datetime().isoformat(),
        "all_day": event.is_all_day,
        "is_someday": event.is_someday,
        "priority": event.priority.value,
        "origin": event.origin.value,
    }


def _row_to_event(row: Mapping[str, Any]) -> MirroredEvent:
    return MirroredEvent(
        id=str(row["id"]),
        user=row["user_id"],
        calendar_id=row["calendar_id"],
        remote_id=row["remote_id"],
        title=row["title"],
        description=row["description"],
        start=EventTime.model_validate(decode_jsonb(row["start_time"])),
        end=EventTime.model_validate(decode_jsonb(row["end_time"])),
        is_someday=row["is_someday"],
        priority=row["priority"],
        origin=row["origin"],
        updated_at=row["updated_at"],
    )


def _parse_event_id(event_id: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(event_id))
    except ValueError:
        return None


class PostgresEventStore:
    """``EventStore`` backed by the ``events`` table."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def insert_one(self, event: MirroredEvent) -> MirroredEvent:
        values = _row_values(event)
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO events (
                user_id, calendar_id, remote_id, title, description, start_time, end_time,
                starts_at, ends_at, all_day, is_someday, priority, origin, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8::timestamptz,
                    $9::timestamptz, $10, $11, $12, $13, now())
            RETURNING {_EVENT_COLUMNS}
            """,
            values["user_id"],
            values["calendar_id"],
            values["remote_id"],
            values["title"],
            values["description"],
            encode_jsonb(values["start_time"]),
            encode_jsonb(values["end_time"]),
            event.start.as_datetime(),
            event.end.as_datetime(),
            values["all_day"],
            values["is_someday"],
            values["priority"],
            values["origin"],
        )
        return _row_to_event(row)

    async def insert_many(self, events: Sequence[MirroredEvent]) -> int:
        if not events:
            return 0
        rows = await self._pool.fetch(
            f"""
            INSERT INTO events (
                user_id, calendar_id, remote_id, title, description, start_time, end_time,
                starts_at, ends_at, all_day, is_someday, priority, origin, updated_at
            )
            SELECT x.user_id, x.calendar_id, x.remote_id, x.title, x.description,
                   x.start_time, x.end_time, x.starts_at, x.ends_at, x.all_day,
                   x.is_someday, x.priority, x.origin, now()
            FROM {_RECORDSET}
            ON CONFLICT (user_id, remote_id) WHERE remote_id IS NOT NULL DO NOTHING
            RETURNING id
            """,
            encode_jsonb([_row_values(event) for event in events]),
        )
        return len(rows)

    async def upsert_by_remote_id(self, events: Sequence[MirroredEvent]) -> int:
        # A statement may touch each conflict target once; the last copy wins.
        latest: dict[tuple[str, str], MirroredEvent] = {}
        for event in events:
            if event.remote_id is None:
                raise ValueError("upsert_by_remote_id requires every event to have a remote_id")
            latest[(event.user, event.remote_id)] = event
        if not latest:
            return 0

        rows = await self._pool.fetch(
            f"""
            INSERT INTO events (
                user_id, calendar_id, remote_id, title, description, start_time, end_time,
                starts_at, ends_at, all_day, is_someday, priority, origin, updated_at
            )
            SELECT x.user_id, x.calendar_id, x.remote_id, x.title, x.description,
                   x.start_time, x.end_time, x.starts_at, x.ends_at, x.all_day,
                   x.is_someday, x.priority, x.origin, now()
            FROM {_RECORDSET}
            ON CONFLICT (user_id, remote_id) WHERE remote_id IS NOT NULL DO UPDATE
                SET calendar_id = EXCLUDED.calendar_id,
                    title = EXCLUDED.title,
                    description = EXCLUDED.description,
                    start_time = EXCLUDED.start_time,
                    end_time = EXCLUDED.end_time,
                    starts_at = EXCLUDED.starts_at,
                    ends_at = EXCLUDED.ends_at,
                    all_day = EXCLUDED.all_day,
                    updated_at = now()
            RETURNING id
            """,
            encode_jsonb([_row_values(event) for event in latest.values()]),
        )
        return len(rows)

    async def find(
        self, user_id: str, query: EventQuery | None = None, *, limit: int | None = None
    ) -> list[MirroredEvent]:
        query = query or EventQuery()
        clauses = ["user_id = $1", "is_someday = $2"]
        args: list[Any] = [user_id, query.someday]
        if query.calendar_id is not None:
            args.append(query.calendar_id)
            clauses.append(f"calendar_id = ${len(args)}")
        if query.end is not None:
            args.append(query.end)
            clauses.append(f"starts_at < ${len(args)}")
        if query.start is not None:
            args.append(query.start)
            clauses.append(f"ends_at > ${len(args)}")

        sql = (
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE {' AND '.join(clauses)} "
            "ORDER BY starts_at, id"
        )
        if limit is not None:
            args.append(limit)
            sql += f" LIMIT ${len(args)}"

        rows = await self._pool.fetch(sql, *args)
        return [_row_to_event(row) for row in rows]

    async def find_one(self, user_id: str, event_id: str) -> MirroredEvent | None:
        parsed_id = _parse_event_id(event_id)
        if parsed_id is None:
            return None
        row = await self._pool.fetchrow(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = $1 AND user_id = $2",
            parsed_id,
            user_id,
        )
        return _row_to_event(row) if row is not None else None

    async def replace(
        self, user_id: str, event_id: str, event: MirroredEvent
    ) -> MirroredEvent | None:
        parsed_id = _parse_event_id(event_id)
        if parsed_id is None:
            return None
        values = _row_values(event)
        row = await self._pool.fetchrow(
            f"""
            UPDATE events
            SET calendar_id = $3,
                remote_id = $4,
                title = $5,
                description = $6,
                start_time = $7::jsonb,
                end_time = $8::jsonb,
                starts_at = $9::timestamptz,
                ends_at = $10::timestamptz,
                all_day = $11,
                is_someday = $12,
                priority = $13,
                origin = $14,
                updated_at = now()
            WHERE id = $1 AND user_id = $2
            RETURNING {_EVENT_COLUMNS}
            """,
            parsed_id,
            user_id,
            values["calendar_id"],
            values["remote_id"],
            values["title"],
            values["description"],
            encode_jsonb(values["start_time"]),
            encode_jsonb(values["end_time"]),
            event.start.as_datetime(),
            event.end.as_datetime(),
            values["all_day"],
            values["is_someday"],
            values["priority"],
            values["origin"],
        )
        return _row_to_event(row) if row is not None else None

    async def delete_many(self, user_id: str, key: DeleteKey, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        if key == "id":
            parsed = [p for p in (_parse_event_id(i) for i in ids) if p is not None]
            status = await self._pool.execute(
                "DELETE FROM events WHERE user_id = $1 AND id = ANY($2::uuid[])",
                user_id,
                parsed,
            )
        elif key == "remote_id":
            status = await self._pool.execute(
                "DELETE FROM events WHERE user_id = $1 AND remote_id = ANY($2::text[])",
                user_id,
                list(ids),
            )
        else:
            raise ValueError(f"Unsupported delete key: {key!r}")
        return affected_rows(status)

    async def delete_all(self, user_id: str) -> int:
        status = await self._pool.execute("DELETE FROM events WHERE user_id = $1", user_id)
        return affected_rows(status)
