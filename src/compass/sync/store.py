"""Per-user sync state persistence.

One ``sync_records`` row per user holds a JSONB document shaped like
``SyncRecord``: the calendar-list token plus one ``ChannelState`` per watched
calendar under ``events``. Channel writes are single-statement JSONB updates,
so concurrent engine instances never overwrite each other's sibling channels.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Protocol

from compass.db import affected_rows, decode_jsonb, encode_jsonb
from compass.sync.models import ChannelState, SyncRecord


class SyncStore(Protocol):
    """Persistence contract for ``SyncRecord`` documents."""

    async def get(self, user_id: str) -> SyncRecord | None:
        """Load a user's record, or ``None`` if the user has no sync state."""
        ...

    async def put(self, record: SyncRecord) -> None:
        """Replace a user's record wholesale."""
        ...

    async def delete(self, user_id: str) -> bool:
        """Delete all of a user's sync state. Returns whether anything existed."""
        ...

    async def insert_channel(self, user_id: str, channel: ChannelState) -> bool:
        """Add a channel unless the calendar already has one. Returns whether it was added."""
        ...

    async def update_channel(
        self, user_id: str, calendar_id: str, **fields: Any
    ) -> ChannelState | None:
        """Merge ``fields`` into one channel; ``None`` if the channel does not exist."""
        ...

    async def delete_channel(self, user_id: str, channel_id: str) -> bool:
        """Remove the channel with ``channel_id``. Returns whether it existed."""
        ...

    async def find_by_resource_id(self, resource_id: str) -> tuple[str, ChannelState] | None:
        """Return ``(user_id, channel)`` for the channel watching ``resource_id``."""
        ...

    async def set_calendar_list_token(self, user_id: str, sync_token: str | None) -> None:
        ...


def _channel_json(channel: ChannelState) -> str:
    return encode_jsonb(channel.model_dump(mode="json"))


def _empty_record_json(user_id: str) -> str:
    return encode_jsonb(SyncRecord(user_id=user_id).model_dump(mode="json"))


class PostgresSyncStore:
    """``SyncStore`` backed by the ``sync_records`` table."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def get(self, user_id: str) -> SyncRecord | None:
        raw = await self._pool.fetchval(
            "SELECT record FROM sync_records WHERE user_id = $1",
            user_id,
        )
        if raw is None:
            return None
        value = decode_jsonb(raw)
        if not isinstance(value, dict):
            return None
        value["user_id"] = user_id
        return SyncRecord.model_validate(value)

    async def put(self, record: SyncRecord) -> None:
        await self._pool.execute(
            """
            INSERT INTO sync_records (user_id, record, updated_at)
            VALUES ($1, $2::jsonb, now())
            ON CONFLICT (user_id) DO UPDATE
                SET record = EXCLUDED.record,
                    updated_at = now()
            """,
            record.user_id,
            encode_jsonb(record.model_dump(mode="json")),
        )

    async def delete(self, user_id: str) -> bool:
        status = await self._pool.execute(
            "DELETE FROM sync_records WHERE user_id = $1",
            user_id,
        )
        return affected_rows(status) > 0

    async def insert_channel(self, user_id: str, channel: ChannelState) -> bool:
        inserted = await self._pool.fetchval(
            """
            INSERT INTO sync_records (user_id, record, updated_at)
            VALUES (
                $1,
                jsonb_set($4::jsonb, ARRAY['events', $2::text], $3::jsonb, true),
                now()
            )
            ON CONFLICT (user_id) DO UPDATE
                SET record = jsonb_set(
                        jsonb_set(
                            sync_records.record,
                            '{events}',
                            COALESCE(sync_records.record->'events', '{}'::jsonb),
                            true
                        ),
                        ARRAY['events', $2::text],
                        $3::jsonb,
                        true
                    ),
                    updated_at = now()
                WHERE NOT (COALESCE(sync_records.record->'events', '{}'::jsonb) ? $2::text)
            RETURNING user_id
            """,
            user_id,
            channel.calendar_id,
            _channel_json(channel),
            _empty_record_json(user_id),
        )
        return inserted is not None

    async def update_channel(
        self, user_id: str, calendar_id: str, **fields: Any
    ) -> ChannelState | None:
        unknown = set(fields) - set(ChannelState.model_fields)
        if unknown:
            raise ValueError(f"Unknown channel fields: {sorted(unknown)}")
        patch = {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in fields.items()
        }
        raw = await self._pool.fetchval(
            """
            UPDATE sync_records
            SET record = jsonb_set(
                    record,
                    ARRAY['events', $2::text],
                    (record->'events'->$2::text) || $3::jsonb
                ),
                updated_at = now()
            WHERE user_id = $1
              AND COALESCE(record->'events', '{}'::jsonb) ? $2::text
            RETURNING record->'events'->$2::text
            """,
            user_id,
            calendar_id,
            encode_jsonb(patch),
        )
        if raw is None:
            return None
        return ChannelState.model_validate(decode_jsonb(raw))

    async def delete_channel(self, user_id: str, channel_id: str) -> bool:
        removed = await self._pool.fetchval(
            """
            UPDATE sync_records
            SET record = jsonb_set(
                    record,
                    '{events}',
                    COALESCE(
                        (
                            SELECT jsonb_object_agg(e.key, e.value)
                            FROM jsonb_each(record->'events') AS e
                            WHERE e.value->>'channel_id' IS DISTINCT FROM $2
                        ),
                        '{}'::jsonb
                    ),
                    true
                ),
                updated_at = now()
            WHERE user_id = $1
              AND EXISTS (
                  SELECT 1
                  FROM jsonb_each(COALESCE(record->'events', '{}'::jsonb)) AS e
                  WHERE e.value->>'channel_id' = $2
              )
            RETURNING user_id
            """,
            user_id,
            channel_id,
        )
        return removed is not None

    async def find_by_resource_id(self, resource_id: str) -> tuple[str, ChannelState] | None:
        row = await self._pool.fetchrow(
            """
            SELECT s.user_id, e.value AS channel
            FROM sync_records AS s,
                 jsonb_each(COALESCE(s.record->'events', '{}'::jsonb)) AS e
            WHERE e.value->>'resource_id' = $1
            LIMIT 1
            """,
            resource_id,
        )
        if row is None:
            return None
        return row["user_id"], ChannelState.model_validate(decode_jsonb(row["channel"]))

    async def set_calendar_list_token(self, user_id: str, sync_token: str | None) -> None:
        calendar_list = encode_jsonb(
            {"sync_token": sync_token, "updated_at": datetime.now(UTC).isoformat()}
        )
        await self._pool.execute(
            """
            INSERT INTO sync_records (user_id, record, updated_at)
            VALUES ($1, jsonb_set($3::jsonb, '{calendar_list}', $2::jsonb, true), now())
            ON CONFLICT (user_id) DO UPDATE
                SET record = jsonb_set(sync_records.record, '{calendar_list}', $2::jsonb, true),
                    updated_at = now()
            """,
            user_id,
            calendar_list,
            _empty_record_json(user_id),
        )
