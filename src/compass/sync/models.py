"""Sync state and calendar-service payload models."""

from __future__ import annotations

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from compass.events.models import EventTime

ImportMode = Literal["full", "incremental"]

RESOURCE_STATE_EXISTS = "exists"


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


# ---------------------------------------------------------------------------
# Persisted sync state
# ---------------------------------------------------------------------------


class ChannelState(BaseModel):
    """One open push-notification channel for a user's calendar."""

    model_config = ConfigDict(extra="ignore")

    calendar_id: str = Field(min_length=1)
    channel_id: str = Field(min_length=1)
    resource_id: str = Field(min_length=1)
    expiration: datetime
    sync_token: str | None = None
    refreshed_at: datetime | None = None
    last_synced_at: datetime | None = None
    last_error: str | None = None

    @field_validator("sync_token")
    @classmethod
    def _normalize_token(cls, value: str | None) -> str | None:
        return _strip_or_none(value)

    def is_expired(self, *, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expiration


class CalendarListSync(BaseModel):
    """Sync token for the calendar-list category."""

    model_config = ConfigDict(extra="ignore")

    sync_token: str | None = None
    updated_at: datetime | None = None


class SyncRecord(BaseModel):
    """All sync state for one user; persisted as a single document."""

    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(min_length=1)
    calendar_list: CalendarListSync = Field(default_factory=CalendarListSync)
    events: dict[str, ChannelState] = Field(default_factory=dict)

    def channel_by_resource(self, resource_id: str) -> ChannelState | None:
        for channel in self.events.values():
            if channel.resource_id == resource_id:
                return channel
        return None


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class ImportResult(BaseModel):
    """Outcome of one import pass over one calendar.

    ``next_sync_token`` is ``None`` only when the pass ended on an expired
    token without completing a full re-import.
    """

    model_config = ConfigDict(extra="forbid")

    calendar_id: str
    mode: ImportMode
    next_sync_token: str | None
    imported_count: int = 0
    deleted_count: int = 0
    skipped_count: int = 0


class ImportFailure(BaseModel):
    model_config = ConfigDict(extra="forbid")

    calendar_id: str
    error_type: str
    error: str


class ImportSummary(BaseModel):
    """Per-calendar results and failures from a multi-calendar import."""

    model_config = ConfigDict(extra="forbid")

    results: list[ImportResult] = Field(default_factory=list)
    failures: list[ImportFailure] = Field(default_factory=list)

    @property
    def imported_count(self) -> int:
        return sum(result.imported_count for result in self.results)


class StopResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel_id: str
    resource_id: str


class WatchFailure(BaseModel):
    model_config = ConfigDict(extra="forbid")

    calendar_id: str
    channel_id: str | None = None
    error_type: str
    error: str


class StopAllSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stopped_count: int = 0
    already_gone_count: int = 0
    failures: list[WatchFailure] = Field(default_factory=list)


class StartAllSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    started: list[ChannelState] = Field(default_factory=list)
    skipped_calendar_ids: list[str] = Field(default_factory=list)
    failures: list[WatchFailure] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Inbound notifications
# ---------------------------------------------------------------------------


class NotificationPayload(BaseModel):
    """Push notification fields, as delivered in ``X-Goog-*`` headers."""

    model_config = ConfigDict(extra="ignore")

    resource_state: str = Field(
        min_length=1,
        validation_alias=AliasChoices("resource_state", "resourceState", "X-Goog-Resource-State"),
    )
    resource_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("resource_id", "resourceId", "X-Goog-Resource-ID"),
    )
    channel_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("channel_id", "channelId", "X-Goog-Channel-ID"),
    )
    expiration: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("expiration", "X-Goog-Channel-Expiration"),
    )

    @field_validator("resource_state")
    @classmethod
    def _normalize_state(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("expiration", mode="before")
    @classmethod
    def _parse_expiration(cls, value: Any) -> Any:
        # Channel expirations arrive as RFC 1123 strings in headers.
        if isinstance(value, str) and value.strip() and not value.strip()[0].isdigit():
            return parsedate_to_datetime(value.strip())
        return value


# ---------------------------------------------------------------------------
# CalendarClient payloads
# ---------------------------------------------------------------------------


class RemoteEvent(BaseModel):
    """A remote event as returned by the calendar service.

    ``id`` may be missing on malformed payloads; the import engine rejects
    those rather than the client.
    """

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    status: str | None = None
    summary: str | None = None
    description: str | None = None
    start: EventTime | None = None
    end: EventTime | None = None
    etag: str | None = None
    updated: datetime | None = None

    @property
    def cancelled(self) -> bool:
        return (self.status or "").strip().lower() == "cancelled"


class EventPage(BaseModel):
    """One page of an events listing."""

    model_config = ConfigDict(extra="forbid")

    events: list[RemoteEvent] = Field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None

    @field_validator("next_page_token", "next_sync_token")
    @classmethod
    def _normalize_tokens(cls, value: str | None) -> str | None:
        return _strip_or_none(value)


class WatchResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    channel_id: str | None = None
    resource_id: str | None = None
    expiration: datetime | None = None

    @field_validator("resource_id")
    @classmethod
    def _normalize_resource_id(cls, value: str | None) -> str | None:
        return _strip_or_none(value)


class RemoteCalendar(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    summary: str | None = None
    primary: bool = False
    selected: bool = True
    deleted: bool = False


class CalendarListPage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    calendars: list[RemoteCalendar] = Field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None
