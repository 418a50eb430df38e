"""Local event models for the Compass event mirror."""

from __future__ import annotations

import datetime as dt
from enum import StrEnum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PRIMARY_CALENDAR_ID = "primary"
UNTITLED_EVENT_TITLE = "untitled"


class Priority(StrEnum):
    """Local-only priority tag; never sent to the remote calendar."""

    UNASSIGNED = "unassigned"
    WORK = "work"
    SELF = "self"
    RELATIONS = "relations"


class Origin(StrEnum):
    """Where an event was first created."""

    COMPASS = "compass"
    GOOGLE = "google"
    GOOGLE_IMPORT = "googleimport"


class EventTime(BaseModel):
    """Start or end boundary in the remote calendar's wire shape.

    Exactly one of ``on_date`` (all-day) or ``at`` (timed) is set. Field
    aliases match the Google Calendar ``start``/``end`` objects so a dump with
    ``by_alias=True`` can be sent as-is.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    on_date: dt.date | None = Field(default=None, alias="date")
    at: dt.datetime | None = Field(default=None, alias="dateTime")
    time_zone: str | None = Field(default=None, alias="timeZone")

    @model_validator(mode="after")
    def _exactly_one_boundary(self) -> EventTime:
        if (self.on_date is None) == (self.at is None):
            raise ValueError("exactly one of date or dateTime must be set")
        return self

    @property
    def is_all_day(self) -> bool:
        return self.on_date is not None

    def as_datetime(self) -> dt.datetime:
        """Return an aware datetime; all-day boundaries resolve to local midnight."""
        if self.at is not None:
            return self.at if self.at.tzinfo is not None else self.at.replace(tzinfo=dt.UTC)
        if self.on_date is None:
            raise ValueError("Event boundary has neither a date nor a dateTime")
        return dt.datetime(
            self.on_date.year,
            self.on_date.month,
            self.on_date.day,
            tzinfo=_zone_or_utc(self.time_zone),
        )

    def to_wire(self) -> dict[str, str]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def _zone_or_utc(name: str | None) -> dt.tzinfo:
    if not name:
        return dt.UTC
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        return dt.UTC


class MirroredEvent(BaseModel):
    """One event in the local store, mirrored from or pushed to the remote calendar.

    ``remote_id`` is the remote calendar's event id. Someday events are
    local-only and never carry one; every other persisted event does.
    """

    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    user: str = Field(min_length=1)
    calendar_id: str = PRIMARY_CALENDAR_ID
    remote_id: str | None = None
    title: str = UNTITLED_EVENT_TITLE
    description: str | None = None
    start: EventTime
    end: EventTime
    is_someday: bool = False
    priority: Priority = Priority.UNASSIGNED
    origin: Origin = Origin.COMPASS
    updated_at: dt.datetime | None = None

    @field_validator("remote_id")
    @classmethod
    def _normalize_remote_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @property
    def is_all_day(self) -> bool:
        return self.start.is_all_day

    def to_remote_body(self) -> dict[str, object]:
        """Fields sent to the remote calendar; local-only fields are dropped."""
        body: dict[str, object] = {
            "summary": self.title,
            "start": self.start.to_wire(),
            "end": self.end.to_wire(),
        }
        if self.description is not None:
            body["description"] = self.description
        return body


class EventQuery(BaseModel):
    """Filter for listing a user's events."""

    model_config = ConfigDict(extra="forbid")

    start: dt.datetime | None = None
    end: dt.datetime | None = None
    someday: bool = False
    calendar_id: str | None = None
