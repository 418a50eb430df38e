"""Local event mirror: models, persistence, and CRUD with remote propagation."""

from compass.events.models import EventQuery, EventTime, MirroredEvent, Origin, Priority
from compass.events.service import EventService, plan_remote_sync
from compass.events.store import EventStore, PostgresEventStore

__all__ = [
    "EventQuery",
    "EventService",
    "EventStore",
    "EventTime",
    "MirroredEvent",
    "Origin",
    "PostgresEventStore",
    "Priority",
    "plan_remote_sync",
]
