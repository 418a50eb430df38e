"""Local event CRUD with propagation to the remote calendar.

Every write that touches a non-someday event runs in two phases: a pure
``plan_remote_sync`` decides what the remote calendar needs, the remote
call runs, and only then is the local store written. A remote failure
therefore leaves local state untouched.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable, Sequence
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from compass.events.models import (
    EventQuery,
    EventTime,
    MirroredEvent,
    Origin,
    Priority,
)
from compass.events.store import DeleteKey, EventStore
from compass.sync.client import ClientFactory
from compass.sync.errors import (
    EventNotFound,
    InternalInconsistencyError,
    MissingRemoteId,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_SOMEDAY_WEEKLY_LIMIT = 9
DEFAULT_SOMEDAY_TITLE = "⭐ That one thing..."

Operation = Literal["create", "update", "delete"]


class RemoteSyncAction(StrEnum):
    NONE = "none"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class RemoteSyncPlan(BaseModel):
    """What the remote calendar must do before the local write."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    action: RemoteSyncAction
    calendar_id: str
    remote_id: str | None = None


class DeleteManyResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    deleted_count: int
    errors: list[str] = Field(default_factory=list)


def plan_remote_sync(
    operation: Operation,
    event: MirroredEvent,
    existing: MirroredEvent | None = None,
) -> RemoteSyncPlan:
    """Decide the remote side of a local write.

    ``existing`` is the stored version of the event for updates. Someday
    events are never sent remotely; demoting a mirrored event to someday
    removes it from the remote calendar.

    Raises ``MissingRemoteId`` when deleting a non-someday event that has
    no remote id.
    """
    calendar_id = event.calendar_id
    remote_id = event.remote_id or (existing.remote_id if existing is not None else None)

    if operation == "create":
        if event.is_someday:
            return RemoteSyncPlan(action=RemoteSyncAction.NONE, calendar_id=calendar_id)
        return RemoteSyncPlan(action=RemoteSyncAction.CREATE, calendar_id=calendar_id)

    if operation == "update":
        if event.is_someday:
            if remote_id is None:
                return RemoteSyncPlan(action=RemoteSyncAction.NONE, calendar_id=calendar_id)
            return RemoteSyncPlan(
                action=RemoteSyncAction.DELETE, calendar_id=calendar_id, remote_id=remote_id
            )
        if remote_id is None:
            return RemoteSyncPlan(action=RemoteSyncAction.CREATE, calendar_id=calendar_id)
        return RemoteSyncPlan(
            action=RemoteSyncAction.UPDATE, calendar_id=calendar_id, remote_id=remote_id
        )

    if operation == "delete":
        if event.is_someday:
            return RemoteSyncPlan(action=RemoteSyncAction.NONE, calendar_id=calendar_id)
        if remote_id is None:
            raise MissingRemoteId(f"Event {event.id!r} has no remote id; cannot delete remotely")
        return RemoteSyncPlan(
            action=RemoteSyncAction.DELETE, calendar_id=calendar_id, remote_id=remote_id
        )

    raise ValueError(f"Unsupported operation: {operation!r}")


def current_week_range(today: dt.date) -> tuple[dt.date, dt.date]:
    """Sunday through Saturday of the week containing ``today``."""
    start = today - dt.timedelta(days=(today.weekday() + 1) % 7)
    return start, start + dt.timedelta(days=6)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class EventService:
    """User-facing event operations over the local mirror."""

    def __init__(
        self,
        *,
        event_store: EventStore,
        client_for: ClientFactory,
        someday_weekly_limit: int = DEFAULT_SOMEDAY_WEEKLY_LIMIT,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self._event_store = event_store
        self._client_for = client_for
        self._someday_weekly_limit = someday_weekly_limit
        self._clock = clock

    async def create(self, user_id: str, event: MirroredEvent) -> MirroredEvent:
        """Create on the remote calendar first, then store locally."""
        event = event.model_copy(update={"id": None, "user": user_id})
        plan = plan_remote_sync("create", event)
        remote_id = await self._apply_remote(user_id, plan, event)
        if plan.action is RemoteSyncAction.CREATE:
            event = event.model_copy(update={"remote_id": remote_id})

        try:
            return await self._event_store.insert_one(event)
        except Exception as exc:
            if plan.action is RemoteSyncAction.NONE:
                raise
            logger.error(
                "Local insert failed after remote create: user=%s remote_id=%s",
                user_id,
                remote_id,
            )
            raise InternalInconsistencyError(
                f"Event {remote_id!r} was created remotely but could not be saved locally"
            ) from exc

    async def create_many(self, user_id: str, events: Sequence[MirroredEvent]) -> int:
        """Bulk-insert already-mirrored events locally; nothing is sent remotely.

        Raises ``InternalInconsistencyError`` if not every event was saved.
        """
        prepared = [e.model_copy(update={"id": None, "user": user_id}) for e in events]
        inserted = await self._event_store.insert_many(prepared)
        if inserted != len(prepared):
            raise InternalInconsistencyError(f"Only {inserted}/{len(prepared)} events saved")
        return inserted

    async def create_default_someday(self, user_id: str) -> MirroredEvent:
        start, end = current_week_range(self._clock().date())
        event = MirroredEvent(
            user=user_id,
            title=DEFAULT_SOMEDAY_TITLE,
            description=(
                "... that you wanna do this week, but aren't sure when.\n"
                "Keep it here for safekeeping, then drag it over to the calendar "
                "once you're ready to commit times.\n\n"
                "These sidebar events are:\n"
                "-filtered by the calendar week you're on\n"
                f"-limited to {self._someday_weekly_limit} per week"
            ),
            start=EventTime(on_date=start),
            end=EventTime(on_date=end),
            is_someday=True,
            priority=Priority.UNASSIGNED,
            origin=Origin.COMPASS,
        )
        return await self.create(user_id, event)

    async def read_all(self, user_id: str, query: EventQuery | None = None) -> list[MirroredEvent]:
        query = query or EventQuery()
        limit = self._someday_weekly_limit if query.someday else None
        return await self._event_store.find(user_id, query, limit=limit)

    async def read_by_id(self, user_id: str, event_id: str) -> MirroredEvent:
        event = await self._event_store.find_one(user_id, event_id)
        if event is None:
            raise EventNotFound(f"Event {event_id!r} not found for user {user_id!r}")
        return event

    async def update_by_id(
        self, user_id: str, event_id: str, event: MirroredEvent
    ) -> MirroredEvent:
        """Apply ``event`` remotely (create, update or remove), then replace locally."""
        existing = await self.read_by_id(user_id, event_id)
        event = event.model_copy(update={"id": None, "user": user_id})
        plan = plan_remote_sync("update", event, existing)
        remote_id = await self._apply_remote(user_id, plan, event)
        event = event.model_copy(update={"remote_id": remote_id})

        if not event.is_someday and event.remote_id is None:
            raise InternalInconsistencyError(
                f"Event {event_id!r} has no remote id after remote sync"
            )

        try:
            updated = await self._event_store.replace(user_id, event_id, event)
        except Exception as exc:
            if plan.action is RemoteSyncAction.NONE:
                raise
            self._log_local_failure("update", user_id, event_id, plan)
            raise InternalInconsistencyError(
                f"Event {event_id!r} was changed remotely but could not be saved locally"
            ) from exc
        if updated is None:
            if plan.action is RemoteSyncAction.NONE:
                raise EventNotFound(f"Event {event_id!r} not found for user {user_id!r}")
            self._log_local_failure("update", user_id, event_id, plan)
            raise InternalInconsistencyError(
                f"Event {event_id!r} was changed remotely but vanished locally"
            )
        return updated

    async def update_many(self, user_id: str, events: Sequence[MirroredEvent]) -> None:
        raise NotImplementedError("Bulk event update is not supported")

    async def delete_by_id(self, user_id: str, event_id: str) -> int:
        """Delete remotely (non-someday events), then locally.

        Raises ``MissingRemoteId`` without touching local state when a
        non-someday event has no remote id.
        """
        if not event_id or event_id == "undefined":
            raise ValidationError("No event id provided")

        event = await self.read_by_id(user_id, event_id)
        plan = plan_remote_sync("delete", event)
        await self._apply_remote(user_id, plan, event)
        try:
            deleted = await self._event_store.delete_many(user_id, "id", [event_id])
        except Exception as exc:
            if plan.action is RemoteSyncAction.NONE:
                raise
            self._log_local_failure("delete", user_id, event_id, plan)
            raise InternalInconsistencyError(
                f"Event {event_id!r} was deleted remotely but could not be deleted locally"
            ) from exc
        if deleted == 0 and plan.action is not RemoteSyncAction.NONE:
            self._log_local_failure("delete", user_id, event_id, plan)
            raise InternalInconsistencyError(
                f"Event {event_id!r} was deleted remotely but vanished locally"
            )
        return deleted

    async def delete_many(
        self, user_id: str, key: DeleteKey, ids: Sequence[str]
    ) -> DeleteManyResult:
        """Delete local events by id or remote id; the remote calendar is not touched."""
        deleted = await self._event_store.delete_many(user_id, key, ids)
        errors: list[str] = []
        if deleted != len(ids):
            errors.append(f"Only deleted {deleted}/{len(ids)} events")
        return DeleteManyResult(deleted_count=deleted, errors=errors)

    async def delete_all_by_user(self, user_id: str) -> int:
        # Local mirror only; never removes the user's remote events.
        return await self._event_store.delete_all(user_id)

    async def _apply_remote(
        self, user_id: str, plan: RemoteSyncPlan, event: MirroredEvent
    ) -> str | None:
        """Run the planned remote call and return the event's remote id afterwards."""
        if plan.action is RemoteSyncAction.NONE:
            return event.remote_id

        client = await self._client_for(user_id)
        if plan.action is RemoteSyncAction.CREATE:
            created = await client.create_event(
                calendar_id=plan.calendar_id, body=event.to_remote_body()
            )
            if not created.id:
                raise InternalInconsistencyError("Remote create returned no event id")
            logger.debug("Created remote event %s for user=%s", created.id, user_id)
            return created.id

        if plan.remote_id is None:
            raise InternalInconsistencyError(f"No remote id to {plan.action.value} remotely")
        if plan.action is RemoteSyncAction.UPDATE:
            await client.update_event(
                calendar_id=plan.calendar_id,
                event_id=plan.remote_id,
                body=event.to_remote_body(),
            )
            return plan.remote_id

        await client.delete_event(calendar_id=plan.calendar_id, event_id=plan.remote_id)
        logger.debug("Deleted remote event %s for user=%s", plan.remote_id, user_id)
        return None

    @staticmethod
    def _log_local_failure(
        operation: str, user_id: str, event_id: str, plan: RemoteSyncPlan
    ) -> None:
        logger.error(
            "Local %s failed after remote %s: user=%s event_id=%s remote_id=%s; "
            "local and remote calendars have diverged",
            operation,
            plan.action.value,
            user_id,
            event_id,
            plan.remote_id,
        )
