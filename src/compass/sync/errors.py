"""Error taxonomy for the calendar sync engine.

The engine never inspects transport status codes. ``CalendarClient``
implementations translate provider responses into these classes, and the
engine branches on class alone.
"""

from __future__ import annotations


class CompassSyncError(RuntimeError):
    """Base sync engine error."""


# ---------------------------------------------------------------------------
# Families
# ---------------------------------------------------------------------------


class ValidationError(CompassSyncError):
    """Bad or missing identifier, or malformed payload (caller-caused)."""


class NotFoundError(CompassSyncError):
    """Entity absent locally or remotely."""


class RemoteAccessRevokedError(CompassSyncError):
    """The user revoked the app's access to their calendar."""


class ChannelStaleError(CompassSyncError):
    """The remote side says a channel or sync token is gone; re-sync required."""


class TransientRemoteError(CompassSyncError):
    """Network failure or rate limiting; safe to retry at the caller's discretion."""


class InternalInconsistencyError(CompassSyncError):
    """Local and remote state diverged and needs operator attention."""


class RemoteRequestError(CompassSyncError):
    """Remote request failed for a reason outside the other families."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Calendar API request failed ({status_code}): {message}")


# ---------------------------------------------------------------------------
# Capability-level errors raised by CalendarClient implementations
# ---------------------------------------------------------------------------


class RemoteNotFoundError(NotFoundError):
    """The remote resource (event, channel, calendar) does not exist."""


class SyncTokenExpiredError(ChannelStaleError):
    """The sync token is expired or invalid; caller should run a full import."""


# ---------------------------------------------------------------------------
# Watch channel lifecycle
# ---------------------------------------------------------------------------


class WatchAlreadyExists(ValidationError):
    """A channel is already open for this user and calendar."""

    def __init__(self, user_id: str, calendar_id: str) -> None:
        self.user_id = user_id
        self.calendar_id = calendar_id
        super().__init__(f"Already watching calendar {calendar_id!r} for user {user_id!r}")


class MissingResourceId(InternalInconsistencyError):
    """The remote watch response did not include a resource id."""


class StopFailed(CompassSyncError):
    """Stopping a channel failed for an unclassified reason; state untouched."""


class NoActiveWatches(NotFoundError):
    """The user has no open channels to stop."""


class ChannelDoesNotExist(ChannelStaleError):
    """The remote channel was already gone; its local state has been deleted."""


class AccessRevoked(RemoteAccessRevokedError):
    """Access was revoked; all of the user's sync state has been deleted."""


# ---------------------------------------------------------------------------
# Import / routing / propagation
# ---------------------------------------------------------------------------


class InvalidRemoteEvent(ValidationError):
    """A remote event cannot be mirrored (e.g. it has no id)."""


class InvalidNotification(ValidationError):
    """A push notification payload is malformed."""


class UnknownChannel(NotFoundError):
    """No stored channel matches a notification's resource id."""

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"No channel found for resource id {resource_id!r}")


class EventNotFound(NotFoundError):
    """A local event does not exist for this user."""


class MissingRemoteId(ValidationError):
    """A non-someday event has no remote id where one is required."""
