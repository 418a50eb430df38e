"""Calendar sync engine: watch channels, imports, and notification routing."""

from compass.sync.importer import ImportEngine, map_remote_event
from compass.sync.notifications import NotificationRouter, parse_notification
from compass.sync.store import PostgresSyncStore, SyncStore
from compass.sync.watch import WatchChannelManager

__all__ = [
    "ImportEngine",
    "NotificationRouter",
    "PostgresSyncStore",
    "SyncStore",
    "WatchChannelManager",
    "map_remote_event",
    "parse_notification",
]
