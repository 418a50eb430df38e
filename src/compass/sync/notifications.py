"""Routes calendar push notifications to incremental imports."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from compass.core.telemetry import sync_span
from compass.sync.errors import InvalidNotification, UnknownChannel
from compass.sync.importer import ImportEngine
from compass.sync.models import RESOURCE_STATE_EXISTS, ImportResult, NotificationPayload
from compass.sync.store import SyncStore

logger = logging.getLogger(__name__)


def parse_notification(headers: Mapping[str, Any]) -> NotificationPayload:
    """Build a payload from ``X-Goog-*`` headers or an equivalent mapping."""
    try:
        return NotificationPayload.model_validate(dict(headers))
    except PydanticValidationError as exc:
        raise InvalidNotification(f"Malformed notification: {exc.error_count()} error(s)") from exc


class NotificationRouter:
    """Resolves a notification to its watched calendar and imports the changes."""

    def __init__(self, *, store: SyncStore, importer: ImportEngine) -> None:
        self._store = store
        self._importer = importer

    async def handle_notification(
        self, payload: NotificationPayload | Mapping[str, Any]
    ) -> ImportResult | None:
        """Handle one notification.

        Returns ``None`` for handshake (``sync``) and other non-change states.
        Raises ``UnknownChannel`` when no watched calendar owns the resource id.
        """
        if not isinstance(payload, NotificationPayload):
            payload = parse_notification(payload)

        with sync_span(
            "notification.route",
            resource_id=payload.resource_id,
            channel_id=payload.channel_id,
            resource_state=payload.resource_state,
        ):
            if payload.resource_state != RESOURCE_STATE_EXISTS:
                logger.debug(
                    "Acknowledged %r notification for channel_id=%s",
                    payload.resource_state,
                    payload.channel_id,
                )
                return None

            found = await self._store.find_by_resource_id(payload.resource_id)
            if found is None:
                logger.warning(
                    "Notification for unknown resource_id=%s channel_id=%s",
                    payload.resource_id,
                    payload.channel_id,
                )
                raise UnknownChannel(payload.resource_id)

            user_id, channel = found
            if channel.channel_id != payload.channel_id:
                logger.info(
                    "Notification from superseded channel_id=%s (current %s) "
                    "for calendar_id=%s; routing by resource id",
                    payload.channel_id,
                    channel.channel_id,
                    channel.calendar_id,
                )

            summary = await self._importer.import_incremental(user_id, channel.calendar_id)
            return summary.results[0]
