"""Calendar service capability and its Google Calendar implementation.

The sync engine talks to the remote calendar only through ``CalendarClient``.
Implementations translate transport failures into the capability-level errors
of ``compass.sync.errors``:

- access revoked (refresh token rejected, 401 after refresh) -> ``RemoteAccessRevokedError``
- 404 -> ``RemoteNotFoundError``
- 410 on a sync-token request -> ``SyncTokenExpiredError``
- rate limits, 5xx, network errors -> ``TransientRemoteError``
- anything else non-2xx -> ``RemoteRequestError``
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError

from compass.sync.errors import (
    RemoteAccessRevokedError,
    RemoteNotFoundError,
    RemoteRequestError,
    SyncTokenExpiredError,
    TransientRemoteError,
)
from compass.sync.models import (
    CalendarListPage,
    EventPage,
    RemoteCalendar,
    RemoteEvent,
    WatchResponse,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_PAGE_SIZE = 250

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
# 403 reasons Google uses for quota exhaustion rather than permission problems.
RATE_LIMIT_403_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


class CalendarClient(abc.ABC):
    """Authenticated calendar-service capability for one user."""

    @abc.abstractmethod
    async def watch_events(
        self,
        *,
        calendar_id: str,
        channel_id: str,
        expiration: datetime,
    ) -> WatchResponse:
        """Open a push-notification channel on a calendar's events."""
        ...

    @abc.abstractmethod
    async def stop_channel(self, *, channel_id: str, resource_id: str) -> None:
        """Close a push-notification channel.

        Raises ``RemoteNotFoundError`` when the channel is already gone.
        """
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        *,
        calendar_id: str,
        sync_token: str | None = None,
        page_token: str | None = None,
    ) -> EventPage:
        """Fetch one page of events, all of them or changes since ``sync_token``.

        Raises ``SyncTokenExpiredError`` when ``sync_token`` is no longer valid.
        """
        ...

    @abc.abstractmethod
    async def list_calendars(self, *, page_token: str | None = None) -> CalendarListPage:
        """Fetch one page of the user's calendar list."""
        ...

    @abc.abstractmethod
    async def create_event(self, *, calendar_id: str, body: dict[str, Any]) -> RemoteEvent:
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
    ) -> RemoteEvent:
        ...

    @abc.abstractmethod
    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        """Delete an event; an already-deleted event counts as success."""
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release client resources."""
        ...


# Resolves an authenticated client for a user id.
ClientFactory = Callable[[str], Awaitable[CalendarClient]]


class GoogleOAuthCredentials(BaseModel):
    """Google OAuth client credentials for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized


class _GoogleOAuthClient:
    """Refresh-token OAuth helper with in-memory access-token cache."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransientRemoteError(f"Google OAuth token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            if _is_invalid_grant(response):
                raise RemoteAccessRevokedError(
                    "Google OAuth refresh token was rejected (invalid_grant)"
                )
            raise _classify_status(response)

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteRequestError(
                status_code=response.status_code,
                message="Google OAuth token endpoint returned invalid JSON",
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise RemoteRequestError(
                status_code=response.status_code,
                message="Google OAuth token response is missing a non-empty access_token",
            )

        expires_in_raw = payload.get("expires_in")
        expires_in_seconds = _coerce_expires_in_seconds(expires_in_raw)
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


class GoogleCalendarClient(CalendarClient):
    """Google Calendar v3 client with OAuth refresh and rate-limit retries."""

    def __init__(
        self,
        *,
        credentials: GoogleOAuthCredentials,
        webhook_address: str | None = None,
        webhook_token: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_retries: int = RATE_LIMIT_MAX_RETRIES,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._webhook_address = webhook_address
        self._webhook_token = webhook_token
        self._page_size = max(1, min(int(page_size), DEFAULT_PAGE_SIZE))
        self._max_retries = max(0, int(max_retries))
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
        )
        self._oauth = _GoogleOAuthClient(credentials, self._http_client)

    async def watch_events(
        self,
        *,
        calendar_id: str,
        channel_id: str,
        expiration: datetime,
    ) -> WatchResponse:
        if not self._webhook_address:
            raise ValueError("webhook_address is required to open a watch channel")

        body: dict[str, Any] = {
            "id": channel_id,
            "type": "web_hook",
            "address": self._webhook_address,
            "expiration": str(int(expiration.timestamp() * 1000)),
        }
        if self._webhook_token:
            body["token"] = self._webhook_token

        payload = await self._request_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events/watch",
            json_body=body,
        )
        return WatchResponse(
            channel_id=_as_non_empty_string(payload.get("id")),
            resource_id=_as_non_empty_string(payload.get("resourceId")),
            expiration=_parse_expiration_millis(payload.get("expiration")),
        )

    async def stop_channel(self, *, channel_id: str, resource_id: str) -> None:
        await self._request_json(
            "POST",
            "/channels/stop",
            json_body={"id": channel_id, "resourceId": resource_id},
        )

    async def list_events(
        self,
        *,
        calendar_id: str,
        sync_token: str | None = None,
        page_token: str | None = None,
    ) -> EventPage:
        params: dict[str, Any] = {"maxResults": self._page_size}
        if sync_token is not None:
            params["syncToken"] = sync_token
        if page_token is not None:
            params["pageToken"] = page_token

        payload = await self._request_json(
            "GET",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            params=params,
            has_sync_token=sync_token is not None,
        )
        items = payload.get("items")
        events: list[RemoteEvent] = []
        if isinstance(items, list):
            for item in items:
                if not isinstance(item, dict):
                    continue
                events.append(_parse_remote_event(item))

        return EventPage(
            events=events,
            next_page_token=_as_non_empty_string(payload.get("nextPageToken")),
            next_sync_token=_as_non_empty_string(payload.get("nextSyncToken")),
        )

    async def list_calendars(self, *, page_token: str | None = None) -> CalendarListPage:
        params: dict[str, Any] = {"maxResults": self._page_size}
        if page_token is not None:
            params["pageToken"] = page_token

        payload = await self._request_json("GET", "/users/me/calendarList", params=params)
        items = payload.get("items")
        calendars: list[RemoteCalendar] = []
        if isinstance(items, list):
            for item in items:
                if not isinstance(item, dict) or not _as_non_empty_string(item.get("id")):
                    continue
                calendars.append(RemoteCalendar.model_validate(item))

        return CalendarListPage(
            calendars=calendars,
            next_page_token=_as_non_empty_string(payload.get("nextPageToken")),
            next_sync_token=_as_non_empty_string(payload.get("nextSyncToken")),
        )

    async def create_event(self, *, calendar_id: str, body: dict[str, Any]) -> RemoteEvent:
        payload = await self._request_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            json_body=body,
        )
        return _parse_remote_event(payload)

    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
    ) -> RemoteEvent:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")

        payload = await self._request_json(
            "PUT",
            (
                f"/calendars/{quote(calendar_id, safe='')}"
                f"/events/{quote(normalized_event_id, safe='')}"
            ),
            json_body=body,
        )
        return _parse_remote_event(payload)

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")

        response = await self._request_with_bearer(
            method="DELETE",
            path=(
                f"/calendars/{quote(calendar_id, safe='')}"
                f"/events/{quote(normalized_event_id, safe='')}"
            ),
        )
        # 404/410 mean the event was already deleted.
        if response.status_code in (404, 410):
            logger.debug(
                "delete_event: event '%s' already deleted; treating as success",
                normalized_event_id,
            )
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise _classify_status(response)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        has_sync_token: bool = False,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method,
            path=path,
            params=params,
            json_body=json_body,
        )

        if response.status_code == 410 and has_sync_token:
            raise SyncTokenExpiredError("Google Calendar sync token expired; full import required")

        if response.status_code < 200 or response.status_code >= 300:
            raise _classify_status(response)

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteRequestError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON",
            ) from exc

        if not isinstance(payload, dict):
            raise RemoteRequestError(
                status_code=response.status_code,
                message="Google Calendar API payload must be a JSON object",
            )
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"

        response = await self._request_once(
            method=method, url=url, params=params, json_body=json_body, force_refresh=False
        )

        if response.status_code == 401:
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=True
            )
            if response.status_code == 401:
                raise RemoteAccessRevokedError(
                    "Google Calendar rejected a freshly refreshed access token"
                )

        retry = 0
        while _is_rate_limited(response) and retry < self._max_retries:
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                self._max_retries,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=False
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as exc:
            raise TransientRemoteError(f"Google Calendar request failed: {exc}") from exc


def _classify_status(response: httpx.Response) -> Exception:
    status = response.status_code
    message = _safe_google_error_message(response)
    if status == 404:
        return RemoteNotFoundError(message)
    if _is_rate_limited(response) or status >= 500:
        return TransientRemoteError(f"Google Calendar API unavailable ({status}): {message}")
    return RemoteRequestError(status_code=status, message=message)


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code in RATE_LIMIT_RETRY_STATUS_CODES:
        return True
    if response.status_code == 403:
        return bool(_google_error_reasons(response) & RATE_LIMIT_403_REASONS)
    return False


def _google_error_reasons(response: httpx.Response) -> set[str]:
    try:
        payload = response.json()
    except ValueError:
        return set()
    error_payload = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error_payload, dict):
        return set()
    reasons: set[str] = set()
    errors = error_payload.get("errors")
    if isinstance(errors, list):
        for item in errors:
            if isinstance(item, dict) and isinstance(item.get("reason"), str):
                reasons.add(item["reason"])
    return reasons


def _is_invalid_grant(response: httpx.Response) -> bool:
    try:
        payload = response.json()
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("error") == "invalid_grant"


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        message = payload.get("error_description") or error_payload
        if isinstance(message, str) and message.strip():
            return " ".join(message.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _as_non_empty_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_expiration_millis(value: Any) -> datetime | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


def _parse_remote_event(payload: dict[str, Any]) -> RemoteEvent:
    # Cancelled items in incremental listings carry only id and status, so
    # boundaries are parsed leniently and left for the import engine to judge.
    fields: dict[str, Any] = {
        "id": _as_non_empty_string(payload.get("id")),
        "status": _as_non_empty_string(payload.get("status")),
        "summary": _as_non_empty_string(payload.get("summary")),
        "description": payload.get("description")
        if isinstance(payload.get("description"), str)
        else None,
        "etag": _as_non_empty_string(payload.get("etag")),
        "updated": _as_non_empty_string(payload.get("updated")),
    }
    for key in ("start", "end"):
        boundary = payload.get(key)
        if isinstance(boundary, dict) and (boundary.get("date") or boundary.get("dateTime")):
            fields[key] = boundary
    try:
        return RemoteEvent.model_validate(fields)
    except PydanticValidationError as exc:
        # Keep id and status only; the import engine skips it as invalid.
        logger.warning(
            "Unparseable remote event id=%s: %d validation error(s)",
            fields["id"],
            exc.error_count(),
        )
        return RemoteEvent(id=fields["id"], status=fields["status"])
