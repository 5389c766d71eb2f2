"""Remote calendar collaborators.

:class:`RemoteCalendar` is what the sync orchestrator talks to.
:class:`GoogleCalendarRemote` mirrors every Google calendar into locked busy
events, keeps a dedicated plan calendar for accepted/locked plan blocks and
applies time edits made on that calendar back onto the linked blocks.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from weekgrid.calendar.errors import (
    PlanBlockNotFoundError,
    RemoteAuthError,
    RemoteRequestError,
)
from weekgrid.calendar.models import (
    EventLink,
    PlanBlock,
    SyncStatus,
    format_local_datetime,
    parse_item_datetime,
    parse_plan_block_id,
    plan_block_item_id,
)
from weekgrid.calendar.store import ENTITY_PLAN_BLOCK, PlanStore

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_PROVIDER = "google"

DEFAULT_PLAN_CALENDAR_NAME = "Weekgrid Plan"
DEFAULT_WINDOW_PAST_DAYS = 30
DEFAULT_WINDOW_FUTURE_DAYS = 90

PRIVATE_ID_PROPERTY = "weekgrid_id"
PRIVATE_TYPE_PROPERTY = "weekgrid_type"
PLAN_CALENDAR_SETTING = "google.plan_calendar_id"
LAST_SYNC_SETTING = "google.last_sync"

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0


class RemoteCalendar(abc.ABC):
    """Remote calendar provider as seen by the sync orchestrator."""

    @abc.abstractmethod
    async def get_sync_status(self) -> SyncStatus:
        """Report whether the remote is connected and when it last synced."""
        ...

    @abc.abstractmethod
    async def sync_now(self) -> bool:
        """Run one full pull/push cycle.

        Returns ``True`` on success.  Transport or API failures raise
        :exc:`RemoteCalendarError` subclasses.
        """
        ...

    async def shutdown(self) -> None:
        """Release provider resources."""
        return None


class DisconnectedRemote(RemoteCalendar):
    """Remote used when no provider credentials are configured."""

    async def get_sync_status(self) -> SyncStatus:
        return SyncStatus(connected=False)

    async def sync_now(self) -> bool:
        return False


# ---------------------------------------------------------------------------
# Google OAuth
# ---------------------------------------------------------------------------


class GoogleCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

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
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(self, credentials: GoogleCredentials, http_client: httpx.AsyncClient) -> None:
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
            raise RemoteAuthError(f"Google OAuth token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise RemoteAuthError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteAuthError("Google OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise RemoteAuthError("Google OAuth token response is missing a non-empty access_token")

        expires_in_raw = payload.get("expires_in")
        expires_in_seconds = _coerce_expires_in_seconds(expires_in_raw)
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


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
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


# ---------------------------------------------------------------------------
# Google event helpers
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _local_to_google(value: str) -> str:
    """Render a local naive boundary as an offset-aware RFC 3339 string."""
    return parse_item_datetime(value).astimezone().isoformat()


def google_event_times(event: dict[str, Any]) -> tuple[str, str] | None:
    """Return an event's ``(start_at, end_at)`` in local naive form.

    All-day events keep their bare ``yyyy-MM-dd`` dates.  Returns ``None``
    when the event carries no usable start.
    """
    start = event.get("start")
    end = event.get("end")
    if not isinstance(start, dict):
        return None
    end = end if isinstance(end, dict) else {}

    start_dt = start.get("dateTime")
    if isinstance(start_dt, str) and start_dt.strip():
        end_dt = end.get("dateTime") if isinstance(end.get("dateTime"), str) else start_dt
        try:
            return (
                format_local_datetime(parse_item_datetime(start_dt)),
                format_local_datetime(parse_item_datetime(end_dt)),
            )
        except ValueError:
            logger.warning("Skipping Google event %s with unparseable times", event.get("id"))
            return None

    start_date = start.get("date")
    if isinstance(start_date, str) and start_date.strip():
        end_date = end.get("date") if isinstance(end.get("date"), str) else start_date
        return start_date.strip(), end_date.strip()
    return None


def _extract_plan_block_id(event: dict[str, Any]) -> int | None:
    extended = event.get("extendedProperties")
    if not isinstance(extended, dict):
        return None
    private = extended.get("private")
    if not isinstance(private, dict):
        return None
    raw = private.get(PRIVATE_ID_PROPERTY)
    if not isinstance(raw, str):
        return None
    if raw.isdigit():
        return int(raw)
    return parse_plan_block_id(raw)


def _block_event_title(block: PlanBlock) -> str:
    return block.title or block.block_type.value


def _same_instant(left: str, right: str) -> bool:
    try:
        return parse_item_datetime(left) == parse_item_datetime(right)
    except ValueError:
        return left == right


# ---------------------------------------------------------------------------
# Google remote
# ---------------------------------------------------------------------------


class GoogleCalendarRemote(RemoteCalendar):
    """Google Calendar remote with OAuth refresh-token and authenticated request helpers."""

    def __init__(
        self,
        store: PlanStore,
        credentials: GoogleCredentials,
        http_client: httpx.AsyncClient | None = None,
        *,
        email: str | None = None,
        plan_calendar_name: str = DEFAULT_PLAN_CALENDAR_NAME,
        window_past_days: int = DEFAULT_WINDOW_PAST_DAYS,
        window_future_days: int = DEFAULT_WINDOW_FUTURE_DAYS,
    ) -> None:
        self._store = store
        self._email = email
        self._plan_calendar_name = plan_calendar_name
        self._window_past_days = window_past_days
        self._window_future_days = window_future_days
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._oauth = _GoogleOAuthClient(credentials, self._http_client)

    async def get_sync_status(self) -> SyncStatus:
        raw_last_sync = await self._store.get_setting(LAST_SYNC_SETTING)
        last_sync: datetime | None = None
        if isinstance(raw_last_sync, str):
            try:
                last_sync = datetime.fromisoformat(raw_last_sync)
            except ValueError:
                logger.warning("Ignoring malformed last-sync timestamp %r", raw_last_sync)
        return SyncStatus(connected=True, email=self._email, last_sync=last_sync)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def sync_now(self) -> bool:
        calendars = await self._list_calendars()
        if not calendars:
            logger.info("Google account has no calendars; nothing to sync")
            return True

        plan_calendar_id = await self._ensure_plan_calendar(calendars)
        today = datetime.now().date()
        window_start = today - timedelta(days=self._window_past_days)
        window_end = today + timedelta(days=self._window_future_days)

        for calendar in calendars:
            calendar_id = calendar["id"]
            if calendar_id == plan_calendar_id:
                continue
            events = await self._list_events(calendar_id, window_start, window_end)
            await self._pull_external_events(calendar_id, events)

        plan_events = await self._list_events(plan_calendar_id, window_start, window_end)
        await self._sync_plan_calendar(plan_calendar_id, plan_events, window_start, window_end)

        await self._store.set_setting(LAST_SYNC_SETTING, datetime.now(UTC).isoformat())
        logger.info("Google calendar sync completed (calendars=%d)", len(calendars))
        return True

    # -- pull ----------------------------------------------------------------

    async def _pull_external_events(
        self, calendar_id: str, events: list[dict[str, Any]]
    ) -> None:
        mirrored = 0
        removed = 0
        for event in events:
            event_id = event.get("id")
            if not isinstance(event_id, str):
                continue
            if event.get("status") == "cancelled":
                if await self._store.delete_external_event(
                    provider=GOOGLE_PROVIDER,
                    remote_calendar_id=calendar_id,
                    remote_event_id=event_id,
                ):
                    removed += 1
                continue
            times = google_event_times(event)
            if times is None:
                continue
            summary = event.get("summary")
            await self._store.upsert_external_event(
                provider=GOOGLE_PROVIDER,
                remote_calendar_id=calendar_id,
                remote_event_id=event_id,
                title=summary if isinstance(summary, str) and summary else "(No title)",
                start_at=times[0],
                end_at=times[1],
                etag=event.get("etag"),
            )
            mirrored += 1
        logger.debug(
            "Pulled calendar %s (mirrored=%d, removed=%d)", calendar_id, mirrored, removed
        )

    async def _sync_plan_calendar(
        self,
        calendar_id: str,
        events: list[dict[str, Any]],
        window_start: date,
        window_end: date,
    ) -> None:
        live_events = {
            event["id"]: event
            for event in events
            if isinstance(event.get("id"), str) and event.get("status") != "cancelled"
        }

        # Remote edits win only when the event changed since we last wrote it.
        for event in live_events.values():
            block_id = _extract_plan_block_id(event)
            if block_id is None:
                continue
            link = await self._store.get_event_link(
                provider=GOOGLE_PROVIDER, entity_type=ENTITY_PLAN_BLOCK, entity_id=block_id
            )
            if link is not None and link.etag == event.get("etag"):
                continue
            times = google_event_times(event)
            if times is None:
                continue
            try:
                block = await self._store.get_plan_block(block_id)
            except PlanBlockNotFoundError:
                logger.debug(
                    "Plan calendar event %s points at missing block %d", event["id"], block_id
                )
                continue
            unchanged = _same_instant(block.start_at, times[0]) and _same_instant(
                block.end_at, times[1]
            )
            if not unchanged:
                await self._store.apply_remote_block_update(
                    block_id, start_at=times[0], end_at=times[1]
                )
                logger.info("Applied remote time edit to plan block %d", block_id)
            await self._store.upsert_event_link(
                EventLink(
                    provider=GOOGLE_PROVIDER,
                    entity_type=ENTITY_PLAN_BLOCK,
                    entity_id=block_id,
                    remote_calendar_id=calendar_id,
                    remote_event_id=event["id"],
                    etag=event.get("etag"),
                )
            )

        for block in await self._store.list_pushable_blocks(window_start, window_end):
            await self._push_block(calendar_id, block, live_events)

    # -- push ----------------------------------------------------------------

    async def _push_block(
        self, calendar_id: str, block: PlanBlock, live_events: dict[str, dict[str, Any]]
    ) -> None:
        link = await self._store.get_event_link(
            provider=GOOGLE_PROVIDER, entity_type=ENTITY_PLAN_BLOCK, entity_id=block.id
        )
        remote_event = live_events.get(link.remote_event_id) if link is not None else None

        if remote_event is None:
            created = await self._insert_block_event(calendar_id, block)
            event_id = created.get("id")
            if not isinstance(event_id, str) or not event_id:
                raise RemoteRequestError(
                    status_code=200, message="Event insert response is missing an id"
                )
            await self._store.upsert_event_link(
                EventLink(
                    provider=GOOGLE_PROVIDER,
                    entity_type=ENTITY_PLAN_BLOCK,
                    entity_id=block.id,
                    remote_calendar_id=calendar_id,
                    remote_event_id=event_id,
                    etag=created.get("etag"),
                )
            )
            logger.info("Pushed plan block %d to Google", block.id)
            return

        times = google_event_times(remote_event)
        title = _block_event_title(block)
        unchanged = (
            times is not None
            and _same_instant(block.start_at, times[0])
            and _same_instant(block.end_at, times[1])
            and remote_event.get("summary") == title
        )
        if unchanged:
            return
        patched = await self._patch_block_event(calendar_id, remote_event["id"], block)
        await self._store.upsert_event_link(
            EventLink(
                provider=GOOGLE_PROVIDER,
                entity_type=ENTITY_PLAN_BLOCK,
                entity_id=block.id,
                remote_calendar_id=calendar_id,
                remote_event_id=remote_event["id"],
                etag=patched.get("etag"),
            )
        )
        logger.info("Updated Google event for plan block %d", block.id)

    def _block_event_body(self, block: PlanBlock) -> dict[str, Any]:
        return {
            "summary": _block_event_title(block),
            "start": {"dateTime": _local_to_google(block.start_at)},
            "end": {"dateTime": _local_to_google(block.end_at)},
            "extendedProperties": {
                "private": {
                    PRIVATE_ID_PROPERTY: plan_block_item_id(block.id),
                    PRIVATE_TYPE_PROPERTY: "plan_block",
                }
            },
        }

    async def _insert_block_event(self, calendar_id: str, block: PlanBlock) -> dict[str, Any]:
        return await self._request_google_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            json_body=self._block_event_body(block),
        )

    async def _patch_block_event(
        self, calendar_id: str, event_id: str, block: PlanBlock
    ) -> dict[str, Any]:
        return await self._request_google_json(
            "PATCH",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            json_body=self._block_event_body(block),
        )

    # -- calendars -------------------------------------------------------------

    async def _ensure_plan_calendar(self, calendars: list[dict[str, Any]]) -> str:
        stored = await self._store.get_setting(PLAN_CALENDAR_SETTING)
        listed = {calendar.get("id") for calendar in calendars}
        if isinstance(stored, str) and stored and stored in listed:
            return stored
        if isinstance(stored, str) and stored:
            logger.warning("Stored plan calendar %r is no longer listed; resolving again", stored)

        for calendar in calendars:
            if calendar.get("summary") == self._plan_calendar_name:
                await self._store.set_setting(PLAN_CALENDAR_SETTING, calendar["id"])
                return calendar["id"]

        created = await self._request_google_json(
            "POST",
            "/calendars",
            json_body={"summary": self._plan_calendar_name, "timeZone": "UTC"},
        )
        calendar_id = created.get("id")
        if not isinstance(calendar_id, str) or not calendar_id:
            raise RemoteRequestError(
                status_code=200, message="Calendar creation response is missing an id"
            )
        await self._store.set_setting(PLAN_CALENDAR_SETTING, calendar_id)
        calendars.append({"id": calendar_id, "summary": self._plan_calendar_name})
        logger.info("Created Google plan calendar %r", self._plan_calendar_name)
        return calendar_id

    async def _list_calendars(self) -> list[dict[str, Any]]:
        calendars: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {}
            if page_token:
                params["pageToken"] = page_token
            payload = await self._request_google_json(
                "GET", "/users/me/calendarList", params=params or None
            )
            items = payload.get("items")
            if isinstance(items, list):
                calendars.extend(
                    item
                    for item in items
                    if isinstance(item, dict) and isinstance(item.get("id"), str)
                )
            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                return calendars

    async def _list_events(
        self, calendar_id: str, window_start: date, window_end: date
    ) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "singleEvents": "true",
                "showDeleted": "true",
                "orderBy": "startTime",
                "maxResults": 250,
                "timeMin": _google_rfc3339(datetime.combine(window_start, datetime.min.time())),
                "timeMax": _google_rfc3339(datetime.combine(window_end, datetime.min.time())),
            }
            if page_token:
                params["pageToken"] = page_token
            payload = await self._request_google_json(
                "GET", f"/calendars/{quote(calendar_id, safe='')}/events", params=params
            )
            items = payload.get("items")
            if isinstance(items, list):
                events.extend(item for item in items if isinstance(item, dict))
            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                return events

    # -- transport -------------------------------------------------------------

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method, path=path, params=params, json_body=json_body
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise RemoteRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

        if response.status_code == 204:
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
                message="Google Calendar API returned an unexpected JSON payload shape",
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
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method, url=url, params=params, json_body=json_body, force_refresh=False
        )

        if response.status_code == 401:
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=True
            )

        # Honour Retry-After on 429, exponential backoff on 503.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Google Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
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
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            return await self._http_client.request(
                method, url, params=params, json=json_body, headers=headers
            )
        except httpx.HTTPError as exc:
            raise RemoteRequestError(
                status_code=0, message=f"Google Calendar request failed: {exc}"
            ) from exc
