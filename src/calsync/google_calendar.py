"""Google Calendar as the read-only source of truth for the mirror.

This module defines:
- ``CalendarSource``: the contract the reconciler reads events through
- ``GoogleCalendarSource``: Google Calendar v3 REST implementation with
  refresh-token OAuth and paginated calendar/event enumeration
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any, Protocol
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx

from calsync.config import GoogleConfig
from calsync.models import CalendarEvent, CalendarInfo
from calsync.notion import RetryPolicy, is_transient_status
from calsync.projector import utc_instant

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_EVENTS_PAGE_SIZE = 250
TOKEN_DEFAULT_LIFETIME_SECONDS = 3600


class CalendarSourceError(RuntimeError):
    """Base error raised by calendar source helpers."""


class CalendarTokenRefreshError(CalendarSourceError):
    """Raised when refresh-token exchange fails."""


class CalendarRequestError(CalendarSourceError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class CalendarSource(Protocol):
    """Read-only calendar enumeration used by the reconciler."""

    async def list_calendars(self) -> list[CalendarInfo]:
        """Return every calendar visible to the account."""
        ...

    async def list_events(
        self,
        calendar: CalendarInfo,
        start: datetime,
        end: datetime,
    ) -> list[CalendarEvent]:
        """Return events of *calendar* overlapping [start, end)."""
        ...


@dataclass(frozen=True)
class _AccessToken:
    value: str
    expires_at: datetime

    def usable(self) -> bool:
        return datetime.now(UTC) < self.expires_at


def _google_error_message(response: httpx.Response) -> str:
    """Short single-line reason from a Google error body, for logs and exceptions."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    detail: Any = None
    if isinstance(payload, dict):
        error = payload.get("error")
        detail = error.get("message") if isinstance(error, dict) else error
        if isinstance(payload.get("error_description"), str):
            detail = f"{detail}: {payload['error_description']}"
    if not isinstance(detail, str) or not detail.strip():
        detail = response.text
    return " ".join(detail.split())[:200] or "Request failed without an error payload"


def _token_lifetime(payload: dict[str, Any]) -> timedelta:
    expires_in = payload.get("expires_in")
    if isinstance(expires_in, bool) or not isinstance(expires_in, int | float) or expires_in <= 0:
        expires_in = TOKEN_DEFAULT_LIFETIME_SECONDS
    # Renew a minute early, but never cache a token for less than 30 seconds.
    return timedelta(seconds=max(int(expires_in) - 60, 30))


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_google_event_boundary(
    payload: dict[str, Any],
    *,
    timezone: tzinfo,
) -> tuple[datetime, bool]:
    """Return the boundary instant and whether it was a date-only value."""
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        return (
            datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=timezone),
            True,
        )

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _extract_attendee_emails(payload: Any) -> list[str]:
    if not isinstance(payload, list):
        return []
    emails: list[str] = []
    for entry in payload:
        if isinstance(entry, dict):
            email = _normalize_optional_text(entry.get("email"))
        elif isinstance(entry, str):
            email = _normalize_optional_text(entry)
        else:
            email = None
        if email is not None:
            emails.append(email)
    return emails


def google_event_to_calendar_event(
    payload: dict[str, Any],
    *,
    calendar_name: str,
    timezone: tzinfo,
) -> CalendarEvent | None:
    """Map one ``events.list`` item; cancelled events map to ``None``."""
    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return None

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError("Google Calendar event is missing start/end payloads")

    start_at, all_day = _parse_google_event_boundary(start_payload, timezone=timezone)
    end_at, _ = _parse_google_event_boundary(end_payload, timezone=timezone)

    # Descriptions keep their whitespace; only the type is checked.
    description = payload.get("description")

    return CalendarEvent(
        title=_normalize_optional_text(payload.get("summary")),
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        location=_normalize_optional_text(payload.get("location")),
        description=description if isinstance(description, str) else None,
        attendees=_extract_attendee_emails(payload.get("attendees")),
        calendar_name=calendar_name,
        provider_id=_normalize_optional_text(payload.get("id")),
        url=_normalize_optional_text(payload.get("htmlLink")),
    )


class GoogleCalendarSource:
    """Google Calendar v3 source authenticating with a long-lived refresh token."""

    def __init__(
        self,
        credentials: GoogleConfig,
        *,
        timezone: str = "UTC",
        page_size: int = DEFAULT_EVENTS_PAGE_SIZE,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        blank = [
            name
            for name in ("client_id", "client_secret", "refresh_token")
            if not getattr(credentials, name).strip()
        ]
        if blank:
            raise CalendarSourceError(f"Google credentials are blank: {', '.join(blank)}")
        self._credentials = credentials
        self._timezone = ZoneInfo(timezone)
        self._page_size = min(max(1, int(page_size)), DEFAULT_EVENTS_PAGE_SIZE)
        self._retry_policy = retry_policy or RetryPolicy()
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._token: _AccessToken | None = None

    @classmethod
    def from_config(
        cls,
        config: GoogleConfig,
        *,
        timezone: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> GoogleCalendarSource:
        return cls(config, timezone=timezone, http_client=http_client)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> GoogleCalendarSource:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _refresh_token(self) -> _AccessToken:
        form = {
            "client_id": self._credentials.client_id.strip(),
            "client_secret": self._credentials.client_secret.strip(),
            "refresh_token": self._credentials.refresh_token.strip(),
            "grant_type": "refresh_token",
        }
        try:
            response = await self._http_client.post(GOOGLE_OAUTH_TOKEN_URL, data=form)
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(f"Token refresh request failed: {exc}") from exc
        if not response.is_success:
            raise CalendarTokenRefreshError(
                f"Token refresh rejected ({response.status_code}): "
                f"{_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError("Token endpoint returned invalid JSON") from exc
        value = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(value, str) or not value.strip():
            raise CalendarTokenRefreshError("Token response has no access_token")

        logger.debug("Refreshed Google access token")
        return _AccessToken(
            value=value.strip(),
            expires_at=datetime.now(UTC) + _token_lifetime(payload),
        )

    async def _request_once(
        self,
        url: str,
        params: dict[str, Any] | None,
        *,
        force_refresh: bool,
    ) -> httpx.Response:
        if force_refresh or self._token is None or not self._token.usable():
            self._token = await self._refresh_token()
        try:
            return await self._http_client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {self._token.value}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarRequestError(status_code=None, message=str(exc)) from exc

    async def _request_google_json(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(url, params, force_refresh=False)
        if response.status_code == 401:
            response = await self._request_once(url, params, force_refresh=True)

        attempt = 1
        while is_transient_status(response.status_code) and (
            attempt < self._retry_policy.max_attempts
        ):
            logger.warning(
                "Calendar API request failed transiently (status=%d), retrying in %.1fs",
                response.status_code,
                self._retry_policy.backoff_seconds,
            )
            await asyncio.sleep(self._retry_policy.backoff_seconds)
            response = await self._request_once(url, params, force_refresh=False)
            attempt += 1

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_google_error_message(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarSourceError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarSourceError("Google Calendar API returned a non-object JSON payload")
        return payload

    async def _paginate(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            page_params = dict(params)
            if page_token is not None:
                page_params["pageToken"] = page_token
            payload = await self._request_google_json(path, params=page_params)

            raw_items = payload.get("items", [])
            if not isinstance(raw_items, list):
                raise CalendarSourceError("Google Calendar response items must be an array")
            items.extend(item for item in raw_items if isinstance(item, dict))

            page_token = _normalize_optional_text(payload.get("nextPageToken"))
            if page_token is None:
                return items

    async def list_calendars(self) -> list[CalendarInfo]:
        items = await self._paginate("/users/me/calendarList", {"maxResults": 250})
        calendars: list[CalendarInfo] = []
        for item in items:
            calendar_id = _normalize_optional_text(item.get("id"))
            if calendar_id is None:
                logger.warning("Skipping calendar list entry without id")
                continue
            name = (
                _normalize_optional_text(item.get("summaryOverride"))
                or _normalize_optional_text(item.get("summary"))
                or calendar_id
            )
            calendars.append(CalendarInfo(calendar_id=calendar_id, name=name))
        return calendars

    async def list_events(
        self,
        calendar: CalendarInfo,
        start: datetime,
        end: datetime,
    ) -> list[CalendarEvent]:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
            "maxResults": self._page_size,
            "timeMin": utc_instant(start),
            "timeMax": utc_instant(end),
        }
        items = await self._paginate(
            f"/calendars/{quote(calendar.calendar_id, safe='')}/events",
            params,
        )

        events: list[CalendarEvent] = []
        for item in items:
            try:
                event = google_event_to_calendar_event(
                    item,
                    calendar_name=calendar.name,
                    timezone=self._timezone,
                )
            except ValueError as exc:
                logger.warning(
                    "Skipping malformed event %r in calendar %r: %s",
                    item.get("id"),
                    calendar.name,
                    exc,
                )
                continue
            if event is not None:
                events.append(event)
        return events
