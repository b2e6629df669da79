"""Projection of calendar events into Notion-shaped structured records."""

from __future__ import annotations

from datetime import UTC, datetime, tzinfo

from calsync.config import PropertyNames
from calsync.identity import identity
from calsync.models import (
    CalendarEvent,
    DateValue,
    MultiSelectValue,
    RichTextValue,
    SelectValue,
    StructuredRecord,
    TitleValue,
    UrlValue,
)

DEFAULT_TITLE = "(No title)"
MAX_ATTENDEES = 50
# Notion caps a rich-text segment at 2000 characters.
MAX_TEXT_CHARS = 1900
TRUNCATION_MARKER = "…(truncated)"


def _text(value: str | None) -> str:
    return value if isinstance(value, str) else ""


def utc_instant(value: datetime) -> str:
    """Format *value* as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def truncate_text(value: str) -> str:
    if len(value) <= MAX_TEXT_CHARS:
        return value
    return value[:MAX_TEXT_CHARS] + TRUNCATION_MARKER


def project_date(event: CalendarEvent, timezone: tzinfo) -> DateValue:
    if event.all_day:
        start = event.start_at
        local_start = start.astimezone(timezone) if start.tzinfo is not None else start
        return DateValue(start=local_start.date().isoformat())
    return DateValue(start=utc_instant(event.start_at), end=utc_instant(event.end_at))


def _attendee_emails(attendees: list[str]) -> tuple[str, ...]:
    emails = [email.strip() for email in attendees if isinstance(email, str) and email.strip()]
    return tuple(emails[:MAX_ATTENDEES])


class EventProjector:
    """Builds a ``StructuredRecord`` for one event.

    Never raises for missing optional event data; absent values become empty
    rich text, an empty multi-select or a null URL so that an update clears
    the remote field.
    """

    def __init__(self, properties: PropertyNames) -> None:
        self._properties = properties

    def project(
        self,
        event: CalendarEvent,
        origin_label: str,
        timezone: tzinfo,
    ) -> StructuredRecord:
        names = self._properties
        title = truncate_text(_text(event.title).strip()) or DEFAULT_TITLE
        return {
            names.title: TitleValue(text=title),
            names.date: project_date(event, timezone),
            names.calendar: SelectValue(name=origin_label or None),
            names.location: RichTextValue(text=truncate_text(_text(event.location))),
            names.description: RichTextValue(text=truncate_text(_text(event.description))),
            names.attendees: MultiSelectValue(names=_attendee_emails(event.attendees)),
            names.url: UrlValue(url=event.url or None),
            names.identity: RichTextValue(text=identity(event)),
        }
