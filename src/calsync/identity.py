"""Stable identity keys correlating calendar events with Notion pages."""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

from calsync.models import CalendarEvent

# Google appends this to iCal UIDs for natively created events; the same event
# may surface with or without it depending on the API used.
PROVIDER_ID_SUFFIX_PATTERN = re.compile(r"@google\.com$", re.IGNORECASE)
FALLBACK_IDENTITY_SEPARATOR = "::"
# Keeps a fallback identity inside one 2000-character Notion rich-text segment.
MAX_FALLBACK_TITLE_CHARS = 1900

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def normalize_provider_id(provider_id: str | None) -> str | None:
    """Return the provider id without the provider suffix, or ``None`` if blank."""
    if not isinstance(provider_id, str):
        return None
    normalized = PROVIDER_ID_SUFFIX_PATTERN.sub("", provider_id.strip()).strip()
    return normalized or None


def epoch_millis(value: datetime) -> int:
    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return (aware - _EPOCH) // timedelta(milliseconds=1)


def identity(event: CalendarEvent) -> str:
    """Derive the identity string for *event*.

    Uses the provider identifier when present.  Otherwise falls back to
    ``"{startEpochMillis}::{title}"``, which collides for two events with the
    same title starting at the same instant.  The title is stripped and capped
    so the key reads back from Notion exactly as it was written.
    """
    provider_id = normalize_provider_id(event.provider_id)
    if provider_id is not None:
        return provider_id
    title = (event.title or "").strip()[:MAX_FALLBACK_TITLE_CHARS].strip()
    return f"{epoch_millis(event.start_at)}{FALLBACK_IDENTITY_SEPARATOR}{title}"


def is_fallback_identity(event: CalendarEvent) -> bool:
    return normalize_provider_id(event.provider_id) is None
