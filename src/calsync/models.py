"""Shared data shapes for the calendar to Notion mirror.

This module defines:
- ``CalendarEvent`` / ``CalendarInfo``: read-only calendar side
- tagged property values that make up a ``StructuredRecord``
- ``RemoteRecord``: one Notion page as seen by the reconciler
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class CalendarInfo(BaseModel):
    """One calendar visible to the calendar source."""

    model_config = ConfigDict(frozen=True)

    calendar_id: str
    name: str


class CalendarEvent(BaseModel):
    """Canonical event shape produced by calendar sources.

    Optional fields may be ``None`` when the provider omits them; consumers
    treat ``None`` and the empty string alike.
    """

    title: str | None = None
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    location: str | None = None
    description: str | None = None
    attendees: list[str] = Field(default_factory=list)
    calendar_name: str | None = None
    provider_id: str | None = None
    url: str | None = None


# ---------------------------------------------------------------------------
# Tagged property values
# ---------------------------------------------------------------------------


class TitleValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["title"] = "title"
    text: str

    def to_notion(self) -> dict[str, Any]:
        return {"title": [{"type": "text", "text": {"content": self.text}}]}


class DateValue(BaseModel):
    """Date range; ``end`` is omitted for single-day values."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["date"] = "date"
    start: str
    end: str | None = None

    def to_notion(self) -> dict[str, Any]:
        date_payload: dict[str, Any] = {"start": self.start}
        if self.end is not None:
            date_payload["end"] = self.end
        return {"date": date_payload}


class RichTextValue(BaseModel):
    """Rich text; the empty string serializes to an explicit empty segment list."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["rich_text"] = "rich_text"
    text: str = ""

    def to_notion(self) -> dict[str, Any]:
        if not self.text:
            return {"rich_text": []}
        return {"rich_text": [{"type": "text", "text": {"content": self.text}}]}


class SelectValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["select"] = "select"
    name: str | None = None

    def to_notion(self) -> dict[str, Any]:
        if not self.name:
            return {"select": None}
        # Notion rejects commas in option names.
        return {"select": {"name": self.name.replace(",", " ")}}


class MultiSelectValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["multi_select"] = "multi_select"
    names: tuple[str, ...] = ()

    def to_notion(self) -> dict[str, Any]:
        return {"multi_select": [{"name": name.replace(",", " ")} for name in self.names]}


class UrlValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["url"] = "url"
    url: str | None = None

    def to_notion(self) -> dict[str, Any]:
        return {"url": self.url}


class EmptyValue(BaseModel):
    """Placeholder that leaves the remote property untouched on write."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["empty"] = "empty"

    def to_notion(self) -> dict[str, Any] | None:
        return None


PropertyValue = Annotated[
    TitleValue
    | DateValue
    | RichTextValue
    | SelectValue
    | MultiSelectValue
    | UrlValue
    | EmptyValue,
    Field(discriminator="kind"),
]

# Field name -> tagged value.  Built fresh per event on every run.
StructuredRecord = dict[str, PropertyValue]


def record_to_notion_properties(record: StructuredRecord) -> dict[str, Any]:
    """Serialize a record into a Notion ``properties`` payload."""
    properties: dict[str, Any] = {}
    for field_name, value in record.items():
        payload = value.to_notion()
        if payload is None:
            continue
        properties[field_name] = payload
    return properties


class RemoteRecord(BaseModel):
    """One Notion page in the mirrored database."""

    page_id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    archived: bool = False
    identity: str | None = None
