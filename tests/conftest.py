"""Shared fixtures for the calsync test suite.

Provides in-memory doubles for both sides of the mirror so reconciler and
entry-point tests never touch the network.
"""

from __future__ import annotations

import itertools
from datetime import datetime
from typing import Any

import pytest

from calsync.config import GoogleConfig, NotionConfig, PropertyNames, SyncConfig, SyncSettings
from calsync.models import (
    CalendarEvent,
    CalendarInfo,
    RemoteRecord,
    StructuredRecord,
    record_to_notion_properties,
)
from calsync.notion import HardRemoteError, extract_plain_text


class InMemoryCalendarSource:
    """Calendar source double keyed by calendar name."""

    def __init__(self) -> None:
        self.calendars: dict[str, CalendarInfo] = {}
        self.events: dict[str, list[CalendarEvent]] = {}
        self.list_events_calls: list[tuple[str, datetime, datetime]] = []

    def add(self, calendar_name: str, *events: CalendarEvent) -> None:
        self.calendars.setdefault(
            calendar_name,
            CalendarInfo(calendar_id=f"{calendar_name.lower()}@group", name=calendar_name),
        )
        self.events.setdefault(calendar_name, []).extend(events)

    def remove(self, calendar_name: str, provider_id: str) -> None:
        self.events[calendar_name] = [
            event for event in self.events[calendar_name] if event.provider_id != provider_id
        ]

    async def list_calendars(self) -> list[CalendarInfo]:
        return list(self.calendars.values())

    async def list_events(
        self,
        calendar: CalendarInfo,
        start: datetime,
        end: datetime,
    ) -> list[CalendarEvent]:
        self.list_events_calls.append((calendar.name, start, end))
        return [
            event
            for event in self.events.get(calendar.name, [])
            if event.start_at < end and event.end_at > start
        ]


class InMemoryNotionStore:
    """Remote store double that keeps Notion-shaped page properties."""

    def __init__(self, properties: PropertyNames, schema: set[str] | None = None) -> None:
        self._properties = properties
        self.schema = set(properties.all()) if schema is None else schema
        self.pages: dict[str, RemoteRecord] = {}
        self.calls: list[tuple[str, Any]] = []
        self.fail_identities: set[str] = set()
        self._ids = itertools.count(1)

    def seed(self, properties: dict[str, Any], *, archived: bool = False) -> str:
        page_id = f"page-{next(self._ids)}"
        self.pages[page_id] = self._record(page_id, properties, archived=archived)
        return page_id

    def _record(self, page_id: str, properties: dict[str, Any], *, archived: bool) -> RemoteRecord:
        return RemoteRecord(
            page_id=page_id,
            properties=properties,
            archived=archived,
            identity=extract_plain_text(properties.get(self._properties.identity)),
        )

    def live_pages(self) -> list[RemoteRecord]:
        return [page for page in self.pages.values() if not page.archived]

    def _check_failure(self, record: StructuredRecord) -> None:
        value = record.get(self._properties.identity)
        if value is not None and getattr(value, "text", None) in self.fail_identities:
            raise HardRemoteError(status_code=400, message="validation_error: rejected")

    async def find_by_identity(self, identity: str) -> list[RemoteRecord]:
        self.calls.append(("find_by_identity", identity))
        return [
            page for page in self.pages.values() if page.identity == identity and not page.archived
        ][:1]

    async def query_by_date_range(self, start: datetime, end: datetime) -> list[RemoteRecord]:
        self.calls.append(("query_by_date_range", (start, end)))
        return list(self.pages.values())

    async def create(self, record: StructuredRecord) -> RemoteRecord:
        self.calls.append(("create", record))
        self._check_failure(record)
        page_id = self.seed(record_to_notion_properties(record))
        return self.pages[page_id]

    async def update(self, page_id: str, record: StructuredRecord) -> RemoteRecord:
        self.calls.append(("update", page_id))
        self._check_failure(record)
        merged = {**self.pages[page_id].properties, **record_to_notion_properties(record)}
        self.pages[page_id] = self._record(page_id, merged, archived=False)
        return self.pages[page_id]

    async def archive(self, page_id: str) -> RemoteRecord:
        self.calls.append(("archive", page_id))
        page = self.pages[page_id]
        self.pages[page_id] = page.model_copy(update={"archived": True})
        return self.pages[page_id]

    async def get_schema_field_names(self) -> set[str]:
        self.calls.append(("get_schema_field_names", None))
        return set(self.schema)


@pytest.fixture
def property_names() -> PropertyNames:
    return PropertyNames()


@pytest.fixture
def calendar_source() -> InMemoryCalendarSource:
    return InMemoryCalendarSource()


@pytest.fixture
def notion_store(property_names: PropertyNames) -> InMemoryNotionStore:
    return InMemoryNotionStore(property_names)


@pytest.fixture
def sync_config(property_names: PropertyNames) -> SyncConfig:
    return SyncConfig(
        notion=NotionConfig(token="secret_test", database_id="db-1", properties=property_names),
        google=GoogleConfig(client_id="cid", client_secret="csecret", refresh_token="rtoken"),
        sync=SyncSettings(timezone="UTC"),
    )


@pytest.fixture
def make_notion_store(property_names: PropertyNames):
    def _make(schema: set[str] | None = None) -> InMemoryNotionStore:
        return InMemoryNotionStore(property_names, schema=schema)

    return _make
