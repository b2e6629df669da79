"""Reconciliation of calendar events against the Notion mirror.

One run moves linearly through ``idle -> upserting -> archiving -> done``:

- **upserting**: every enumerated event is projected, pruned to the live
  schema and written, updating the page that carries its identity or
  creating one.
- **archiving**: every page dated inside the window whose identity was not
  produced by an enumerated event is archived.  Pages without an identity
  count as unmatched.

Runs share no state; everything is rediscovered from both sides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, tzinfo
from enum import StrEnum
from typing import Literal, Protocol

from opentelemetry import trace

from calsync.config import PropertyNames, SyncSettings
from calsync.google_calendar import CalendarSource
from calsync.identity import identity, is_fallback_identity
from calsync.models import CalendarEvent, CalendarInfo, RemoteRecord, StructuredRecord
from calsync.notion import NotionError
from calsync.projector import EventProjector
from calsync.schema import missing_fields, prune

logger = logging.getLogger(__name__)


class ReconcileError(RuntimeError):
    """Base error raised by the reconciler."""


class MissingRequiredPropertyError(ReconcileError):
    """The database lacks a property the reconciler cannot work without."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(
            f"Notion database is missing required propert{'y' if len(missing) == 1 else 'ies'}: "
            f"{', '.join(missing)}"
        )


class SyncRunError(ReconcileError):
    """Raised after a completed run in which one or more events failed to write."""

    def __init__(self, result: SyncRunResult) -> None:
        self.result = result
        super().__init__(
            f"Sync run {result.window.name!r} finished with {result.failed} failed event(s) "
            f"out of {len(result.outcomes)}"
        )


class RemoteStore(Protocol):
    """Remote operations the reconciler needs from the mirror database."""

    async def find_by_identity(self, identity: str) -> list[RemoteRecord]: ...

    async def query_by_date_range(self, start: datetime, end: datetime) -> list[RemoteRecord]: ...

    async def create(self, record: StructuredRecord) -> RemoteRecord: ...

    async def update(self, page_id: str, record: StructuredRecord) -> RemoteRecord: ...

    async def archive(self, page_id: str) -> RemoteRecord: ...

    async def get_schema_field_names(self) -> set[str]: ...


class SyncPhase(StrEnum):
    idle = "idle"
    upserting = "upserting"
    archiving = "archiving"
    done = "done"


@dataclass(frozen=True)
class SyncWindow:
    """Reconciliation window [start, end)."""

    name: str
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError("window end must be after its start")


@dataclass(frozen=True)
class SourcedEvent:
    calendar: CalendarInfo
    event: CalendarEvent


@dataclass(frozen=True)
class EventOutcome:
    identity: str
    calendar_name: str
    title: str
    action: Literal["created", "updated", "failed"]
    page_id: str | None = None
    error: str | None = None


@dataclass
class SyncRunResult:
    window: SyncWindow
    outcomes: list[EventOutcome] = field(default_factory=list)
    archived: list[str] = field(default_factory=list)

    def _count(self, action: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.action == action)

    @property
    def created(self) -> int:
        return self._count("created")

    @property
    def updated(self) -> int:
        return self._count("updated")

    @property
    def failed(self) -> int:
        return self._count("failed")

    @property
    def succeeded(self) -> bool:
        return self.failed == 0


def _date_property_start(record: RemoteRecord, date_property: str) -> str | None:
    payload = record.properties.get(date_property)
    if not isinstance(payload, dict):
        return None
    date_payload = payload.get("date")
    if not isinstance(date_payload, dict):
        return None
    start = date_payload.get("start")
    return start if isinstance(start, str) and start.strip() else None


def record_start(record: RemoteRecord, date_property: str, timezone: tzinfo) -> datetime | None:
    """Parse the start of a page's date property; date-only values are local midnight."""
    raw = _date_property_start(record, date_property)
    if raw is None:
        return None
    normalized = raw.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        if "T" not in normalized:
            return datetime.combine(date.fromisoformat(normalized), time(), tzinfo=timezone)
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone)


class Reconciler:
    """Mirrors calendar events into the remote store for one window at a time."""

    def __init__(
        self,
        *,
        source: CalendarSource,
        store: RemoteStore,
        properties: PropertyNames,
        settings: SyncSettings,
        projector: EventProjector | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self._source = source
        self._store = store
        self._properties = properties
        self._settings = settings
        self._timezone = settings.tzinfo
        self._projector = projector or EventProjector(properties)
        self._tracer = tracer or trace.get_tracer("calsync")
        self.phase = SyncPhase.idle

    async def enumerate_events(self, window: SyncWindow) -> list[SourcedEvent]:
        """List events of every selected calendar overlapping the window."""
        calendars = await self._source.list_calendars()
        allowlist = self._settings.calendars
        if allowlist:
            available = {calendar.name for calendar in calendars}
            for name in allowlist:
                if name not in available:
                    logger.warning("Configured calendar %r was not found", name)
            calendars = [calendar for calendar in calendars if calendar.name in allowlist]

        sourced: list[SourcedEvent] = []
        for calendar in calendars:
            events = await self._source.list_events(calendar, window.start, window.end)
            logger.debug("Calendar %r returned %d event(s)", calendar.name, len(events))
            sourced.extend(SourcedEvent(calendar=calendar, event=event) for event in events)
        return sourced

    async def load_schema(self) -> set[str]:
        """Fetch the live schema and check the properties lookups depend on."""
        schema = await self._store.get_schema_field_names()
        required = [self._properties.identity, self._properties.date]
        missing_required = [name for name in required if name not in schema]
        if missing_required:
            raise MissingRequiredPropertyError(missing_required)

        skipped = missing_fields(self._properties.all(), schema)
        if skipped:
            logger.debug(
                "Notion database lacks propert(ies) %s; they will not be written",
                ", ".join(skipped),
            )
        return schema

    async def upsert_range(
        self,
        window: SyncWindow,
        *,
        events: list[SourcedEvent] | None = None,
        schema: set[str] | None = None,
    ) -> list[EventOutcome]:
        """Create or update one page per event in the window."""
        self.phase = SyncPhase.upserting
        if events is None:
            events = await self.enumerate_events(window)
        if schema is None:
            schema = await self.load_schema()

        outcomes: list[EventOutcome] = []
        seen: dict[str, str] = {}
        with self._tracer.start_as_current_span("calsync.upsert") as span:
            span.set_attribute("calsync.window", window.name)
            span.set_attribute("calsync.events", len(events))
            for item in events:
                event_identity = identity(item.event)
                self._warn_on_collision(event_identity, item, seen)
                outcome = await self._upsert_one(item, event_identity, schema)
                outcomes.append(outcome)

            span.set_attribute("calsync.failed", sum(o.action == "failed" for o in outcomes))
        return outcomes

    def _warn_on_collision(
        self,
        event_identity: str,
        item: SourcedEvent,
        seen: dict[str, str],
    ) -> None:
        previous = seen.get(event_identity)
        if previous is not None:
            logger.warning(
                "Identity %r produced by more than one event (%r, then %r in %r)%s; "
                "the later event overwrites the earlier page",
                event_identity,
                previous,
                item.event.title,
                item.calendar.name,
                " via start+title fallback" if is_fallback_identity(item.event) else "",
            )
        seen[event_identity] = item.event.title or ""

    async def _upsert_one(
        self,
        item: SourcedEvent,
        event_identity: str,
        schema: set[str],
    ) -> EventOutcome:
        title = item.event.title or ""
        record = prune(
            self._projector.project(item.event, item.calendar.name, self._timezone),
            schema,
        )
        try:
            matches = await self._store.find_by_identity(event_identity)
            live = [match for match in matches if not match.archived]
            if live:
                page = await self._store.update(live[0].page_id, record)
                action: Literal["created", "updated"] = "updated"
            else:
                page = await self._store.create(record)
                action = "created"
        except NotionError as exc:
            if self._settings.halt_on_error:
                raise
            logger.error(
                "Failed to write event %r (%s) from calendar %r: %s",
                title,
                event_identity,
                item.calendar.name,
                exc,
            )
            return EventOutcome(
                identity=event_identity,
                calendar_name=item.calendar.name,
                title=title,
                action="failed",
                error=str(exc),
            )

        logger.debug("%s page %s for event %r", action.capitalize(), page.page_id, title)
        return EventOutcome(
            identity=event_identity,
            calendar_name=item.calendar.name,
            title=title,
            action=action,
            page_id=page.page_id,
        )

    def _within_window(self, record: RemoteRecord, window: SyncWindow) -> bool:
        start = record_start(record, self._properties.date, self._timezone)
        if start is None:
            return True
        return window.start <= start < window.end

    async def archive_stale(
        self,
        window: SyncWindow,
        *,
        identities: set[str] | None = None,
    ) -> list[str]:
        """Archive pages dated in the window whose identity no event produced.

        Returns the archived page ids.
        """
        self.phase = SyncPhase.archiving
        if identities is None:
            identities = {identity(item.event) for item in await self.enumerate_events(window)}

        archived: list[str] = []
        with self._tracer.start_as_current_span("calsync.archive") as span:
            span.set_attribute("calsync.window", window.name)
            records = await self._store.query_by_date_range(window.start, window.end)
            candidates = [record for record in records if self._within_window(record, window)]
            span.set_attribute("calsync.remote_records", len(candidates))

            for record in candidates:
                if record.identity is not None and record.identity in identities:
                    continue
                if record.archived:
                    continue
                await self._store.archive(record.page_id)
                archived.append(record.page_id)
                logger.debug(
                    "Archived page %s (identity=%r)",
                    record.page_id,
                    record.identity,
                )
            span.set_attribute("calsync.archived", len(archived))
        return archived

    async def run(self, window: SyncWindow) -> SyncRunResult:
        """Run both phases over *window*.

        Raises
        ------
        SyncRunError
            After both phases complete, when any event failed to write.
        """
        self.phase = SyncPhase.idle
        logger.info(
            "Starting %s sync for %s .. %s",
            window.name,
            window.start.isoformat(),
            window.end.isoformat(),
        )
        schema = await self.load_schema()
        events = await self.enumerate_events(window)

        result = SyncRunResult(window=window)
        result.outcomes = await self.upsert_range(window, events=events, schema=schema)
        result.archived = await self.archive_stale(
            window,
            identities={identity(item.event) for item in events},
        )
        self.phase = SyncPhase.done

        logger.info(
            "Finished %s sync: %d created, %d updated, %d archived, %d failed",
            window.name,
            result.created,
            result.updated,
            len(result.archived),
            result.failed,
        )
        if not result.succeeded:
            raise SyncRunError(result)
        return result
