"""Tests for the reconciler: upsert, archive and full-run semantics."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from calsync.config import SyncSettings
from calsync.models import CalendarEvent
from calsync.notion import HardRemoteError
from calsync.reconciler import (
    MissingRequiredPropertyError,
    Reconciler,
    SyncPhase,
    SyncRunError,
    SyncWindow,
    record_start,
)

pytestmark = pytest.mark.unit

MAY = SyncWindow(
    name="full_resync",
    start=datetime(2024, 5, 1, tzinfo=UTC),
    end=datetime(2024, 6, 1, tzinfo=UTC),
)


def _event(
    provider_id: str | None,
    title: str,
    start: datetime,
    *,
    hours: int = 1,
) -> CalendarEvent:
    return CalendarEvent(
        title=title,
        start_at=start,
        end_at=start + timedelta(hours=hours),
        provider_id=provider_id,
    )


def _page(identity: str | None, start: str) -> dict:
    properties: dict = {"Date": {"date": {"start": start}}}
    if identity is not None:
        properties["EventId"] = {"rich_text": [{"plain_text": identity}]}
    return properties


def _reconciler(source, store, property_names, **settings) -> Reconciler:
    return Reconciler(
        source=source,
        store=store,
        properties=property_names,
        settings=SyncSettings(**settings),
    )


class TestUpsert:
    async def test_creates_one_page_per_event(self, calendar_source, notion_store, property_names):
        calendar_source.add(
            "Work",
            _event("a1", "Standup", datetime(2024, 5, 2, 9, tzinfo=UTC)),
            _event("a2", "Review", datetime(2024, 5, 3, 14, tzinfo=UTC)),
        )
        reconciler = _reconciler(calendar_source, notion_store, property_names)

        outcomes = await reconciler.upsert_range(MAY)

        assert [o.action for o in outcomes] == ["created", "created"]
        assert sorted(page.identity for page in notion_store.live_pages()) == ["a1", "a2"]
        assert reconciler.phase == SyncPhase.upserting

    async def test_second_pass_only_updates(self, calendar_source, notion_store, property_names):
        calendar_source.add(
            "Work",
            _event("a1", "Standup", datetime(2024, 5, 2, 9, tzinfo=UTC)),
            _event(None, "Untracked", datetime(2024, 5, 4, 9, tzinfo=UTC)),
        )
        reconciler = _reconciler(calendar_source, notion_store, property_names)

        await reconciler.upsert_range(MAY)
        outcomes = await reconciler.upsert_range(MAY)

        assert [o.action for o in outcomes] == ["updated", "updated"]
        assert len(notion_store.live_pages()) == 2

    async def test_suffixed_provider_id_matches_existing_page(
        self, calendar_source, notion_store, property_names
    ):
        notion_store.seed(_page("abc123", "2024-05-02T09:00:00.000Z"))
        calendar_source.add(
            "Work", _event("abc123@google.com", "Sync", datetime(2024, 5, 2, 9, tzinfo=UTC))
        )
        reconciler = _reconciler(calendar_source, notion_store, property_names)

        outcomes = await reconciler.upsert_range(MAY)

        assert outcomes[0].action == "updated"
        assert outcomes[0].identity == "abc123"
        assert len(notion_store.pages) == 1

    async def test_unknown_fields_are_pruned_before_write(
        self, calendar_source, make_notion_store, property_names
    ):
        store = make_notion_store(schema={"Name", "Date", "EventId"})
        calendar_source.add("Work", _event("a1", "Standup", datetime(2024, 5, 2, 9, tzinfo=UTC)))
        reconciler = _reconciler(calendar_source, store, property_names)

        await reconciler.upsert_range(MAY)

        created = [payload for name, payload in store.calls if name == "create"]
        assert set(created[0]) == {"Name", "Date", "EventId"}

    async def test_failed_event_does_not_stop_the_batch(
        self, calendar_source, notion_store, property_names
    ):
        notion_store.fail_identities = {"bad"}
        calendar_source.add(
            "Work",
            _event("bad", "Broken", datetime(2024, 5, 2, 9, tzinfo=UTC)),
            _event("good", "Fine", datetime(2024, 5, 3, 9, tzinfo=UTC)),
        )
        reconciler = _reconciler(calendar_source, notion_store, property_names)

        outcomes = await reconciler.upsert_range(MAY)

        assert [(o.identity, o.action) for o in outcomes] == [
            ("bad", "failed"),
            ("good", "created"),
        ]
        assert "validation_error" in outcomes[0].error

    async def test_halt_on_error_raises_at_first_failure(
        self, calendar_source, notion_store, property_names
    ):
        notion_store.fail_identities = {"bad"}
        calendar_source.add(
            "Work",
            _event("bad", "Broken", datetime(2024, 5, 2, 9, tzinfo=UTC)),
            _event("good", "Fine", datetime(2024, 5, 3, 9, tzinfo=UTC)),
        )
        reconciler = _reconciler(
            calendar_source, notion_store, property_names, halt_on_error=True
        )

        with pytest.raises(HardRemoteError):
            await reconciler.upsert_range(MAY)
        assert notion_store.live_pages() == []

    async def test_calendar_allowlist(self, calendar_source, notion_store, property_names):
        calendar_source.add("Work", _event("w1", "Work item", datetime(2024, 5, 2, 9, tzinfo=UTC)))
        calendar_source.add("Gym", _event("g1", "Lift", datetime(2024, 5, 2, 18, tzinfo=UTC)))
        reconciler = _reconciler(
            calendar_source, notion_store, property_names, calendars=("Work", "Missing")
        )

        outcomes = await reconciler.upsert_range(MAY)

        assert [o.identity for o in outcomes] == ["w1"]
        assert [call[0] for call in calendar_source.list_events_calls] == ["Work"]

    async def test_identity_collision_is_logged(
        self, calendar_source, notion_store, property_names, caplog
    ):
        start = datetime(2024, 5, 2, 9, tzinfo=UTC)
        calendar_source.add("Work", _event(None, "Sync", start), _event(None, "Sync", start))
        reconciler = _reconciler(calendar_source, notion_store, property_names)

        with caplog.at_level("WARNING", logger="calsync.reconciler"):
            outcomes = await reconciler.upsert_range(MAY)

        assert [o.action for o in outcomes] == ["created", "updated"]
        assert len(notion_store.live_pages()) == 1
        assert any("more than one event" in r.getMessage() for r in caplog.records)


class TestArchive:
    async def test_archives_exactly_remote_minus_calendar(
        self, calendar_source, notion_store, property_names
    ):
        kept = notion_store.seed(_page("keep", "2024-05-02T09:00:00.000Z"))
        stale = notion_store.seed(_page("gone", "2024-05-03T09:00:00.000Z"))
        calendar_source.add("Work", _event("keep", "Keep", datetime(2024, 5, 2, 9, tzinfo=UTC)))
        reconciler = _reconciler(calendar_source, notion_store, property_names)

        archived = await reconciler.archive_stale(MAY)

        assert archived == [stale]
        assert notion_store.pages[kept].archived is False
        assert notion_store.pages[stale].archived is True
        assert reconciler.phase == SyncPhase.archiving

    async def test_page_without_identity_is_archived(
        self, calendar_source, notion_store, property_names
    ):
        orphan = notion_store.seed(_page(None, "2024-05-10"))
        reconciler = _reconciler(calendar_source, notion_store, property_names)

        assert await reconciler.archive_stale(MAY, identities=set()) == [orphan]

    async def test_already_archived_page_is_skipped(
        self, calendar_source, notion_store, property_names
    ):
        notion_store.seed(_page("gone", "2024-05-03T09:00:00.000Z"), archived=True)
        reconciler = _reconciler(calendar_source, notion_store, property_names)

        assert await reconciler.archive_stale(MAY, identities=set()) == []
        assert not any(name == "archive" for name, _ in notion_store.calls)

    async def test_page_dated_at_window_end_is_not_a_candidate(
        self, calendar_source, notion_store, property_names
    ):
        notion_store.seed(_page("june", "2024-06-01"))
        notion_store.seed(_page("april", "2024-04-30T23:00:00.000Z"))
        reconciler = _reconciler(calendar_source, notion_store, property_names)

        assert await reconciler.archive_stale(MAY, identities=set()) == []


class TestRun:
    async def test_full_run_counts(self, calendar_source, notion_store, property_names):
        existing = notion_store.seed(_page("a1", "2024-05-02T09:00:00.000Z"))
        stale = notion_store.seed(_page("old", "2024-05-20T09:00:00.000Z"))
        calendar_source.add(
            "Work",
            _event("a1", "Standup", datetime(2024, 5, 2, 9, tzinfo=UTC)),
            _event("a2", "Review", datetime(2024, 5, 3, 14, tzinfo=UTC)),
        )
        reconciler = _reconciler(calendar_source, notion_store, property_names)

        result = await reconciler.run(MAY)

        assert (result.created, result.updated, result.failed) == (1, 1, 0)
        assert result.archived == [stale]
        assert notion_store.pages[existing].archived is False
        assert reconciler.phase == SyncPhase.done

    async def test_run_is_idempotent(self, calendar_source, notion_store, property_names):
        calendar_source.add(
            "Work",
            _event("a1", "Standup", datetime(2024, 5, 2, 9, tzinfo=UTC)),
            _event(None, "No id", datetime(2024, 5, 5, 9, tzinfo=UTC)),
        )
        reconciler = _reconciler(calendar_source, notion_store, property_names)

        await reconciler.run(MAY)
        second = await reconciler.run(MAY)

        assert (second.created, second.updated, second.archived) == (0, 2, [])
        assert len(notion_store.live_pages()) == 2

    async def test_padded_fallback_title_is_not_archived_after_upsert(
        self, calendar_source, notion_store, property_names
    ):
        calendar_source.add("Work", _event(None, "Standup ", datetime(2024, 5, 2, 9, tzinfo=UTC)))
        reconciler = _reconciler(calendar_source, notion_store, property_names)

        result = await reconciler.run(MAY)

        assert (result.created, result.archived) == (1, [])
        assert [page.identity for page in notion_store.live_pages()] == ["1714640400000::Standup"]

        second = await reconciler.run(MAY)
        assert (second.created, second.updated, second.archived) == (0, 1, [])

    async def test_deleted_event_is_archived_on_next_run(
        self, calendar_source, notion_store, property_names
    ):
        calendar_source.add(
            "Work",
            _event("a1", "Standup", datetime(2024, 5, 2, 9, tzinfo=UTC)),
            _event("a2", "Review", datetime(2024, 5, 3, 14, tzinfo=UTC)),
        )
        reconciler = _reconciler(calendar_source, notion_store, property_names)
        await reconciler.run(MAY)

        calendar_source.remove("Work", "a2")
        result = await reconciler.run(MAY)

        assert len(result.archived) == 1
        assert [page.identity for page in notion_store.live_pages()] == ["a1"]

    async def test_partial_failure_raises_after_both_phases(
        self, calendar_source, notion_store, property_names
    ):
        stale = notion_store.seed(_page("old", "2024-05-20T09:00:00.000Z"))
        notion_store.fail_identities = {"bad"}
        calendar_source.add(
            "Work",
            _event("bad", "Broken", datetime(2024, 5, 2, 9, tzinfo=UTC)),
            _event("good", "Fine", datetime(2024, 5, 3, 9, tzinfo=UTC)),
        )
        reconciler = _reconciler(calendar_source, notion_store, property_names)

        with pytest.raises(SyncRunError) as exc_info:
            await reconciler.run(MAY)

        result = exc_info.value.result
        assert (result.created, result.failed) == (1, 1)
        assert result.archived == [stale]
        assert reconciler.phase == SyncPhase.done

    async def test_missing_identity_property_fails_before_writes(
        self, calendar_source, make_notion_store, property_names
    ):
        store = make_notion_store(schema={"Name", "Date"})
        calendar_source.add("Work", _event("a1", "Standup", datetime(2024, 5, 2, 9, tzinfo=UTC)))
        reconciler = _reconciler(calendar_source, store, property_names)

        with pytest.raises(MissingRequiredPropertyError, match="EventId"):
            await reconciler.run(MAY)
        assert [name for name, _ in store.calls] == ["get_schema_field_names"]


class TestRecordStart:
    def test_date_only_is_local_midnight(self, notion_store, property_names):
        from zoneinfo import ZoneInfo

        page_id = notion_store.seed(_page("x", "2024-05-01"))
        tz = ZoneInfo("Europe/Berlin")

        start = record_start(notion_store.pages[page_id], "Date", tz)

        assert start == datetime(2024, 5, 1, tzinfo=tz)

    def test_missing_date_is_none(self, notion_store):
        page_id = notion_store.seed({})
        assert record_start(notion_store.pages[page_id], "Date", UTC) is None
