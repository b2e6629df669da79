"""Sync entry points: monthly full resync and rolling sync.

Both build the calendar source and Notion client from a ``SyncConfig``,
compute their reconciliation window in the configured timezone and hand it
to a :class:`~calsync.reconciler.Reconciler`.
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from calsync.config import SyncConfig
from calsync.core.logging import sync_run_context
from calsync.core.telemetry import get_tracer
from calsync.google_calendar import CalendarSource, GoogleCalendarSource
from calsync.notion import NotionClient
from calsync.reconciler import Reconciler, RemoteStore, SyncRunResult, SyncWindow

logger = logging.getLogger(__name__)

FULL_RESYNC_WINDOW = "full_resync"
ROLLING_WINDOW = "rolling"


def _local_midnight(day: date, timezone: tzinfo) -> datetime:
    return datetime.combine(day, time(), tzinfo=timezone)


def _local_today(now: datetime | None, timezone: tzinfo) -> date:
    current = now or datetime.now(UTC)
    if current.tzinfo is None:
        current = current.replace(tzinfo=UTC)
    return current.astimezone(timezone).date()


def month_window(timezone: tzinfo, *, now: datetime | None = None) -> SyncWindow:
    """The current calendar month in *timezone*: [first of month, first of next month)."""
    today = _local_today(now, timezone)
    first = today.replace(day=1)
    next_first = (first + timedelta(days=32)).replace(day=1)
    return SyncWindow(
        name=FULL_RESYNC_WINDOW,
        start=_local_midnight(first, timezone),
        end=_local_midnight(next_first, timezone),
    )


def rolling_window(
    timezone: tzinfo,
    lookahead_days: int,
    *,
    now: datetime | None = None,
) -> SyncWindow:
    """First of the current month through the end of ``today + lookahead_days``."""
    today = _local_today(now, timezone)
    horizon = today + timedelta(days=lookahead_days + 1)
    return SyncWindow(
        name=ROLLING_WINDOW,
        start=_local_midnight(today.replace(day=1), timezone),
        end=_local_midnight(horizon, timezone),
    )


async def run_window(
    config: SyncConfig,
    window: SyncWindow,
    *,
    source: CalendarSource | None = None,
    store: RemoteStore | None = None,
) -> SyncRunResult:
    """Reconcile *window*, building any collaborator not supplied from *config*."""
    async with AsyncExitStack() as stack:
        if source is None:
            source = await stack.enter_async_context(
                GoogleCalendarSource.from_config(config.google, timezone=config.sync.timezone)
            )
        if store is None:
            store = await stack.enter_async_context(
                NotionClient(
                    token=config.notion.token,
                    database_id=config.notion.database_id,
                    properties=config.notion.properties,
                    api_version=config.notion.api_version,
                )
            )

        reconciler = Reconciler(
            source=source,
            store=store,
            properties=config.notion.properties,
            settings=config.sync,
            tracer=get_tracer(),
        )
        with sync_run_context(window.name) as run_id:
            logger.debug("Sync run %s starting", run_id)
            return await reconciler.run(window)


async def monthly_full_resync(
    config: SyncConfig,
    *,
    now: datetime | None = None,
    source: CalendarSource | None = None,
    store: RemoteStore | None = None,
) -> SyncRunResult:
    window = month_window(config.sync.tzinfo, now=now)
    return await run_window(config, window, source=source, store=store)


async def rolling_sync(
    config: SyncConfig,
    *,
    now: datetime | None = None,
    source: CalendarSource | None = None,
    store: RemoteStore | None = None,
) -> SyncRunResult:
    window = rolling_window(config.sync.tzinfo, config.sync.lookahead_days, now=now)
    return await run_window(config, window, source=source, store=store)
