"""Spendboard - Sync Range Planner.

Decides the [since, until] window of a sync from the last successful run
and the requested mode. Pure: "today" and stored row counts are passed in.
"""

from datetime import date, timedelta
from typing import Optional

from pydantic import BaseModel

from spendboard.config import settings
from spendboard.models.sync_models import SyncMode, SyncOptions, SyncRange, SyncRun


class SyncLimits(BaseModel):
    """Window tunables, snapshotted from settings so tests can inject their own."""

    full_since: date = date(2025, 1, 1)
    first_sync_days: int = 30
    backfill_days: int = 2
    max_backfill_days: int = 90
    winners_default_days: int = 30
    winners_max_days: int = 60

    @classmethod
    def from_settings(cls) -> "SyncLimits":
        return cls(
            full_since=settings.full_since,
            first_sync_days=settings.first_sync_days,
            backfill_days=settings.backfill_days,
            max_backfill_days=settings.max_backfill_days,
            winners_default_days=settings.winners_default_days,
            winners_max_days=settings.winners_max_days,
        )


def parse_day(value) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def plan_sync_range(
    options: SyncOptions,
    last_run: Optional[SyncRun],
    today: date,
    rows_on_last_day: Optional[int] = None,
    limits: Optional[SyncLimits] = None,
) -> SyncRange:
    """Compute the window for one sync invocation.

    `rows_on_last_day` is the stored campaign-fact count for the last synced
    day; zero means the table was cleared behind our back.
    """
    limits = limits or SyncLimits.from_settings()
    until = today

    if options.winners_only:
        days = min(options.winners_days or limits.winners_default_days, limits.winners_max_days)
        return SyncRange(
            since=until - timedelta(days=days),
            until=until,
            incremental=False,
            fetch_campaigns=False,
            mode=SyncMode.WINNERS_ONLY,
        )

    if options.campaign_days:
        days = min(options.campaign_days, limits.max_backfill_days)
        return SyncRange(
            since=until - timedelta(days=days - 1),
            until=until,
            incremental=True,
            mode=SyncMode.BACKFILL,
        )

    if options.force_full:
        return SyncRange(
            since=min(limits.full_since, until),
            until=until,
            incremental=False,
            mode=SyncMode.FULL,
        )

    first_sync = SyncRange(
        since=until - timedelta(days=limits.first_sync_days),
        until=until,
        incremental=False,
        mode=SyncMode.FIRST_SYNC,
    )
    if last_run is None or not last_run.date_until:
        return first_sync

    last_until = parse_day(last_run.date_until)
    next_since = last_until + timedelta(days=1)
    backfill_start = min(last_until, until) - timedelta(days=max(limits.backfill_days - 1, 0))

    if next_since > until:
        if limits.backfill_days <= 0:
            return SyncRange(
                since=until,
                until=until,
                incremental=True,
                already_up_to_date=True,
                fetch_campaigns=False,
                mode=SyncMode.UP_TO_DATE,
            )
        if rows_on_last_day == 0:
            return first_sync.model_copy(update={"already_up_to_date": True})
        return SyncRange(
            since=backfill_start,
            until=until,
            incremental=True,
            already_up_to_date=True,
            mode=SyncMode.UP_TO_DATE,
        )

    since = min(next_since, backfill_start) if limits.backfill_days > 0 else next_since
    return SyncRange(
        since=since,
        until=until,
        incremental=True,
        mode=SyncMode.INCREMENTAL,
    )
