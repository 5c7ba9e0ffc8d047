"""Spendboard - Sync Run Model and Sync Request/Result Schemas."""

from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field as PydanticField
from sqlmodel import SQLModel, Field


# ─────────────────────────────────────────────
# DATABASE MODELS
# ─────────────────────────────────────────────


class SyncStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class SyncRun(SQLModel, table=True):
    """One record per orchestration attempt.

    The latest `success` row that fetched campaigns is what the range
    planner resumes from; winners-only runs never advance it.
    """

    __tablename__ = "sync_runs"

    id: Optional[int] = Field(default=None, primary_key=True)
    workspace_id: Optional[str] = Field(default=None, index=True)
    synced_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    date_since: str = Field(description="Planned window start, YYYY-MM-DD")
    date_until: str = Field(description="Planned window end, YYYY-MM-DD")
    status: str = Field(default=SyncStatus.RUNNING.value, index=True)
    mode: Optional[str] = Field(default=None, description="Planner mode that produced the window")
    campaigns_count: int = 0
    error_message: Optional[str] = None


class SchemaVersion(SQLModel, table=True):
    """Single-row table stamped by init_db / migrations."""

    __tablename__ = "schema_version"

    id: int = Field(default=1, primary_key=True)
    version: int
    applied_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS
# ─────────────────────────────────────────────


class WinnersFilters(BaseModel):
    """Ad-level filters applied before persistence."""

    min_spend: Optional[float] = None
    min_roas: Optional[float] = None
    markets: Optional[List[str]] = None
    products: Optional[List[str]] = None

    def is_empty(self) -> bool:
        return (
            self.min_spend is None
            and self.min_roas is None
            and not self.markets
            and not self.products
        )


class SyncOptions(BaseModel):
    """Caller-supplied switches for one sync invocation."""

    force_full: bool = False
    skip_ads: bool = False
    skip_budgets: bool = False
    winners_only: bool = False
    winners_days: Optional[int] = PydanticField(default=None, ge=1)
    campaign_days: Optional[int] = PydanticField(default=None, ge=1)
    """Explicit backfill: re-sync the last N days (inclusive of today)."""
    account_filter: Optional[List[str]] = None
    """Restrict the run to these account ids or names."""
    winners_filters: Optional[WinnersFilters] = None


class SyncMode(str, Enum):
    WINNERS_ONLY = "winners_only"
    BACKFILL = "backfill"
    FULL = "full"
    FIRST_SYNC = "first_sync"
    INCREMENTAL = "incremental"
    UP_TO_DATE = "up_to_date"


class SyncRange(BaseModel):
    """Output of the range planner."""

    since: date
    until: date
    incremental: bool
    already_up_to_date: bool = False
    fetch_campaigns: bool = True
    mode: SyncMode


class RangeOut(BaseModel):
    since: str
    until: str


class SyncResult(BaseModel):
    success: bool = True
    campaigns_count: int = 0
    budgets_count: int = 0
    ads_count: int = 0
    incremental: bool = False
    already_up_to_date: bool = False
    winners_only: bool = False
    skipped_accounts: List[str] = []
    sync_run_id: Optional[int] = None
    synced_at: str = ""
    range: RangeOut
