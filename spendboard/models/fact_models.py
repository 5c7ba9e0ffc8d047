"""Spendboard - Synced Fact Models (campaign-day, ad-day, budgets).

Fact tables are insert-only during incremental syncs, so a key may briefly
hold more than one row. Readers keep the most recently written one.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Index
from sqlmodel import SQLModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CampaignFact(SQLModel, table=True):
    """One row per (account, campaign, day) with parsed naming attributes."""

    __tablename__ = "campaigns"
    __table_args__ = (
        Index("idx_campaigns_workspace_date", "workspace_id", "date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    workspace_id: Optional[str] = Field(default=None, index=True)
    sync_run_id: Optional[int] = Field(default=None, foreign_key="sync_runs.id")
    account_id: Optional[str] = None
    account_name: Optional[str] = Field(default=None, index=True)
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    date: Optional[str] = Field(default=None, description="YYYY-MM-DD")
    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    code_country: str = Field(default="", index=True)
    product_name: str = "Other"
    product_with_animal: str = "Other"
    animal: str = ""
    type: str = ""
    raw: str = ""
    naming_date: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class AdFact(SQLModel, table=True):
    """One row per (account, ad, day). ROAS is derived at read time."""

    __tablename__ = "ads_raw"
    __table_args__ = (Index("idx_ads_raw_workspace_date", "workspace_id", "date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    workspace_id: Optional[str] = Field(default=None, index=True)
    sync_run_id: Optional[int] = Field(default=None, foreign_key="sync_runs.id")
    ad_id: Optional[str] = None
    ad_name: Optional[str] = None
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    campaign_id: Optional[str] = None
    date: Optional[str] = Field(default=None, description="YYYY-MM-DD")
    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    purchase_count: int = 0
    purchase_value: float = 0.0
    code_country: str = ""
    product_name: str = "Other"
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def roas(self) -> Optional[float]:
        if self.spend > 0:
            return round(self.purchase_value / self.spend, 2)
        return None


class CampaignBudget(SQLModel, table=True):
    """Current budget state, one row per (workspace, account, campaign)."""

    __tablename__ = "campaign_budgets"

    workspace_id: str = Field(primary_key=True)
    account_id: str = Field(primary_key=True)
    campaign_id: str = Field(primary_key=True)
    account_name: Optional[str] = None
    campaign_name: Optional[str] = None
    daily_budget: float = 0.0
    lifetime_budget: float = 0.0
    effective_status: Optional[str] = None
    has_active_ads: Optional[bool] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def daily_equivalent(self) -> float:
        """Daily budget, or lifetime spread over 30 days when no daily is set."""
        if self.daily_budget:
            return self.daily_budget
        return (self.lifetime_budget or 0.0) / 30
