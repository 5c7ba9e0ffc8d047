"""Shared fixtures: in-memory store, frozen clock, scripted Meta endpoints."""

from datetime import date

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from spendboard.core.clock import FixedClock
from spendboard.database import init_db
from spendboard.storage.store import SyncStore

TODAY = date(2025, 6, 12)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def store(session):
    return SyncStore(session, batch_size=2)


@pytest.fixture
def clock():
    return FixedClock(TODAY)


class FakeEndpoints:
    """Scripted stand-in for MetaEndpoints.

    `failures` maps (stage, account_id) to the exception that call raises;
    use account_id None for the account list.
    """

    def __init__(
        self,
        accounts=None,
        campaigns=None,
        ads=None,
        budgets=None,
        active_ads=None,
        failures=None,
    ):
        self.accounts = accounts or []
        self.campaigns = campaigns or {}
        self.ads = ads or {}
        self.budgets = budgets or {}
        self.active_ads = active_ads or {}
        self.failures = failures or {}
        self.calls = []
        self.closed = 0

    def _call(self, stage, account_id=None, *window):
        self.calls.append((stage, account_id, *window))
        error = self.failures.get((stage, account_id))
        if error is not None:
            raise error

    def stage_calls(self, stage):
        return [c for c in self.calls if c[0] == stage]

    async def fetch_ad_accounts(self):
        self._call("accounts")
        return list(self.accounts)

    async def fetch_campaign_insights(self, account_id, since, until):
        self._call("campaigns", account_id, since, until)
        return list(self.campaigns.get(account_id, []))

    async def fetch_ad_insights(self, account_id, since, until):
        self._call("ads", account_id, since, until)
        return list(self.ads.get(account_id, []))

    async def fetch_campaign_budgets(self, account_id):
        self._call("budgets", account_id)
        return list(self.budgets.get(account_id, []))

    async def fetch_active_ad_campaign_ids(self, account_id):
        self._call("active_ads", account_id)
        return set(self.active_ads.get(account_id, set()))

    async def close(self):
        self.closed += 1


@pytest.fixture
def fake_endpoints():
    """The FakeEndpoints class, so tests can script their own upstream."""
    return FakeEndpoints
