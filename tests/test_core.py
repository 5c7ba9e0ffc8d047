"""Clock, TTL cache, workspace locks, error payloads and transformer helpers."""

import asyncio
import json
import logging
from datetime import date

import pytest

from spendboard.connectors.meta.transformer import (
    ad_fact_from_insight,
    apply_winners_filters,
    budget_from_campaign,
    compute_roas,
)
from spendboard.core.cache import WorkspaceTTLCache, credential_hash
from spendboard.core.clock import Clock, FixedClock
from spendboard.core.errors import (
    AuthExpired,
    CredentialMissing,
    UpstreamUnavailable,
    describe_error,
)
from spendboard.core.locks import SyncInProgress, WorkspaceLocks
from spendboard.core.logging import JSONFormatter, bind
from spendboard.models.sync_models import WinnersFilters


# ── Clock ──


def test_fixed_clock():
    clock = FixedClock(date(2025, 6, 12))
    assert clock.today() == date(2025, 6, 12)
    assert clock.now().date() == date(2025, 6, 12)
    clock.advance(5)
    assert clock.monotonic() == 5


def test_clock_uses_reporting_timezone():
    assert str(Clock("UTC").tz) == "UTC"


# ── Cache ──


def test_cache_expires_after_ttl():
    clock = FixedClock(date(2025, 6, 12))
    cache = WorkspaceTTLCache(300, clock)
    cache.set("ws", "tok", ["act_1"])
    clock.advance(299)
    assert cache.get("ws", "tok") == ["act_1"]
    clock.advance(2)
    assert cache.get("ws", "tok") is None


def test_cache_is_keyed_by_workspace_and_credential():
    cache = WorkspaceTTLCache(300, FixedClock(date(2025, 6, 12)))
    cache.set("ws-a", "tok", ["a"])
    cache.set("ws-b", "tok", ["b"])
    assert cache.get("ws-a", "tok") == ["a"]
    assert cache.get("ws-b", "tok") == ["b"]
    assert cache.get("ws-a", "other-token") is None

    cache.invalidate("ws-a")
    assert cache.get("ws-a", "tok") is None
    assert cache.get("ws-b", "tok") == ["b"]

    cache.clear()
    assert cache.get("ws-b", "tok") is None


def test_credential_hash_does_not_leak_token():
    digest = credential_hash("secret-token")
    assert "secret" not in digest
    assert len(digest) == 64


# ── Locks ──


def test_second_sync_for_same_workspace_is_refused():
    locks = WorkspaceLocks()

    async def go():
        async with locks.hold("ws"):
            assert locks.is_locked("ws")
            with pytest.raises(SyncInProgress):
                async with locks.hold("ws"):
                    pass
            # other workspaces are independent
            async with locks.hold("ws-2"):
                pass
        assert not locks.is_locked("ws")

    asyncio.run(go())


def test_lock_released_after_failure():
    locks = WorkspaceLocks()

    async def go():
        with pytest.raises(RuntimeError):
            async with locks.hold("ws"):
                raise RuntimeError("boom")
        async with locks.hold("ws"):
            pass

    asyncio.run(go())


# ── Errors ──


def test_describe_error_carries_hints():
    payload = describe_error(AuthExpired("Error validating access token", 401, 190))
    assert payload["error"] == "Error validating access token"
    assert "regenerate" in payload["hint"]
    assert payload["type"] == "AuthExpired"

    assert describe_error(CredentialMissing("no token"))["hint"]
    assert describe_error(UpstreamUnavailable("down", hint="custom"))["hint"] == "custom"


def test_describe_error_for_foreign_exceptions():
    payload = describe_error(TimeoutError("Read timeout"))
    assert payload["hint"] == UpstreamUnavailable.default_hint
    assert describe_error(ValueError())["error"] == "ValueError"


# ── Logging ──


def test_json_formatter_includes_context_fields():
    record = logging.LogRecord("spendboard.test", logging.INFO, __file__, 1, "hello %s", ("x",), None)
    record.workspace_id = "ws"
    record.sync_run_id = 7
    entry = json.loads(JSONFormatter().format(record))
    assert entry["message"] == "hello x"
    assert entry["workspace_id"] == "ws"
    assert entry["sync_run_id"] == 7
    assert "account_id" not in entry


# ── Transformer ──


def test_purchase_value_is_not_double_counted():
    row = ad_fact_from_insight(
        {
            "ad_id": "a1",
            "ad_name": "1_ES_SMARTBALL_BASIC_VIDEO_4x5",
            "spend": "10",
            "actions": [{"action_type": "link_click", "value": "9"}, {"action_type": "purchase", "value": "3"}],
            "action_values": [
                {"action_type": "omni_purchase", "value": "45.5"},
                {"action_type": "purchase", "value": "45.5"},
            ],
            "date_start": "2025-06-11",
        },
        {"id": "act_1", "name": "Acct ES"},
    )
    assert row["purchase_count"] == 3
    assert row["purchase_value"] == 45.5
    assert row["date"] == "2025-06-11"
    assert row["code_country"] == "ES"


def test_malformed_numbers_default_to_zero():
    row = ad_fact_from_insight({"ad_id": "a1", "spend": "n/a", "impressions": None}, {"id": "act_1"})
    assert row["spend"] == 0.0
    assert row["impressions"] == 0
    assert row["purchase_value"] == 0.0


def test_budget_minor_units_and_active_flag():
    row = budget_from_campaign(
        {"id": 55, "name": "C", "daily_budget": "2550", "effective_status": "ACTIVE"},
        {"id": "act_1", "name": "Acct"},
        {"55"},
    )
    assert row["campaign_id"] == "55"
    assert row["daily_budget"] == 25.5
    assert row["lifetime_budget"] == 0.0
    assert row["has_active_ads"] is True
    assert budget_from_campaign({"id": "9"}, {"id": "act_1"})["has_active_ads"] is None


def test_compute_roas():
    assert compute_roas(30.0, 10.0) == 3.0
    assert compute_roas(30.0, 0.0) is None


def test_winners_thresholds_use_window_totals():
    rows = [
        {"account_id": "act_1", "ad_id": "a1", "spend": 4.0, "purchase_value": 0.0},
        {"account_id": "act_1", "ad_id": "a1", "spend": 4.0, "purchase_value": 40.0},
        {"account_id": "act_2", "ad_id": "a1", "spend": 4.0, "purchase_value": 40.0},
    ]
    kept = apply_winners_filters(rows, WinnersFilters(min_spend=8, min_roas=4))
    assert kept == rows[:2]


def test_winners_without_filters_keeps_everything():
    rows = [{"account_id": "act_1", "ad_id": "a1", "spend": 0.0}]
    assert apply_winners_filters(rows, None) == rows
    assert apply_winners_filters(rows, WinnersFilters()) == rows


def test_bound_logger_merges_run_context(monkeypatch):
    records = []
    logger = logging.getLogger("spendboard.test.bind")
    monkeypatch.setattr(logger, "handle", records.append)
    logger.setLevel(logging.INFO)

    run_log = bind(logger, workspace_id="ws", sync_run_id=3)
    run_log.info("done", extra={"duration_ms": 12, "sync_run_id": 4})

    (record,) = records
    entry = json.loads(JSONFormatter().format(record))
    assert entry["workspace_id"] == "ws"
    assert entry["sync_run_id"] == 4
    assert entry["duration_ms"] == 12


def test_json_formatter_drops_empty_context():
    record = logging.LogRecord("spendboard.test", logging.INFO, __file__, 1, "x", None, None)
    record.account_id = None
    assert "account_id" not in json.loads(JSONFormatter().format(record))
