"""HTTP surface: status mapping, role gating and the sync lock."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from spendboard.api import sync_routes
from spendboard.config import settings
from spendboard.core.errors import AuthExpired, UpstreamUnavailable
from spendboard.core.locks import workspace_locks
from spendboard.database import get_session
from spendboard.main import app
from spendboard.sync import orchestrator as orchestrator_module

ES = {"id": "act_1", "name": "VELUNAPETS ES COD €"}


@pytest.fixture
def client(session, monkeypatch):
    monkeypatch.setattr(settings, "meta_access_token", "")
    sync_routes.account_cache.clear()

    def override_session():
        yield session

    app.dependency_overrides[get_session] = override_session
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def workspace(store):
    return store.create_workspace("Acme", owner_user_id="owner-1")


@pytest.fixture
def owner():
    return {"X-User-Id": "owner-1"}


@pytest.fixture
def upstream(fake_endpoints, monkeypatch):
    endpoints = fake_endpoints(
        accounts=[ES],
        campaigns={
            "act_1": [
                {
                    "campaign_id": "c1",
                    "campaign_name": "CBO_ES_SMARTBALL_CAT_BASIC_20250216",
                    "spend": "12",
                    "date_start": "2025-06-12",
                }
            ]
        },
        budgets={"act_1": [{"id": "c1", "name": "Camp 1", "daily_budget": "4500", "effective_status": "ACTIVE"}]},
    )
    monkeypatch.setattr(orchestrator_module, "default_endpoints_factory", lambda credential: endpoints)
    return endpoints


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["service"] == "spendboard"


def test_sync_requires_manager_role(client, workspace, upstream):
    resp = client.post(f"/workspaces/{workspace.id}/sync", json={})
    assert resp.status_code == 403
    resp = client.post(f"/workspaces/{workspace.id}/sync", json={}, headers={"X-User-Id": "stranger"})
    assert resp.status_code == 403


def test_sync_without_token_is_400_with_hint(client, workspace, owner, upstream):
    resp = client.post(f"/workspaces/{workspace.id}/sync", json={}, headers=owner)
    assert resp.status_code == 400
    detail = resp.json()["detail"]
    assert detail["type"] == "CredentialMissing"
    assert detail["hint"]
    assert upstream.calls == []


def test_token_then_sync_then_read(client, workspace, owner, upstream):
    ws = workspace.id
    resp = client.put(f"/workspaces/{ws}/meta-token", json={"token": "tok"}, headers=owner)
    assert resp.json() == {"status": "success", "configured": True}

    resp = client.post(f"/workspaces/{ws}/sync", json={"skip_ads": True}, headers=owner)
    assert resp.status_code == 200
    result = resp.json()
    assert result["success"] is True
    assert result["campaigns_count"] == 1
    assert result["budgets_count"] == 1
    assert result["ads_count"] == 0

    runs = client.get(f"/workspaces/{ws}/sync/runs").json()
    assert runs["syncing"] is False
    assert runs["runs"][0]["status"] == "success"
    assert runs["runs"][0]["mode"] == "first_sync"

    budgets = client.get(f"/workspaces/{ws}/budgets").json()
    assert budgets["by_account"]["act_1"] == 45.0
    assert budgets["budgets"][0]["daily_equivalent"] == 45.0


def test_body_token_overrides_stored_token(client, workspace, owner, upstream):
    resp = client.post(
        f"/workspaces/{workspace.id}/sync",
        json={"access_token": "inline", "skip_ads": True, "skip_budgets": True},
        headers=owner,
    )
    assert resp.status_code == 200


def test_expired_token_is_401_with_regenerate_hint(client, workspace, owner, upstream):
    upstream.failures[("accounts", None)] = AuthExpired("Error validating access token", 401, 190)
    resp = client.post(
        f"/workspaces/{workspace.id}/sync", json={"access_token": "old"}, headers=owner
    )
    assert resp.status_code == 401
    detail = resp.json()["detail"]
    assert detail["error"] == "Error validating access token"
    assert "regenerate" in detail["hint"]

    runs = client.get(f"/workspaces/{workspace.id}/sync/runs").json()["runs"]
    assert runs[0]["status"] == "error"


def test_upstream_outage_is_502(client, workspace, owner, upstream):
    upstream.failures[("accounts", None)] = UpstreamUnavailable("Meta API timeout after 60s")
    resp = client.post(
        f"/workspaces/{workspace.id}/sync", json={"access_token": "tok"}, headers=owner
    )
    assert resp.status_code == 502
    assert "partial sync" in resp.json()["detail"]["hint"]


def test_concurrent_sync_is_409(client, workspace, owner, upstream):
    lock = asyncio.Lock()
    asyncio.run(lock.acquire())
    workspace_locks._locks[workspace.id] = lock
    try:
        resp = client.post(
            f"/workspaces/{workspace.id}/sync", json={"access_token": "tok"}, headers=owner
        )
        assert resp.status_code == 409
        assert resp.json()["detail"]["type"] == "SyncInProgress"
        assert client.get(f"/workspaces/{workspace.id}/sync/runs").json()["syncing"] is True
    finally:
        lock.release()
        workspace_locks._locks.pop(workspace.id, None)
    assert upstream.calls == []


def test_reset_purges_and_resyncs(client, workspace, owner, upstream, store):
    store.insert_campaign_facts(
        None, [{"account_id": "act_1", "campaign_id": "stale", "date": "2025-01-01"}], workspace.id
    )
    resp = client.post(
        f"/workspaces/{workspace.id}/sync/reset",
        json={"days": 7, "access_token": "tok"},
        headers=owner,
    )
    assert resp.status_code == 200
    assert resp.json()["incremental"] is False
    assert {f.campaign_id for f in store.list_campaign_facts(workspace.id)} == {"c1"}


def test_clearing_token(client, workspace, owner):
    client.put(f"/workspaces/{workspace.id}/meta-token", json={"token": "tok"}, headers=owner)
    resp = client.put(f"/workspaces/{workspace.id}/meta-token", json={"token": ""}, headers=owner)
    assert resp.json()["configured"] is False


def test_missing_store_is_503(client, workspace, owner):
    def no_session():
        yield None

    app.dependency_overrides[get_session] = no_session
    resp = client.post(f"/workspaces/{workspace.id}/sync", json={}, headers=owner)
    assert resp.status_code == 503
    assert resp.json()["detail"]["type"] == "StoreNotConfigured"
    assert client.get(f"/workspaces/{workspace.id}/budgets").status_code == 503


def test_store_read_failure_is_500_with_detail(client, workspace, owner, upstream, session):
    session.execute(text("DROP TABLE sync_runs"))
    session.commit()

    resp = client.get(f"/workspaces/{workspace.id}/sync/runs")
    assert resp.status_code == 500
    assert resp.json()["detail"]["type"] == "PersistenceFailure"

    resp = client.post(
        f"/workspaces/{workspace.id}/sync", json={"access_token": "tok"}, headers=owner
    )
    assert resp.status_code == 500
    assert resp.json()["detail"]["type"] == "PersistenceFailure"
    assert upstream.calls == []
