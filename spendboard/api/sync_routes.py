"""Spendboard - Sync API Routes."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlmodel import Session

from spendboard.config import settings
from spendboard.core.cache import WorkspaceTTLCache
from spendboard.core.errors import (
    AuthExpired,
    CredentialMissing,
    PersistenceFailure,
    StoreNotConfigured,
    SyncError,
    UpstreamRejected,
    UpstreamUnavailable,
    describe_error,
)
from spendboard.core.locks import SyncInProgress, workspace_locks
from spendboard.core.logging import get_logger
from spendboard.database import get_session
from spendboard.models.sync_models import SyncOptions, SyncResult
from spendboard.models.workspace_models import can_manage
from spendboard.storage.store import SyncStore
from spendboard.sync.orchestrator import SyncOrchestrator

logger = get_logger("api.sync")

router = APIRouter(prefix="/workspaces/{workspace_id}", tags=["Sync"])

# Shared across requests so successive syncs reuse the account list.
account_cache = WorkspaceTTLCache(settings.account_cache_ttl)

ERROR_STATUS = {
    CredentialMissing: 400,
    AuthExpired: 401,
    SyncInProgress: 409,
    UpstreamRejected: 502,
    UpstreamUnavailable: 502,
    PersistenceFailure: 500,
    StoreNotConfigured: 503,
}


def http_error(exc: SyncError) -> HTTPException:
    status = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500
    )
    return HTTPException(status_code=status, detail=describe_error(exc))


# ── Request Models ──


class SyncRequest(SyncOptions):
    """Body for POST /sync. Token falls back to the workspace setting."""

    access_token: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"skip_ads": True},
                {"winners_only": True, "winners_days": 14},
                {"campaign_days": 7, "account_filter": ["act_123"]},
            ]
        }
    }


class ResetRequest(BaseModel):
    days: Optional[int] = Field(default=None, ge=1)
    access_token: Optional[str] = None


class TokenRequest(BaseModel):
    token: Optional[str] = None
    """New Meta token; empty clears it."""


# ── Dependencies ──


def get_store(session: Session = Depends(get_session)) -> SyncStore:
    return SyncStore(session)


def require_manager(
    workspace_id: str,
    x_user_id: Optional[str] = Header(default=None),
    store: SyncStore = Depends(get_store),
) -> SyncStore:
    """Only workspace owners/admins may sync or rotate the token."""
    try:
        role = store.get_workspace_role(workspace_id, x_user_id)
    except SyncError as e:
        raise http_error(e)
    if not can_manage(role):
        raise HTTPException(status_code=403, detail={"error": "Owner or admin role required"})
    return store


# ── Endpoints ──


@router.post("/sync", response_model=SyncResult)
async def trigger_sync(
    workspace_id: str,
    request: SyncRequest,
    store: SyncStore = Depends(require_manager),
):
    """Pull Meta data into the store for this workspace."""
    orchestrator = SyncOrchestrator(store, account_cache=account_cache)
    options = SyncOptions(**request.model_dump(exclude={"access_token"}))
    try:
        credential = request.access_token or orchestrator.resolve_credential(workspace_id)
        async with workspace_locks.hold(workspace_id):
            return await orchestrator.run_sync(credential, workspace_id, options)
    except SyncError as e:
        logger.error(f"Sync failed: {e.message}", extra={"workspace_id": workspace_id})
        raise http_error(e)


@router.post("/sync/reset", response_model=SyncResult)
async def reset_and_resync(
    workspace_id: str,
    request: ResetRequest,
    store: SyncStore = Depends(require_manager),
):
    """Purge every synced row of the workspace, then rebuild a bounded window."""
    orchestrator = SyncOrchestrator(store, account_cache=account_cache)
    try:
        credential = request.access_token or orchestrator.resolve_credential(workspace_id)
        async with workspace_locks.hold(workspace_id):
            return await orchestrator.reset_and_resync(credential, workspace_id, request.days)
    except SyncError as e:
        logger.error(f"Reset failed: {e.message}", extra={"workspace_id": workspace_id})
        raise http_error(e)


@router.get("/sync/runs")
async def list_sync_runs(
    workspace_id: str,
    limit: int = Query(5, ge=1, le=100),
    store: SyncStore = Depends(get_store),
):
    """Recent sync runs, newest first ("last synced at")."""
    try:
        runs = store.list_sync_runs(workspace_id, limit)
    except SyncError as e:
        raise http_error(e)
    return {
        "status": "success",
        "syncing": workspace_locks.is_locked(workspace_id),
        "runs": [
            {
                "id": r.id,
                "synced_at": r.synced_at.isoformat(),
                "date_range": f"{r.date_since} → {r.date_until}",
                "status": r.status,
                "mode": r.mode,
                "campaigns_count": r.campaigns_count,
                "error_message": r.error_message,
            }
            for r in runs
        ],
    }


@router.get("/budgets")
async def list_budgets(
    workspace_id: str,
    account: Optional[str] = Query(None, description="Filter by account name"),
    store: SyncStore = Depends(get_store),
):
    """Active campaign budgets plus the daily-equivalent total per account."""
    try:
        budgets = store.list_campaign_budgets(workspace_id, account)
        by_account = store.get_budgets_by_account(workspace_id)
    except SyncError as e:
        raise http_error(e)
    return {
        "status": "success",
        "by_account": by_account,
        "budgets": [
            {
                "account_id": b.account_id,
                "account_name": b.account_name,
                "campaign_id": b.campaign_id,
                "campaign_name": b.campaign_name,
                "daily_budget": b.daily_budget,
                "lifetime_budget": b.lifetime_budget,
                "daily_equivalent": round(b.daily_equivalent, 2),
                "effective_status": b.effective_status,
                "has_active_ads": b.has_active_ads,
                "updated_at": b.updated_at.isoformat(),
            }
            for b in budgets
        ],
    }


@router.put("/meta-token")
async def set_meta_token(
    workspace_id: str,
    request: TokenRequest,
    store: SyncStore = Depends(require_manager),
):
    """Rotate or clear the workspace's Meta token."""
    try:
        value = store.set_meta_token(workspace_id, request.token)
    except SyncError as e:
        raise http_error(e)
    account_cache.invalidate(workspace_id)
    return {"status": "success", "configured": value is not None}
