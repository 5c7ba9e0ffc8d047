"""Spendboard - Persistence Gateway.

Workspace-scoped reads and writes for sync runs, campaign/ad facts, budgets
and the per-workspace Meta token. Every query filters on an explicit
workspace id; rows whose workspace is NULL are only reachable after
`migrate_legacy_rows` assigns them to a concrete workspace.
"""

from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type, Union

from sqlalchemy import delete, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from spendboard.config import settings
from spendboard.core.errors import PersistenceFailure, StoreNotConfigured
from spendboard.core.logging import get_logger
from spendboard.database import REQUIRED_SCHEMA_VERSION
from spendboard.models.fact_models import AdFact, CampaignBudget, CampaignFact
from spendboard.models.sync_models import SchemaVersion, SyncMode, SyncRun, SyncStatus
from spendboard.models.workspace_models import (
    META_TOKEN_KEY,
    Workspace,
    WorkspaceMember,
    WorkspaceRole,
    WorkspaceSetting,
    normalize_role,
)

logger = get_logger("storage")

DateLike = Union[date, str]
FactModel = Type[Union[CampaignFact, AdFact]]

CAMPAIGN_COLUMNS = (
    "account_id", "account_name", "campaign_id", "campaign_name", "date",
    "spend", "impressions", "clicks", "code_country", "product_name",
    "product_with_animal", "animal", "type", "raw", "naming_date",
)
AD_COLUMNS = (
    "ad_id", "ad_name", "account_id", "account_name", "campaign_id", "date",
    "spend", "impressions", "clicks", "purchase_count", "purchase_value",
    "code_country", "product_name",
)
BUDGET_COLUMNS = (
    "account_name", "campaign_name", "daily_budget", "lifetime_budget",
    "effective_status", "has_active_ads",
)


def _iso(value: Optional[DateLike]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() if isinstance(value, date) else str(value)[:10]


def _dedupe_latest(rows: Sequence[Any], entity_attr: str) -> List[Any]:
    """Keep the most recently written row per (account, entity, day).

    `rows` must be ordered oldest write first.
    """
    latest: Dict[tuple, Any] = {}
    for r in rows:
        latest[(r.account_id, getattr(r, entity_attr), r.date)] = r
    return list(latest.values())


def _scope_to_accounts(stmt, model: FactModel, account_ids: Optional[Iterable[str]]):
    if account_ids is None:
        return stmt
    accounts = list(account_ids)
    return stmt.where(or_(model.account_id.in_(accounts), model.account_name.in_(accounts)))


class SyncStore:
    """Persistence gateway over one SQLModel session."""

    def __init__(self, session: Optional[Session], batch_size: int | None = None):
        self.session = session
        self.batch_size = batch_size or settings.insert_batch_size

    # ── Plumbing ──

    def _guard(self) -> Session:
        if self.session is None:
            raise StoreNotConfigured("DATABASE_URL not configured")
        return self.session

    def _commit(self, action: str) -> None:
        session = self._guard()
        try:
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"{action} failed: {e}") from e

    @contextmanager
    def _reading(self, action: str):
        """Yield the session; a failed query rolls back and raises PersistenceFailure."""
        session = self._guard()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"{action} failed: {e}") from e

    def check_schema(self) -> int:
        """Fail unless the database is at the schema version this code writes."""
        with self._reading("Schema check") as session:
            row = session.get(SchemaVersion, 1)
        version = row.version if row else 0
        if version < REQUIRED_SCHEMA_VERSION:
            raise PersistenceFailure(
                f"Database schema v{version} is older than required "
                f"v{REQUIRED_SCHEMA_VERSION}; run migrations first",
                hint="Run `python -m spendboard.storage.migrations` before syncing.",
            )
        return version

    # ── Sync runs ──

    def create_sync_run(
        self,
        since: DateLike,
        until: DateLike,
        status: str = SyncStatus.RUNNING.value,
        workspace_id: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> SyncRun:
        session = self._guard()
        run = SyncRun(
            workspace_id=workspace_id,
            date_since=_iso(since),
            date_until=_iso(until),
            status=status,
            mode=mode,
        )
        session.add(run)
        self._commit("Create sync run")
        session.refresh(run)
        return run

    def update_sync_run(
        self,
        run_id: int,
        status: str,
        campaigns_count: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with self._reading("Load sync run") as session:
            run = session.get(SyncRun, run_id)
        if run is None:
            raise PersistenceFailure(f"Sync run {run_id} not found")
        run.status = status
        run.campaigns_count = campaigns_count or 0
        run.error_message = error_message
        run.synced_at = datetime.now(timezone.utc)
        session.add(run)
        self._commit("Update sync run")

    def get_latest_successful_run(self, workspace_id: str) -> Optional[SyncRun]:
        """Latest successful run that fetched campaigns.

        Winners-only runs only write ad facts, so they never count as
        campaign coverage. Rows written before v4 carry no mode.
        """
        with self._reading("Load latest sync run") as session:
            return session.exec(
                select(SyncRun)
                .where(
                    SyncRun.workspace_id == workspace_id,
                    SyncRun.status == SyncStatus.SUCCESS.value,
                    or_(
                        SyncRun.mode.is_(None),  # type: ignore
                        SyncRun.mode != SyncMode.WINNERS_ONLY.value,
                    ),
                )
                .order_by(SyncRun.synced_at.desc(), SyncRun.id.desc())  # type: ignore
                .limit(1)
            ).first()

    def list_sync_runs(self, workspace_id: str, limit: int = 5) -> List[SyncRun]:
        with self._reading("List sync runs") as session:
            return list(
                session.exec(
                    select(SyncRun)
                    .where(SyncRun.workspace_id == workspace_id)
                    .order_by(SyncRun.synced_at.desc(), SyncRun.id.desc())  # type: ignore
                    .limit(limit)
                ).all()
            )

    # ── Facts (shared) ──

    @staticmethod
    def _window_delete(
        model: FactModel,
        since: DateLike,
        workspace_id: str,
        account_ids: Optional[Iterable[str]],
        until: Optional[DateLike],
    ):
        stmt = delete(model).where(
            model.workspace_id == workspace_id, model.date >= _iso(since)
        )
        if until is not None:
            stmt = stmt.where(model.date <= _iso(until))
        return _scope_to_accounts(stmt, model, account_ids or None)

    def _delete_facts(
        self,
        model: FactModel,
        since: DateLike,
        workspace_id: str,
        account_ids: Optional[Iterable[str]] = None,
        until: Optional[DateLike] = None,
    ) -> None:
        session = self._guard()
        try:
            session.execute(
                self._window_delete(model, since, workspace_id, account_ids, until)
            )
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"Delete {model.__tablename__} failed: {e}") from e
        self._commit(f"Delete {model.__tablename__}")

    def _replace_window(
        self,
        model: FactModel,
        columns: Sequence[str],
        run_id: Optional[int],
        rows: Sequence[Dict[str, Any]],
        workspace_id: str,
        since: DateLike,
        until: Optional[DateLike],
        account_ids: Optional[Iterable[str]],
    ) -> int:
        """Delete the window and insert `rows` in one transaction."""
        session = self._guard()
        try:
            session.execute(
                self._window_delete(model, since, workspace_id, account_ids, until)
            )
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"Delete {model.__tablename__} failed: {e}") from e
        count = self._add_facts(model, columns, run_id, rows, workspace_id)
        self._commit(f"Replace {model.__tablename__} window")
        return count

    def _add_facts(
        self,
        model: FactModel,
        columns: Sequence[str],
        run_id: Optional[int],
        rows: Sequence[Dict[str, Any]],
        workspace_id: str,
    ) -> int:
        """Add rows in batches of `batch_size`, flushing between batches."""
        session = self._guard()
        try:
            for start in range(0, len(rows), self.batch_size):
                for row in rows[start : start + self.batch_size]:
                    values = {c: row[c] for c in columns if c in row}
                    values["date"] = _iso(values.get("date"))
                    session.add(model(workspace_id=workspace_id, sync_run_id=run_id, **values))
                session.flush()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"Insert {model.__tablename__} failed: {e}") from e
        return len(rows)

    def _insert_facts(self, model, columns, run_id, rows, workspace_id) -> int:
        count = self._add_facts(model, columns, run_id, rows, workspace_id)
        self._commit(f"Insert {model.__tablename__}")
        return count

    def _replace_all_facts(
        self, model, columns, run_id, rows, workspace_id, account_ids=None
    ) -> int:
        """Drop the workspace's rows and insert `rows` in one transaction.

        With `account_ids`, only those accounts' rows are dropped.
        """
        session = self._guard()
        stmt = _scope_to_accounts(
            delete(model).where(model.workspace_id == workspace_id), model, account_ids
        )
        try:
            session.execute(stmt)
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"Replace {model.__tablename__} failed: {e}") from e
        count = self._add_facts(model, columns, run_id, rows, workspace_id)
        self._commit(f"Replace {model.__tablename__}")
        return count

    def _list_facts(
        self,
        model: FactModel,
        entity_attr: str,
        workspace_id: str,
        since: Optional[DateLike],
        until: Optional[DateLike],
        account_name: Optional[str],
    ) -> List[Any]:
        query = select(model).where(model.workspace_id == workspace_id)
        if since is not None:
            query = query.where(model.date >= _iso(since))
        if until is not None:
            query = query.where(model.date <= _iso(until))
        if account_name:
            query = query.where(model.account_name == account_name)
        with self._reading(f"List {model.__tablename__}") as session:
            rows = session.exec(query.order_by(model.created_at, model.id)).all()  # type: ignore
        return _dedupe_latest(rows, entity_attr)

    # ── Campaign facts ──

    def delete_campaign_facts_from(
        self,
        since: DateLike,
        workspace_id: str,
        account_ids: Optional[Iterable[str]] = None,
        until: Optional[DateLike] = None,
    ) -> None:
        self._delete_facts(CampaignFact, since, workspace_id, account_ids, until)

    def insert_campaign_facts(
        self, run_id: Optional[int], rows: Sequence[Dict[str, Any]], workspace_id: str
    ) -> int:
        return self._insert_facts(CampaignFact, CAMPAIGN_COLUMNS, run_id, rows, workspace_id)

    def replace_all_campaign_facts(
        self,
        run_id: Optional[int],
        rows: Sequence[Dict[str, Any]],
        workspace_id: str,
        account_ids: Optional[Iterable[str]] = None,
    ) -> int:
        return self._replace_all_facts(
            CampaignFact, CAMPAIGN_COLUMNS, run_id, rows, workspace_id, account_ids
        )

    def replace_campaign_facts_window(
        self,
        run_id: Optional[int],
        rows: Sequence[Dict[str, Any]],
        workspace_id: str,
        since: DateLike,
        until: Optional[DateLike] = None,
        account_ids: Optional[Iterable[str]] = None,
    ) -> int:
        return self._replace_window(
            CampaignFact, CAMPAIGN_COLUMNS, run_id, rows, workspace_id, since, until, account_ids
        )

    def count_campaign_facts_on(self, day: DateLike, workspace_id: str) -> int:
        with self._reading("Count campaigns") as session:
            return session.exec(
                select(func.count())
                .select_from(CampaignFact)
                .where(CampaignFact.workspace_id == workspace_id, CampaignFact.date == _iso(day))
            ).one()

    def list_campaign_facts(
        self,
        workspace_id: str,
        since: Optional[DateLike] = None,
        until: Optional[DateLike] = None,
        account_name: Optional[str] = None,
    ) -> List[CampaignFact]:
        rows = self._list_facts(
            CampaignFact, "campaign_id", workspace_id, since, until, account_name
        )
        return sorted(rows, key=lambda r: (r.campaign_name or "", r.date or ""))

    # ── Ad facts ──

    def delete_ad_facts_from(
        self,
        since: DateLike,
        workspace_id: str,
        account_ids: Optional[Iterable[str]] = None,
        until: Optional[DateLike] = None,
    ) -> None:
        self._delete_facts(AdFact, since, workspace_id, account_ids, until)

    def insert_ad_facts(
        self, run_id: Optional[int], rows: Sequence[Dict[str, Any]], workspace_id: str
    ) -> int:
        return self._insert_facts(AdFact, AD_COLUMNS, run_id, rows, workspace_id)

    def replace_all_ad_facts(
        self,
        run_id: Optional[int],
        rows: Sequence[Dict[str, Any]],
        workspace_id: str,
        account_ids: Optional[Iterable[str]] = None,
    ) -> int:
        return self._replace_all_facts(
            AdFact, AD_COLUMNS, run_id, rows, workspace_id, account_ids
        )

    def replace_ad_facts_window(
        self,
        run_id: Optional[int],
        rows: Sequence[Dict[str, Any]],
        workspace_id: str,
        since: DateLike,
        until: Optional[DateLike] = None,
        account_ids: Optional[Iterable[str]] = None,
    ) -> int:
        return self._replace_window(
            AdFact, AD_COLUMNS, run_id, rows, workspace_id, since, until, account_ids
        )

    def list_ad_facts(
        self,
        workspace_id: str,
        since: Optional[DateLike] = None,
        until: Optional[DateLike] = None,
        account_name: Optional[str] = None,
    ) -> List[AdFact]:
        rows = self._list_facts(AdFact, "ad_id", workspace_id, since, until, account_name)
        return sorted(rows, key=lambda r: (-r.spend, r.ad_name or ""))

    # ── Budgets ──

    def upsert_budgets(self, workspace_id: str, rows: Sequence[Dict[str, Any]]) -> int:
        """Replace the row for each (workspace, account, campaign) key.

        Delete-then-insert rather than ON CONFLICT so the write does not
        depend on the composite key existing on older databases.
        """
        session = self._guard()
        now = datetime.now(timezone.utc)
        try:
            # Last row wins when the input repeats a key.
            by_key: Dict[tuple, Dict[str, Any]] = {}
            for row in rows:
                by_key[(str(row["account_id"]), str(row["campaign_id"]))] = row
            for (account_id, campaign_id), row in by_key.items():
                session.execute(
                    delete(CampaignBudget).where(
                        CampaignBudget.workspace_id == workspace_id,
                        CampaignBudget.account_id == account_id,
                        CampaignBudget.campaign_id == campaign_id,
                    )
                )
                session.flush()
                values = {c: row.get(c) for c in BUDGET_COLUMNS}
                values["daily_budget"] = values["daily_budget"] or 0.0
                values["lifetime_budget"] = values["lifetime_budget"] or 0.0
                session.add(
                    CampaignBudget(
                        workspace_id=workspace_id,
                        account_id=account_id,
                        campaign_id=campaign_id,
                        updated_at=now,
                        **values,
                    )
                )
                session.flush()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"Upsert campaign_budgets failed: {e}") from e
        self._commit("Upsert campaign_budgets")
        return len(by_key)

    def _active_budgets_query(self, workspace_id: str):
        return select(CampaignBudget).where(
            CampaignBudget.workspace_id == workspace_id,
            or_(
                CampaignBudget.effective_status == "ACTIVE",
                CampaignBudget.effective_status.is_(None),  # type: ignore
            ),
        )

    def get_budgets_by_account(self, workspace_id: str) -> Dict[str, float]:
        """Daily-budget-equivalent per account, keyed by account name and id."""
        with self._reading("List campaign_budgets") as session:
            budgets = session.exec(self._active_budgets_query(workspace_id)).all()
        totals: Dict[str, float] = defaultdict(float)
        names: Dict[str, Optional[str]] = {}
        for b in budgets:
            totals[b.account_id] += b.daily_equivalent
            names[b.account_id] = b.account_name
        result: Dict[str, float] = {}
        for account_id, budget in totals.items():
            result[account_id] = budget
            if names.get(account_id):
                result[names[account_id]] = budget
        return result

    def list_campaign_budgets(
        self, workspace_id: str, account_name: Optional[str] = None
    ) -> List[CampaignBudget]:
        query = self._active_budgets_query(workspace_id)
        if account_name:
            query = query.where(CampaignBudget.account_name == account_name)
        query = query.order_by(CampaignBudget.account_name, CampaignBudget.campaign_name)
        with self._reading("List campaign_budgets") as session:
            return list(session.exec(query).all())

    # ── Workspaces & credentials ──

    def create_workspace(self, name: str, owner_user_id: Optional[str] = None) -> Workspace:
        session = self._guard()
        name = (name or "").strip()
        if not name:
            raise ValueError("Workspace name required")
        workspace = Workspace(name=name)
        session.add(workspace)
        if owner_user_id:
            session.add(
                WorkspaceMember(
                    workspace_id=workspace.id,
                    user_id=str(owner_user_id),
                    role=WorkspaceRole.OWNER.value,
                )
            )
        self._commit("Create workspace")
        session.refresh(workspace)
        return workspace

    def get_workspace_role(self, workspace_id: str, user_id: str) -> Optional[str]:
        self._guard()
        if not workspace_id or not user_id:
            return None
        with self._reading("Load workspace member") as session:
            member = session.get(WorkspaceMember, (str(workspace_id), str(user_id)))
        return normalize_role(member.role) if member else None

    def get_meta_token(self, workspace_id: str) -> Optional[str]:
        with self._reading("Load Meta token") as session:
            row = session.get(WorkspaceSetting, (str(workspace_id), META_TOKEN_KEY))
        value = (row.value or "").strip() if row else ""
        return value or None

    def set_meta_token(self, workspace_id: str, token: Optional[str]) -> Optional[str]:
        """Overwrite (or clear, with None/empty) the workspace's Meta token."""
        value = str(token).strip() if token else None
        with self._reading("Load Meta token") as session:
            row = session.get(WorkspaceSetting, (str(workspace_id), META_TOKEN_KEY))
        if row is None:
            row = WorkspaceSetting(workspace_id=str(workspace_id), key=META_TOKEN_KEY)
        row.value = value or None
        row.updated_at = datetime.now(timezone.utc)
        session.add(row)
        self._commit("Save Meta token")
        return row.value

    def list_workspaces_with_token(self) -> List[str]:
        with self._reading("List workspaces") as session:
            rows = session.exec(
                select(WorkspaceSetting.workspace_id).where(
                    WorkspaceSetting.key == META_TOKEN_KEY,
                    WorkspaceSetting.value.is_not(None),  # type: ignore
                )
            ).all()
        return sorted(set(rows))

    def purge_workspace(self, workspace_id: str) -> None:
        """Delete every fact, budget and sync run of the workspace."""
        session = self._guard()
        models: List[Type[SQLModel]] = [CampaignFact, AdFact, CampaignBudget, SyncRun]
        try:
            for model in models:
                session.execute(delete(model).where(model.workspace_id == workspace_id))
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailure(f"Purge workspace failed: {e}") from e
        self._commit("Purge workspace")
        logger.info("Workspace purged", extra={"workspace_id": workspace_id})
