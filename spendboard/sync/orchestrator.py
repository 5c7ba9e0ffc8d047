"""Spendboard - Sync Orchestrator.

Runs one end-to-end synchronization for a workspace:
  plan range → accounts → campaign insights → budgets → ad insights
  → persist (replace-all or window replace) → finalize the sync run

Accounts are processed one after another. A failing account is logged and
skipped; only run-level failures (no store, no credential, account list
unavailable, persistence error) abort and mark the run as `error`.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from spendboard.config import settings
from spendboard.connectors.meta.client import MetaClient
from spendboard.connectors.meta.endpoints import MetaEndpoints
from spendboard.connectors.meta.transformer import (
    ad_fact_from_insight,
    apply_winners_filters,
    budget_from_campaign,
    campaign_fact_from_insight,
)
from spendboard.core.cache import WorkspaceTTLCache
from spendboard.core.clock import Clock
from spendboard.core.errors import CredentialMissing, SyncError, UpstreamError
from spendboard.core.logging import bind, get_logger
from spendboard.models.sync_models import (
    RangeOut,
    SyncOptions,
    SyncRange,
    SyncResult,
    SyncStatus,
)
from spendboard.storage.store import SyncStore
from spendboard.sync.planner import SyncLimits, parse_day, plan_sync_range

logger = get_logger("sync.orchestrator")

EndpointsFactory = Callable[[str], MetaEndpoints]


def default_endpoints_factory(credential: str) -> MetaEndpoints:
    return MetaEndpoints(MetaClient(credential))


def _matches_filter(account: Dict[str, Any], wanted: set[str]) -> bool:
    account_id = str(account.get("id") or "")
    bare_id = account_id[4:] if account_id.startswith("act_") else account_id
    return bool({account_id, bare_id, account.get("name") or ""} & wanted)


class SyncOrchestrator:
    """Drives a sync for one workspace through the persistence gateway."""

    def __init__(
        self,
        store: SyncStore,
        endpoints_factory: EndpointsFactory | None = None,
        clock: Clock | None = None,
        account_cache: WorkspaceTTLCache | None = None,
        limits: SyncLimits | None = None,
    ):
        self.store = store
        self.endpoints_factory = endpoints_factory or default_endpoints_factory
        self.clock = clock or Clock()
        self.account_cache = account_cache or WorkspaceTTLCache(
            settings.account_cache_ttl, self.clock
        )
        self.limits = limits or SyncLimits.from_settings()

    # ── Planning ──

    def plan(self, workspace_id: str, options: SyncOptions) -> SyncRange:
        last_run = self.store.get_latest_successful_run(workspace_id)
        rows_on_last_day = None
        if last_run is not None and last_run.date_until:
            rows_on_last_day = self.store.count_campaign_facts_on(
                parse_day(last_run.date_until), workspace_id
            )
        return plan_sync_range(
            options,
            last_run,
            self.clock.today(),
            rows_on_last_day=rows_on_last_day,
            limits=self.limits,
        )

    # ── Accounts ──

    async def _resolve_accounts(
        self,
        endpoints: MetaEndpoints,
        credential: str,
        workspace_id: str,
        account_filter: Optional[Sequence[str]],
    ) -> List[Dict[str, Any]]:
        """Account list for the run. Any failure here aborts the sync."""
        accounts = self.account_cache.get(workspace_id, credential)
        if accounts is None:
            accounts = await endpoints.fetch_ad_accounts()
            self.account_cache.set(workspace_id, credential, accounts)
        else:
            logger.info(
                f"Using {len(accounts)} cached ad accounts",
                extra={"workspace_id": workspace_id},
            )
        if account_filter:
            wanted = {str(a) for a in account_filter}
            accounts = [a for a in accounts if _matches_filter(a, wanted)]
        return list(accounts)

    # ── Fetch stages ──

    def _skip(self, stage: str, account: Dict[str, Any], error: Exception, skipped: List[str]) -> None:
        logger.warning(
            f"Skip account {account.get('name') or account.get('id')} ({stage}): {error}",
            extra={"account_id": account.get("id")},
        )
        label = str(account.get("name") or account.get("id"))
        if label not in skipped:
            skipped.append(label)

    async def _fetch_campaigns(
        self,
        endpoints: MetaEndpoints,
        accounts: List[Dict[str, Any]],
        plan: SyncRange,
        skipped: List[str],
    ) -> tuple[List[Dict[str, Any]], List[str]]:
        rows: List[Dict[str, Any]] = []
        fetched: List[str] = []
        for account in accounts:
            try:
                insights = await endpoints.fetch_campaign_insights(
                    account["id"], plan.since, plan.until
                )
            except UpstreamError as e:
                self._skip("campaigns", account, e, skipped)
                continue
            rows.extend(campaign_fact_from_insight(r, account) for r in insights)
            fetched.append(str(account["id"]))
        return rows, fetched

    async def _fetch_budgets(
        self,
        endpoints: MetaEndpoints,
        accounts: List[Dict[str, Any]],
        skipped: List[str],
    ) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for account in accounts:
            try:
                campaigns = await endpoints.fetch_campaign_budgets(account["id"])
            except UpstreamError as e:
                self._skip("budgets", account, e, skipped)
                continue
            try:
                active_ids = await endpoints.fetch_active_ad_campaign_ids(account["id"])
            except UpstreamError as e:
                logger.warning(
                    f"Active ads lookup failed for {account.get('name')}: {e}",
                    extra={"account_id": account.get("id")},
                )
                active_ids = None
            rows.extend(budget_from_campaign(c, account, active_ids) for c in campaigns)
        return rows

    async def _fetch_ads(
        self,
        endpoints: MetaEndpoints,
        accounts: List[Dict[str, Any]],
        plan: SyncRange,
        skipped: List[str],
    ) -> tuple[List[Dict[str, Any]], List[str]]:
        rows: List[Dict[str, Any]] = []
        fetched: List[str] = []
        for account in accounts:
            try:
                insights = await endpoints.fetch_ad_insights(
                    account["id"], plan.since, plan.until
                )
            except UpstreamError as e:
                self._skip("ads", account, e, skipped)
                continue
            rows.extend(ad_fact_from_insight(r, account) for r in insights)
            fetched.append(str(account["id"]))
        return rows, fetched

    # ── Persistence ──

    def _persist_facts(
        self,
        kind: str,
        run_id: int,
        rows: List[Dict[str, Any]],
        fetched_accounts: List[str],
        total_accounts: int,
        plan: SyncRange,
        workspace_id: str,
        targeted: bool = False,
    ) -> int:
        """Window replace for incremental runs, replace-all otherwise.

        Deletes are scoped to the accounts that were fetched, so an account
        skipped after an upstream error (or left out by an account filter)
        keeps its stored history. Only a replace-all that fetched every
        account clears the whole workspace.
        """
        if not fetched_accounts:
            logger.warning(
                f"No account returned {kind}; stored {kind} left untouched",
                extra={"workspace_id": workspace_id, "sync_run_id": run_id},
            )
            return 0
        if kind == "campaigns":
            replace_window = self.store.replace_campaign_facts_window
            replace_all = self.store.replace_all_campaign_facts
        else:
            replace_window = self.store.replace_ad_facts_window
            replace_all = self.store.replace_all_ad_facts
        if plan.incremental:
            return replace_window(
                run_id,
                rows,
                workspace_id,
                since=plan.since,
                until=plan.until,
                account_ids=fetched_accounts,
            )
        scope = None
        if targeted or len(fetched_accounts) < total_accounts:
            scope = fetched_accounts
        return replace_all(run_id, rows, workspace_id, account_ids=scope)

    # ── Entry points ──

    async def run_sync(
        self,
        credential: Optional[str],
        workspace_id: str,
        options: SyncOptions | None = None,
    ) -> SyncResult:
        """Synchronize one workspace. Raises a SyncError on run-level failure."""
        options = options or SyncOptions()
        if not credential or not credential.strip():
            raise CredentialMissing(f"No Meta token for workspace {workspace_id}")
        credential = credential.strip()

        self.store.check_schema()
        plan = self.plan(workspace_id, options)
        run = self.store.create_sync_run(
            plan.since, plan.until, SyncStatus.RUNNING.value, workspace_id, plan.mode.value
        )
        run_log = bind(logger, workspace_id=workspace_id, sync_run_id=run.id)
        run_log.info(f"Sync started ({plan.mode.value}) {plan.since} → {plan.until}")
        started = time.monotonic()

        endpoints = self.endpoints_factory(credential)
        skipped: List[str] = []
        campaigns_count = budgets_count = ads_count = 0
        targeted = bool(options.account_filter)
        try:
            accounts = await self._resolve_accounts(
                endpoints, credential, workspace_id, options.account_filter
            )

            if plan.fetch_campaigns:
                rows, fetched = await self._fetch_campaigns(endpoints, accounts, plan, skipped)
                self._persist_facts(
                    "campaigns", run.id, rows, fetched, len(accounts), plan, workspace_id, targeted
                )
                campaigns_count = len(rows)

            if not options.skip_budgets and not options.winners_only:
                budget_rows = await self._fetch_budgets(endpoints, accounts, skipped)
                budgets_count = self.store.upsert_budgets(workspace_id, budget_rows)

            if options.winners_only or not options.skip_ads:
                ad_rows, fetched = await self._fetch_ads(endpoints, accounts, plan, skipped)
                ad_rows = apply_winners_filters(ad_rows, options.winners_filters)
                self._persist_facts(
                    "ads", run.id, ad_rows, fetched, len(accounts), plan, workspace_id, targeted
                )
                ads_count = len(ad_rows)

            self.store.update_sync_run(
                run.id, SyncStatus.SUCCESS.value, campaigns_count=campaigns_count
            )
        except Exception as e:
            message = e.message if isinstance(e, SyncError) else str(e) or type(e).__name__
            run_log.error(f"Sync failed: {message}")
            try:
                self.store.update_sync_run(
                    run.id, SyncStatus.ERROR.value, campaigns_count=0, error_message=message
                )
            except SyncError as update_error:
                run_log.error(f"Could not record sync failure: {update_error}")
            raise
        finally:
            await endpoints.close()

        duration_ms = int((time.monotonic() - started) * 1000)
        run_log.info(
            f"Sync finished: {campaigns_count} campaign rows, {budgets_count} budgets, "
            f"{ads_count} ad rows, {len(skipped)} skipped accounts",
            extra={"duration_ms": duration_ms},
        )
        return SyncResult(
            success=True,
            campaigns_count=campaigns_count,
            budgets_count=budgets_count,
            ads_count=ads_count,
            incremental=plan.incremental,
            already_up_to_date=plan.already_up_to_date,
            winners_only=options.winners_only,
            skipped_accounts=skipped,
            sync_run_id=run.id,
            synced_at=self.clock.now().isoformat(),
            range=RangeOut(since=plan.since.isoformat(), until=plan.until.isoformat()),
        )

    def resolve_credential(self, workspace_id: str) -> str:
        token = self.store.get_meta_token(workspace_id) or settings.meta_access_token
        if not token:
            raise CredentialMissing(f"No Meta token configured for workspace {workspace_id}")
        return token

    async def run_workspace_sync(
        self, workspace_id: str, options: SyncOptions | None = None
    ) -> SyncResult:
        """Sync using the workspace's stored token (or the configured default)."""
        return await self.run_sync(self.resolve_credential(workspace_id), workspace_id, options)

    async def reset_and_resync(
        self,
        credential: Optional[str],
        workspace_id: str,
        days: Optional[int] = None,
    ) -> SyncResult:
        """Purge the workspace, then rebuild it with a bounded first sync."""
        if not credential or not credential.strip():
            raise CredentialMissing(f"No Meta token for workspace {workspace_id}")
        self.store.purge_workspace(workspace_id)
        self.account_cache.invalidate(workspace_id)
        window = min(days or self.limits.first_sync_days, self.limits.max_backfill_days)
        logger.info(
            f"Workspace reset, resyncing last {window} days",
            extra={"workspace_id": workspace_id},
        )
        resync = SyncOrchestrator(
            self.store,
            self.endpoints_factory,
            self.clock,
            self.account_cache,
            self.limits.model_copy(update={"first_sync_days": window}),
        )
        return await resync.run_sync(credential, workspace_id, SyncOptions())
