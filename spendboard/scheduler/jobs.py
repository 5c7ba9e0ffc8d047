"""Spendboard - Scheduler Jobs.

APScheduler daily job that runs an incremental sync for every workspace
that has a Meta token configured.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session

from spendboard.config import settings
from spendboard.core.errors import SyncError
from spendboard.core.locks import workspace_locks
from spendboard.core.logging import get_logger
from spendboard.database import get_engine
from spendboard.storage.store import SyncStore
from spendboard.sync.orchestrator import SyncOrchestrator

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()


async def sync_workspace(session: Session, workspace_id: str) -> None:
    store = SyncStore(session)
    async with workspace_locks.hold(workspace_id):
        result = await SyncOrchestrator(store).run_workspace_sync(workspace_id)
    logger.info(
        f"Scheduled sync complete: {result.campaigns_count} campaign rows "
        f"({result.range.since} → {result.range.until})",
        extra={"workspace_id": workspace_id},
    )


async def daily_sync_job() -> None:
    """Incremental sync of every workspace; one failure does not stop the rest."""
    logger.info("Scheduled daily sync starting...")
    with Session(get_engine()) as session:
        workspace_ids = SyncStore(session).list_workspaces_with_token()
        for workspace_id in workspace_ids:
            try:
                await sync_workspace(session, workspace_id)
            except SyncError as e:
                session.rollback()
                logger.error(
                    f"Scheduled sync failed: {e.message}",
                    extra={"workspace_id": workspace_id},
                )
            except Exception as e:
                session.rollback()
                logger.error(
                    f"Scheduled sync crashed: {e}",
                    exc_info=True,
                    extra={"workspace_id": workspace_id},
                )
    logger.info(f"Scheduled daily sync finished for {len(workspace_ids)} workspaces")


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        daily_sync_job,
        "cron",
        hour=settings.sync_hour,
        minute=0,
        id="daily_sync",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Daily sync at {settings.sync_hour}:00 UTC")


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
