"""Spendboard - Schema Migrations.

Brings an existing database up to REQUIRED_SCHEMA_VERSION:

  v2  workspace_id on sync_runs / campaigns / ads_raw, legacy rows assigned
      to a concrete "Legacy" workspace
  v3  campaign_budgets.has_active_ads, ads_raw.purchase_count
  v4  sync_runs.mode, so winners-only runs do not advance the campaign window

Usage: python -m spendboard.storage.migrations
"""

from typing import Dict, List, Optional, Tuple

from sqlalchemy import inspect, text, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, select

from spendboard.database import REQUIRED_SCHEMA_VERSION, get_engine, stamp_schema_version
from spendboard.core.logging import get_logger
from spendboard.models.fact_models import AdFact, CampaignFact
from spendboard.models.sync_models import SchemaVersion, SyncRun
from spendboard.models.workspace_models import LEGACY_WORKSPACE_NAME, Workspace

logger = get_logger("migrations")

# version -> [(table, column, DDL type)]
COLUMN_STEPS: Dict[int, List[Tuple[str, str, str]]] = {
    2: [
        ("sync_runs", "workspace_id", "VARCHAR"),
        ("campaigns", "workspace_id", "VARCHAR"),
        ("ads_raw", "workspace_id", "VARCHAR"),
    ],
    3: [
        ("campaign_budgets", "has_active_ads", "BOOLEAN"),
        ("ads_raw", "purchase_count", "INTEGER DEFAULT 0"),
    ],
    4: [("sync_runs", "mode", "VARCHAR")],
}


def _add_missing_columns(engine: Engine, version: int) -> None:
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())
    with engine.begin() as conn:
        for table, column, ddl in COLUMN_STEPS.get(version, []):
            if table not in tables:
                continue
            existing = {c["name"] for c in inspector.get_columns(table)}
            if column not in existing:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
                logger.info(f"Added {table}.{column}")


def ensure_legacy_workspace(session: Session) -> str:
    existing = session.exec(
        select(Workspace)
        .where(Workspace.name == LEGACY_WORKSPACE_NAME)
        .order_by(Workspace.created_at)
    ).first()
    if existing:
        return existing.id
    workspace = Workspace(name=LEGACY_WORKSPACE_NAME)
    session.add(workspace)
    session.commit()
    session.refresh(workspace)
    return workspace.id


def migrate_legacy_rows(session: Session, workspace_id: Optional[str] = None) -> int:
    """Assign rows without a workspace to `workspace_id` (default: Legacy).

    Returns the number of rows updated.
    """
    pending = any(
        session.exec(select(model.id).where(model.workspace_id.is_(None)).limit(1)).first()  # type: ignore
        is not None
        for model in (SyncRun, CampaignFact, AdFact)
    )
    if not pending:
        return 0
    target = workspace_id or ensure_legacy_workspace(session)
    updated = 0
    for model in (SyncRun, CampaignFact, AdFact):
        result = session.execute(
            update(model)
            .where(model.workspace_id.is_(None))  # type: ignore
            .values(workspace_id=target)
        )
        updated += result.rowcount or 0
    session.commit()
    if updated:
        logger.info(
            f"Assigned {updated} legacy rows to workspace {target}",
            extra={"workspace_id": target},
        )
    return updated


def current_version(session: Session) -> int:
    row = session.get(SchemaVersion, 1)
    return row.version if row else 1


def run_migrations(engine: Engine | None = None) -> int:
    """Apply every pending step and stamp the resulting version."""
    engine = engine or get_engine()
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        version = current_version(session)
    for step in range(version + 1, REQUIRED_SCHEMA_VERSION + 1):
        logger.info(f"Applying schema step v{step}")
        _add_missing_columns(engine, step)
        if step == 2:
            with Session(engine) as session:
                migrate_legacy_rows(session)
    with Session(engine) as session:
        stamp_schema_version(session, max(version, REQUIRED_SCHEMA_VERSION))
    return max(version, REQUIRED_SCHEMA_VERSION)


if __name__ == "__main__":
    final = run_migrations()
    logger.info(f"Migration complete, schema v{final}")
