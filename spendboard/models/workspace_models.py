"""Spendboard - Tenant Models (workspaces, members, settings)."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field

LEGACY_WORKSPACE_NAME = "Legacy"
META_TOKEN_KEY = "meta_access_token"


class WorkspaceRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class Workspace(SQLModel, table=True):
    """Tenant boundary for all synced data and credentials."""

    __tablename__ = "workspaces"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    name: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WorkspaceMember(SQLModel, table=True):
    __tablename__ = "workspace_members"

    workspace_id: str = Field(foreign_key="workspaces.id", primary_key=True)
    user_id: str = Field(primary_key=True, index=True)
    role: str = Field(default=WorkspaceRole.MEMBER.value)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WorkspaceSetting(SQLModel, table=True):
    """Per-workspace key/value settings. Holds the Meta token."""

    __tablename__ = "workspace_settings"

    workspace_id: str = Field(primary_key=True)
    key: str = Field(primary_key=True)
    value: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def normalize_role(role: Optional[str]) -> str:
    """Anything other than owner/admin collapses to member."""
    if role in (WorkspaceRole.OWNER.value, WorkspaceRole.ADMIN.value):
        return role
    return WorkspaceRole.MEMBER.value


def can_manage(role: Optional[str]) -> bool:
    """Owners and admins may trigger syncs and rotate tokens."""
    return role in (WorkspaceRole.OWNER.value, WorkspaceRole.ADMIN.value)
