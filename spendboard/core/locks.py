"""Spendboard - In-process guard for one in-flight sync per workspace."""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict

from spendboard.core.errors import SyncError


class SyncInProgress(SyncError):
    """Another sync for the same workspace is still running."""

    default_hint = "A sync is already running for this workspace. Retry when it finishes."


class WorkspaceLocks:
    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def is_locked(self, workspace_id: str) -> bool:
        lock = self._locks.get(str(workspace_id))
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, workspace_id: str):
        """Acquire without waiting; raise SyncInProgress if already held."""
        key = str(workspace_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            raise SyncInProgress(f"Sync already running for workspace {key}")
        async with lock:
            yield


workspace_locks = WorkspaceLocks()
