"""Spendboard - TTL cache for per-workspace Meta lookups.

Keys combine the workspace id with a hash of the credential, so rotating a
token makes its old entries unreachable.
"""

import hashlib
from typing import Any, Dict, Optional, Tuple

from spendboard.core.clock import Clock


def credential_hash(credential: str) -> str:
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


class WorkspaceTTLCache:
    """Simple time-based cache keyed by (workspace_id, credential hash)."""

    def __init__(self, ttl_seconds: float, clock: Clock | None = None):
        self._ttl = ttl_seconds
        self._clock = clock or Clock()
        self._entries: Dict[Tuple[str, str], Tuple[Any, float]] = {}

    def _key(self, workspace_id: str, credential: str) -> Tuple[str, str]:
        return (str(workspace_id), credential_hash(credential))

    def get(self, workspace_id: str, credential: str) -> Optional[Any]:
        key = self._key(workspace_id, credential)
        if key in self._entries:
            value, stored_at = self._entries[key]
            if self._clock.monotonic() - stored_at < self._ttl:
                return value
            del self._entries[key]
        return None

    def set(self, workspace_id: str, credential: str, value: Any) -> None:
        self._entries[self._key(workspace_id, credential)] = (
            value,
            self._clock.monotonic(),
        )

    def invalidate(self, workspace_id: str) -> None:
        for key in [k for k in self._entries if k[0] == str(workspace_id)]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()
