"""Spendboard - Sync Error Taxonomy.

Run-level errors (store, credential, auth on the account list) abort a sync.
Per-account upstream errors are caught by the orchestrator and skipped.
"""

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for every failure surfaced by the sync engine."""

    default_hint: Optional[str] = None

    def __init__(self, message: str, hint: Optional[str] = None):
        self.message = message
        self.hint = hint or self.default_hint
        super().__init__(message)


class StoreNotConfigured(SyncError):
    """No database connection is available."""

    default_hint = "Set DATABASE_URL (or enable the SQLite fallback)."


class CredentialMissing(SyncError):
    """No Meta token could be resolved for the workspace."""

    default_hint = "Configure the Meta token in the workspace settings."


class PersistenceFailure(SyncError):
    """A write or schema check against the store failed."""


class UpstreamError(SyncError):
    """Raised when the Meta API call did not produce usable data."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        error_code: int = 0,
        hint: Optional[str] = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message, hint)


class AuthExpired(UpstreamError):
    """Meta rejected the credential itself (expired, revoked, wrong scope)."""

    default_hint = (
        "Meta token expired or invalid. Test the token in Settings, then "
        "regenerate it in the Graph API Explorer."
    )


class UpstreamRejected(UpstreamError):
    """Meta returned a business error for one call."""


class UpstreamUnavailable(UpstreamError):
    """Network failure or timeout talking to Meta."""

    default_hint = "Sync took too long (timeout). Try a partial sync or winners only."


def describe_error(exc: BaseException) -> Dict[str, Any]:
    """Caller-facing payload: raw message plus an actionable hint when known."""
    if isinstance(exc, SyncError):
        return {"error": exc.message, "hint": exc.hint, "type": type(exc).__name__}
    message = str(exc) or type(exc).__name__
    hint = None
    if "timeout" in message.lower():
        hint = UpstreamUnavailable.default_hint
    return {"error": message, "hint": hint, "type": type(exc).__name__}
