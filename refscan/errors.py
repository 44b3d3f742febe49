"""Exception hierarchy for command-boundary failures.

Only the command boundary (start/cancel) raises. Network failures, corrupt
queue files and per-entity extraction problems are recorded and logged
instead, so a long scan never aborts because of one bad item.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .types import Progress


class RefScanError(RuntimeError):
    """Base exception for scanner failures surfaced to callers."""

    reason = "error"
    code = 500

    def __init__(self, message: str, *, remedy: str | None = None) -> None:
        super().__init__(message)
        self.remedy = remedy

    def to_json(self) -> dict[str, object]:
        return {
            "reason": self.reason,
            "code": self.code,
            "message": str(self),
            "remedy": self.remedy,
        }


class InvalidScanTypeError(RefScanError):
    """Raised when a caller asks for a scan type that does not exist."""

    reason = "invalid_scan_type"
    code = 403


class AuthorizationError(RefScanError):
    """Raised when the caller may not manage scans."""

    reason = "unauthorized"
    code = 401


class StaleTokenError(AuthorizationError):
    """Raised when the confirmation token does not match."""

    reason = "stale_token"


class ScanAlreadyRunningError(RefScanError):
    """Raised when a start is requested while another run is active."""

    reason = "already_running"
    code = 409

    def __init__(self, message: str, *, progress: "Progress") -> None:
        super().__init__(message, remedy="Wait for the current scan to finish or cancel it.")
        self.progress = progress

    def to_json(self) -> dict[str, object]:
        payload = super().to_json()
        payload["progress"] = self.progress.to_json()
        return payload


class ScanBusyError(ScanAlreadyRunningError):
    """Raised when a start finds the lock held by a batch that is still winding down."""

    reason = "batch_in_progress"

    def __init__(self, message: str, *, progress: "Progress") -> None:
        super().__init__(message, progress=progress)
        self.remedy = "Try again in a minute."


class NoWorkFoundError(RefScanError):
    """Raised when a start finds nothing to queue."""

    reason = "no_work_found"
    code = 400


class RedirectStoreUnavailable(RefScanError):
    """Raised by redirect stores that cannot be queried right now."""

    reason = "redirects_unavailable"
    code = 503


__all__ = [
    "AuthorizationError",
    "InvalidScanTypeError",
    "NoWorkFoundError",
    "RedirectStoreUnavailable",
    "RefScanError",
    "ScanAlreadyRunningError",
    "ScanBusyError",
    "StaleTokenError",
]
