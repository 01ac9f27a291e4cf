"""Exception hierarchy shared across fx_snapshot."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - type checker helper
    from fx_snapshot.db.base_backend import PersistenceResult


class FxSnapshotError(Exception):
    """Base class for every error raised by the package."""


class ValidationError(FxSnapshotError, ValueError):
    """Raised when an observation or query parameter is malformed."""


class StorageError(FxSnapshotError, RuntimeError):
    """Raised when the backing store is unreachable or rejects a write.

    ``partial`` carries the counts applied before the failure so callers can
    tell how much of a bulk write landed. ``report`` is attached by the
    ingestion coordinator when the failure happens mid-ingest.
    """

    def __init__(self, message: str, *, partial: "PersistenceResult | None" = None) -> None:
        super().__init__(message)
        self.partial = partial
        self.report: Any = None


__all__ = ["FxSnapshotError", "ValidationError", "StorageError"]
