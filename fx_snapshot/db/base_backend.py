"""Backend strategy interfaces for the snapshot store."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Sequence

from fx_snapshot.ingestion.models import CanonicalSnapshot

GroupKey = Literal["source", "instrument"]
GROUP_KEYS: tuple[GroupKey, ...] = ("source", "instrument")


@dataclass(slots=True)
class PersistenceResult:
    """Counts reported by a bulk upsert.

    ``upserted`` counts keys that did not exist yet, ``matched`` counts keys
    that already existed and ``updated`` the subset of those whose values
    actually changed.
    """

    upserted: int = 0
    updated: int = 0
    matched: int = 0

    @property
    def total(self) -> int:
        """Return the number of records that reached the store."""

        return self.upserted + self.matched

    def to_dict(self) -> dict[str, int]:
        return {"upserted": self.upserted, "updated": self.updated, "matched": self.matched}


class BackendStrategy(ABC):
    """Common interface implemented by every snapshot store backend.

    All datetimes passed in must be timezone aware; backends return
    ``observed_at``/``recorded_at`` as aware UTC datetimes.
    """

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create required tables/collections and the uniqueness key."""

    @abstractmethod
    def bulk_upsert(self, records: Sequence[CanonicalSnapshot]) -> PersistenceResult:
        """Replace-or-insert each record keyed by source, instrument and hour."""

    @abstractmethod
    def find_latest(self, source: str, instrument: str) -> CanonicalSnapshot | None:
        """Return the most recent snapshot for ``source``/``instrument``."""

    @abstractmethod
    def find_in_window(
        self, source: str, instrument: str, start: datetime, end: datetime
    ) -> list[CanonicalSnapshot]:
        """Return snapshots in ``[start, end]`` ordered by ``observed_at``."""

    @abstractmethod
    def find_instrument_window(
        self, instrument: str, start: datetime, end: datetime
    ) -> list[CanonicalSnapshot]:
        """Return every source's snapshots of ``instrument`` in ``[start, end]``."""

    @abstractmethod
    def aggregate_min_max(
        self, source: str, instrument: str, start: datetime, end: datetime, field: str
    ) -> tuple[float | None, float | None]:
        """Return ``(min, max)`` of ``field`` in the window, ignoring nulls."""

    @abstractmethod
    def latest_per_group(
        self,
        group_key: GroupKey,
        *,
        source: str | None = None,
        instrument: str | None = None,
    ) -> list[CanonicalSnapshot]:
        """Return the newest snapshot for each distinct ``group_key`` value."""

    @abstractmethod
    def find_latest_at_or_before(
        self, source: str, instrument: str, cutoff: datetime
    ) -> CanonicalSnapshot | None:
        """Return the newest snapshot with ``observed_at <= cutoff``."""

    @abstractmethod
    def find_latest_matching(
        self,
        source: str,
        instrument: str,
        start: datetime,
        end: datetime,
        field: str,
        value: float,
    ) -> CanonicalSnapshot | None:
        """Return the newest snapshot in the window whose ``field`` equals ``value``."""

    def close(self) -> None:  # pragma: no cover - optional cleanup hook
        """Backends may override to release connections/resources."""


def check_group_key(group_key: str) -> GroupKey:
    if group_key not in GROUP_KEYS:
        raise ValueError(f"group_key must be one of {GROUP_KEYS}, got {group_key!r}")
    return group_key  # type: ignore[return-value]


__all__ = ["BackendStrategy", "GroupKey", "GROUP_KEYS", "PersistenceResult", "check_group_key"]
