"""Batch ingestion: normalise raw observations and persist them in one upsert."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from fx_snapshot.db.base_backend import BackendStrategy, PersistenceResult
from fx_snapshot.exceptions import StorageError, ValidationError
from fx_snapshot.ingestion.models import CanonicalSnapshot
from fx_snapshot.ingestion.normalizer import SnapshotNormalizer
from fx_snapshot.ingestion.strategy import ObservationProducer
from fx_snapshot.utils.logger import get_logger

LOGGER = get_logger(__name__)


@dataclass(slots=True)
class IngestionReport:
    """Outcome of one ingestion run."""

    observed_at: datetime
    accepted: int = 0
    rejected: int = 0
    persisted: PersistenceResult = field(default_factory=PersistenceResult)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "observed_at": self.observed_at.isoformat(),
            "accepted": self.accepted,
            "rejected": self.rejected,
            "persisted": self.persisted.to_dict(),
            "errors": list(self.errors),
        }


class IngestionCoordinator:
    """Normalise a producer batch and hand it to the store in a single bulk upsert.

    The ingestion instant is captured once per batch so an entire scrape run
    lands in one hourly bucket however long the producer took.
    """

    def __init__(
        self,
        backend: BackendStrategy,
        normalizer: SnapshotNormalizer,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backend = backend
        self.normalizer = normalizer
        self._clock = clock or (lambda: datetime.now(normalizer.timezone))

    def ingest(
        self, raw_batch: Iterable[Mapping[str, Any]], at: datetime | None = None
    ) -> IngestionReport:
        instant = at if at is not None else self._clock()
        report = IngestionReport(observed_at=self.normalizer.bucket(instant))
        accepted: list[CanonicalSnapshot] = []
        for index, raw in enumerate(raw_batch):
            try:
                accepted.append(self.normalizer.normalize(raw, now=instant))
            except ValidationError as exc:
                report.rejected += 1
                report.errors.append(f"#{index}: {exc}")
                LOGGER.warning("Rejected observation #%s: %s", index, exc)
        report.accepted = len(accepted)

        if accepted:
            try:
                report.persisted = self.backend.bulk_upsert(accepted)
            except StorageError as exc:
                if exc.partial is not None:
                    report.persisted = exc.partial
                exc.report = report
                LOGGER.error(
                    "Persisting %s accepted observations failed: %s", report.accepted, exc
                )
                raise
        LOGGER.info(
            "Ingested bucket %s: accepted=%s rejected=%s upserted=%s updated=%s matched=%s",
            report.observed_at.isoformat(),
            report.accepted,
            report.rejected,
            report.persisted.upserted,
            report.persisted.updated,
            report.persisted.matched,
        )
        return report

    def run(self, producer: ObservationProducer, at: datetime | None = None) -> IngestionReport:
        """Capture the instant, pull a batch from ``producer`` and ingest it."""

        instant = at if at is not None else self._clock()
        return self.ingest(producer.fetch(), at=instant)


__all__ = ["IngestionCoordinator", "IngestionReport"]
