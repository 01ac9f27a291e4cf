from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Sequence

import pytest

from conftest import BANGKOK, bkk
from fx_snapshot.db.base_backend import PersistenceResult
from fx_snapshot.db.sqlite_backend import SQLiteBackend
from fx_snapshot.exceptions import StorageError
from fx_snapshot.ingestion.coordinator import IngestionCoordinator
from fx_snapshot.ingestion.models import CanonicalSnapshot
from fx_snapshot.ingestion.normalizer import SnapshotNormalizer


class _TickingClock:
    """Clock that advances every time it is read."""

    def __init__(self, start: datetime, step: timedelta) -> None:
        self.current = start
        self.step = step
        self.calls = 0

    def __call__(self) -> datetime:
        value = self.current
        self.current += self.step
        self.calls += 1
        return value


class _StaticProducer:
    def __init__(self, items: Iterable[Mapping[str, Any]]) -> None:
        self.items = list(items)

    def fetch(self) -> Iterable[Mapping[str, Any]]:
        return iter(self.items)


class _FailingBackend(SQLiteBackend):
    def bulk_upsert(self, records: Sequence[CanonicalSnapshot]) -> PersistenceResult:
        raise StorageError("database is down", partial=PersistenceResult(upserted=1))


def _coordinator(backend: SQLiteBackend, clock: Any = None) -> IngestionCoordinator:
    clock = clock or (lambda: bkk(16, 10) + timedelta(minutes=42))
    return IngestionCoordinator(backend, SnapshotNormalizer(BANGKOK, clock=clock), clock=clock)


BATCH = [
    {"source": "ACB", "instrument": "usd", "sell": "26100", "buy_cash": "-"},
    {"source": "acb", "instrument": "EUR", "sell": "", "buy_cash": None},
    {"source": "vcb", "instrument": "USD", "buyTransfer": 26050},
    {"source": "vcb", "instrument": "EUR", "sell": "abc", "buy_cash": 30000},
    {"source": "acb", "instrument": "JPY", "sell": 0},
]


def test_ingest_accepts_valid_and_reports_rejected(sqlite_backend: SQLiteBackend) -> None:
    report = _coordinator(sqlite_backend).ingest(BATCH)

    assert report.accepted == 3
    assert report.rejected == 2
    assert report.persisted == PersistenceResult(upserted=3, updated=0, matched=0)
    assert report.observed_at == bkk(16, 10)
    assert report.errors[0].startswith("#1:")
    assert report.errors[1].startswith("#3:")
    assert "not numeric" in report.errors[1]
    stored = {
        (row.source, row.instrument)
        for code in ("USD", "EUR", "JPY")
        for row in sqlite_backend.latest_per_group("source", instrument=code)
    }
    assert stored == {("acb", "USD"), ("vcb", "USD"), ("acb", "JPY")}
    assert sqlite_backend.find_latest("acb", "JPY").sell == 0.0


def test_ingest_is_idempotent(sqlite_backend: SQLiteBackend) -> None:
    coordinator = _coordinator(sqlite_backend)
    coordinator.ingest(BATCH)

    again = coordinator.ingest(BATCH)

    assert again.persisted == PersistenceResult(upserted=0, updated=0, matched=3)


def test_batch_lands_in_one_bucket_across_hour_rollover(sqlite_backend: SQLiteBackend) -> None:
    clock = _TickingClock(bkk(16, 10) + timedelta(minutes=59), timedelta(minutes=1))
    coordinator = _coordinator(sqlite_backend, clock)
    items = [{"source": f"bank{i}", "instrument": "USD", "sell": 1} for i in range(4)]

    report = coordinator.ingest(items)

    assert clock.calls == 1
    assert report.observed_at == bkk(16, 10)
    rows = sqlite_backend.latest_per_group("source", instrument="USD")
    assert {row.observed_at for row in rows} == {bkk(16, 10)}


def test_explicit_timestamps_are_honoured(sqlite_backend: SQLiteBackend) -> None:
    report = _coordinator(sqlite_backend).ingest(
        [{"source": "acb", "instrument": "USD", "sell": 1, "observed_at": "2025-09-15T08:15:00+07:00"}]
    )

    assert report.observed_at == bkk(16, 10)
    assert sqlite_backend.find_latest("acb", "USD").observed_at == bkk(15, 8)


def test_ingest_skips_store_when_nothing_is_accepted(tmp_path) -> None:
    backend = _FailingBackend(tmp_path / "down.db")

    report = _coordinator(backend).ingest([{"source": "acb", "instrument": "USD"}])

    assert report.accepted == 0
    assert report.rejected == 1
    assert report.persisted == PersistenceResult()


def test_storage_failure_propagates_with_report(tmp_path) -> None:
    backend = _FailingBackend(tmp_path / "down.db")

    with pytest.raises(StorageError) as excinfo:
        _coordinator(backend).ingest(BATCH)

    report = excinfo.value.report
    assert report.accepted == 3
    assert report.rejected == 2
    assert report.persisted.upserted == 1


def test_run_pulls_from_producer(sqlite_backend: SQLiteBackend) -> None:
    producer = _StaticProducer([{"bank": "acb", "code": "USD", "sell": 26000}])

    report = _coordinator(sqlite_backend).run(producer, at=datetime(2025, 9, 16, 1, 5, tzinfo=BANGKOK))

    assert report.accepted == 1
    assert report.observed_at == bkk(16, 1)
    assert report.to_dict()["persisted"] == {"upserted": 1, "updated": 0, "matched": 0}
