from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterator
from zoneinfo import ZoneInfo

import pytest

from fx_snapshot.db.sqlite_backend import SQLiteBackend
from fx_snapshot.ingestion.models import CanonicalSnapshot

BANGKOK = ZoneInfo("Asia/Bangkok")
NOW = datetime(2025, 9, 17, 10, 30, tzinfo=BANGKOK)


def snapshot(
    source: str,
    instrument: str,
    observed_at: datetime,
    **prices: float | None,
) -> CanonicalSnapshot:
    return CanonicalSnapshot(source=source, instrument=instrument, observed_at=observed_at, **prices)


def bkk(day: int, hour: int, month: int = 9) -> datetime:
    return datetime(2025, month, day, hour, tzinfo=BANGKOK)


@pytest.fixture()
def sqlite_backend(tmp_path: Path) -> Iterator[SQLiteBackend]:
    backend = SQLiteBackend(tmp_path / "snapshots.db")
    yield backend
    backend.close()
