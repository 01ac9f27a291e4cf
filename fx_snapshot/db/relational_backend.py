"""Shared SQLAlchemy logic for SQL (SQLite/Postgres/MySQL) backends."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterator, Sequence

from sqlalchemy import (
    Column,
    DateTime,
    Numeric,
    String,
    and_,
    create_engine,
    func,
    insert,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from fx_snapshot.db.base_backend import (
    BackendStrategy,
    GroupKey,
    PersistenceResult,
    check_group_key,
)
from fx_snapshot.exceptions import StorageError
from fx_snapshot.ingestion.models import PRICE_DECIMALS, PRICE_FIELDS, CanonicalSnapshot
from fx_snapshot.utils.date_range import from_storage, to_storage
from fx_snapshot.utils.logger import get_logger

if TYPE_CHECKING:  # pragma: no cover - type checker helper
    from sqlalchemy.engine import Engine

LOGGER = get_logger(__name__)


class Base(DeclarativeBase):
    pass


class RateSnapshotRow(Base):
    """One row per (source, instrument, observed_at); times are naive UTC."""

    __tablename__ = "rate_snapshots"

    source = Column(String(64), primary_key=True)
    instrument = Column(String(16), primary_key=True)
    observed_at = Column(DateTime, primary_key=True)
    display_name = Column(String(255), nullable=True)
    buy_cash = Column(Numeric(18, PRICE_DECIMALS, asdecimal=False), nullable=True)
    buy_transfer = Column(Numeric(18, PRICE_DECIMALS, asdecimal=False), nullable=True)
    sell = Column(Numeric(18, PRICE_DECIMALS, asdecimal=False), nullable=True)
    provenance = Column(String(1024), nullable=True)
    recorded_at = Column(DateTime, nullable=False)


SNAPSHOTS = RateSnapshotRow.__table__
VALUE_COLUMNS = ("display_name", *PRICE_FIELDS, "provenance")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _price(value: Any) -> float | None:
    # SQLite hands NUMERIC columns back as int when the value is integral.
    return float(value) if value is not None else None


def _to_record(row: RateSnapshotRow) -> CanonicalSnapshot:
    return CanonicalSnapshot(
        source=row.source,
        instrument=row.instrument,
        observed_at=from_storage(row.observed_at),
        buy_cash=_price(row.buy_cash),
        buy_transfer=_price(row.buy_transfer),
        sell=_price(row.sell),
        display_name=row.display_name,
        provenance=row.provenance,
        recorded_at=from_storage(row.recorded_at) if row.recorded_at else None,
    )


@contextmanager
def _storage_errors(action: str, partial: PersistenceResult | None = None) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise StorageError(f"Failed to {action}: {exc}", partial=partial) from exc


class RelationalBackend(BackendStrategy):
    """Snapshot store backed by any SQLAlchemy-supported relational database."""

    def __init__(self, url: str, *, engine_options: dict[str, Any] | None = None) -> None:
        self.url = url
        self._engine_options = dict(engine_options or {})
        self._engine_instance: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    def _get_engine(self) -> Engine:
        if self._engine_instance is None:
            self._engine_instance = create_engine(self.url, future=True, **self._engine_options)
            self._session_factory = sessionmaker(
                bind=self._engine_instance, expire_on_commit=False, future=True
            )
        return self._engine_instance

    def _session(self) -> Session:
        self._get_engine()
        assert self._session_factory is not None
        return self._session_factory()

    def ensure_schema(self) -> None:
        engine = self._get_engine()
        with _storage_errors("ensure rate_snapshots schema"):
            LOGGER.info("Ensuring rate_snapshots schema exists")
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            Base.metadata.create_all(engine)

    # -- writes -----------------------------------------------------------

    def bulk_upsert(self, records: Sequence[CanonicalSnapshot]) -> PersistenceResult:
        result = PersistenceResult()
        if not records:
            return result
        engine = self._get_engine()
        with _storage_errors("upsert rate snapshots", partial=result):
            for record in records:
                self._upsert_one(engine, record, result)
        return result

    def _upsert_one(
        self, engine: Engine, record: CanonicalSnapshot, result: PersistenceResult
    ) -> None:
        """Apply one record as single-statement conditional writes.

        The replace only touches rows whose values differ, so a zero rowcount
        means either "missing" or "identical"; the insert decides which.
        """

        key = {
            "source": record.source,
            "instrument": record.instrument,
            "observed_at": to_storage(record.observed_at),
        }
        values = record.values()
        if self._replace_if_changed(engine, key, values):
            result.matched += 1
            result.updated += 1
            return
        try:
            with engine.begin() as connection:
                connection.execute(insert(SNAPSHOTS).values(**key, **values, recorded_at=_utcnow()))
        except IntegrityError:
            # Lost the race to a concurrent insert of the same key; replace it.
            result.matched += 1
            if self._replace_if_changed(engine, key, values):
                result.updated += 1
            return
        result.upserted += 1

    @staticmethod
    def _replace_if_changed(engine: Engine, key: dict[str, Any], values: dict[str, Any]) -> bool:
        changed = or_(*(SNAPSHOTS.c[name].is_distinct_from(values[name]) for name in VALUE_COLUMNS))
        stmt = (
            update(SNAPSHOTS)
            .where(*(SNAPSHOTS.c[name] == value for name, value in key.items()))
            .where(changed)
            .values(**values, recorded_at=_utcnow())
        )
        with engine.begin() as connection:
            return bool(connection.execute(stmt).rowcount)

    # -- reads ------------------------------------------------------------

    def _fetch(self, stmt: Any, action: str) -> list[CanonicalSnapshot]:
        with _storage_errors(action), self._session() as session:
            return [_to_record(row) for row in session.execute(stmt).scalars()]

    def _fetch_one(self, stmt: Any, action: str) -> CanonicalSnapshot | None:
        rows = self._fetch(stmt.limit(1), action)
        return rows[0] if rows else None

    @staticmethod
    def _series(source: str, instrument: str) -> tuple[Any, Any]:
        return (RateSnapshotRow.source == source, RateSnapshotRow.instrument == instrument)

    @staticmethod
    def _window(start: datetime, end: datetime) -> Any:
        return RateSnapshotRow.observed_at.between(to_storage(start), to_storage(end))

    def find_latest(self, source: str, instrument: str) -> CanonicalSnapshot | None:
        stmt = (
            select(RateSnapshotRow)
            .where(*self._series(source, instrument))
            .order_by(RateSnapshotRow.observed_at.desc())
        )
        return self._fetch_one(stmt, "fetch latest snapshot")

    def find_in_window(
        self, source: str, instrument: str, start: datetime, end: datetime
    ) -> list[CanonicalSnapshot]:
        stmt = (
            select(RateSnapshotRow)
            .where(*self._series(source, instrument), self._window(start, end))
            .order_by(RateSnapshotRow.observed_at)
        )
        return self._fetch(stmt, "fetch snapshot window")

    def find_instrument_window(
        self, instrument: str, start: datetime, end: datetime
    ) -> list[CanonicalSnapshot]:
        stmt = (
            select(RateSnapshotRow)
            .where(RateSnapshotRow.instrument == instrument, self._window(start, end))
            .order_by(RateSnapshotRow.source, RateSnapshotRow.observed_at)
        )
        return self._fetch(stmt, "fetch instrument window")

    def aggregate_min_max(
        self, source: str, instrument: str, start: datetime, end: datetime, field: str
    ) -> tuple[float | None, float | None]:
        if field not in PRICE_FIELDS:
            raise ValueError(f"Unsupported price field: {field}")
        column = SNAPSHOTS.c[field]
        stmt = select(func.min(column), func.max(column)).where(
            *self._series(source, instrument), self._window(start, end)
        )
        with _storage_errors("aggregate snapshot window"), self._session() as session:
            low, high = session.execute(stmt).one()
        return (
            float(low) if low is not None else None,
            float(high) if high is not None else None,
        )

    def latest_per_group(
        self,
        group_key: GroupKey,
        *,
        source: str | None = None,
        instrument: str | None = None,
    ) -> list[CanonicalSnapshot]:
        check_group_key(group_key)
        group_column = getattr(RateSnapshotRow, group_key)
        other_column = (
            RateSnapshotRow.instrument if group_key == "source" else RateSnapshotRow.source
        )
        filters = []
        if source is not None:
            filters.append(RateSnapshotRow.source == source)
        if instrument is not None:
            filters.append(RateSnapshotRow.instrument == instrument)

        newest = (
            select(group_column.label("group_value"), func.max(RateSnapshotRow.observed_at).label("newest"))
            .where(*filters)
            .group_by(group_column)
            .subquery()
        )
        stmt = (
            select(RateSnapshotRow)
            .join(
                newest,
                and_(
                    group_column == newest.c.group_value,
                    RateSnapshotRow.observed_at == newest.c.newest,
                ),
            )
            .where(*filters)
            .order_by(group_column, other_column)
        )
        latest: dict[str, CanonicalSnapshot] = {}
        for record in self._fetch(stmt, f"fetch latest snapshot per {group_key}"):
            latest.setdefault(getattr(record, group_key), record)
        return list(latest.values())

    def find_latest_at_or_before(
        self, source: str, instrument: str, cutoff: datetime
    ) -> CanonicalSnapshot | None:
        stmt = (
            select(RateSnapshotRow)
            .where(*self._series(source, instrument))
            .where(RateSnapshotRow.observed_at <= to_storage(cutoff))
            .order_by(RateSnapshotRow.observed_at.desc())
        )
        return self._fetch_one(stmt, "fetch prior snapshot")

    def find_latest_matching(
        self,
        source: str,
        instrument: str,
        start: datetime,
        end: datetime,
        field: str,
        value: float,
    ) -> CanonicalSnapshot | None:
        if field not in PRICE_FIELDS:
            raise ValueError(f"Unsupported price field: {field}")
        stmt = (
            select(RateSnapshotRow)
            .where(*self._series(source, instrument), self._window(start, end))
            .where(SNAPSHOTS.c[field] == value)
            .order_by(RateSnapshotRow.observed_at.desc())
        )
        return self._fetch_one(stmt, "fetch matching snapshot")

    def close(self) -> None:  # pragma: no cover - trivial resource cleanup
        if self._engine_instance is not None:
            self._engine_instance.dispose()


__all__ = ["RelationalBackend", "RateSnapshotRow", "SNAPSHOTS"]
