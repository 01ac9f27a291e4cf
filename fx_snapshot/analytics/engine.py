"""Read-side analytics over the hourly snapshot series.

Every operation is a pure combination of :class:`BackendStrategy` reads; the
engine holds no state beyond its backend, time zone and clock. Grouping by
civil day happens in memory so any backend offering range scans and min/max
can serve these queries.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta, tzinfo
from typing import Callable, Iterable, Sequence

from fx_snapshot.analytics.models import (
    BestOfDay,
    BestQuote,
    DailyOHLC,
    FieldDelta,
    HistoryPoint,
    InstrumentDelta,
    LatestAcrossInstruments,
    LatestAcrossSources,
    LatestComparison,
    Trend,
)
from fx_snapshot.db.base_backend import BackendStrategy
from fx_snapshot.exceptions import ValidationError
from fx_snapshot.ingestion.models import DEFAULT_FIELD, PRICE_FIELDS, CanonicalSnapshot
from fx_snapshot.utils.date_range import civil_date, day_window
from fx_snapshot.utils.logger import get_logger

LOGGER = get_logger(__name__)

DELTA_LOOKBACK = timedelta(hours=24)

# Ranking direction per field: sell prices are better when lower, buy prices when higher.
_BEST_DIRECTION: dict[str, int] = {"sell": -1, "buy_cash": 1, "buy_transfer": 1}


def _check_field(field: str) -> str:
    if field not in PRICE_FIELDS:
        raise ValidationError(f"field must be one of {', '.join(PRICE_FIELDS)}")
    return field


def change_between(latest: float | None, previous: float | None) -> tuple[float | None, float | None]:
    """Return ``(change, pct)``; any null side or a zero base yields ``None``."""

    if latest is None or previous is None:
        return None, None
    change = latest - previous
    pct = change / previous if previous != 0 else None
    return change, pct


def trend_of(change: float | None) -> Trend | None:
    if change is None:
        return None
    if change > 0:
        return "up"
    if change < 0:
        return "down"
    return "flat"


class AnalyticsEngine:
    """Derive OHLC, history, rankings and deltas from stored snapshots."""

    def __init__(
        self,
        backend: BackendStrategy,
        *,
        timezone: tzinfo,
        clock: Callable[[], datetime] | None = None,
        max_workers: int = 3,
    ) -> None:
        self.backend = backend
        self.timezone = timezone
        self._clock = clock or (lambda: datetime.now(self.timezone))
        self._max_workers = max_workers

    def today(self) -> date:
        return civil_date(self._clock(), self.timezone)

    # -- single series ----------------------------------------------------

    def _local(self, row: CanonicalSnapshot | None) -> CanonicalSnapshot | None:
        return row.in_zone(self.timezone) if row is not None else None

    def latest(self, source: str, instrument: str) -> CanonicalSnapshot | None:
        return self._local(self.backend.find_latest(source, instrument))

    def daily_open(self, source: str, instrument: str, day: date) -> CanonicalSnapshot | None:
        rows = self._day_rows(source, instrument, day)
        return rows[0] if rows else None

    def daily_close(self, source: str, instrument: str, day: date) -> CanonicalSnapshot | None:
        rows = self._day_rows(source, instrument, day)
        return rows[-1] if rows else None

    def _day_rows(self, source: str, instrument: str, day: date) -> list[CanonicalSnapshot]:
        window = day_window(day, self.timezone)
        rows = self.backend.find_in_window(source, instrument, window.start, window.end)
        return [row.in_zone(self.timezone) for row in rows]

    def latest_with_comparison(
        self, source: str, instrument: str, field: str = DEFAULT_FIELD
    ) -> LatestComparison | None:
        """Compare the newest value against yesterday's close.

        Returns ``None`` when the series has no snapshot at all.
        """

        _check_field(field)
        latest = self.latest(source, instrument)
        if latest is None:
            return None
        yesterday = self.today() - timedelta(days=1)
        close = self.daily_close(source, instrument, yesterday)
        value = latest.price(field)
        close_value = close.price(field) if close else None
        change, pct = change_between(value, close_value)
        return LatestComparison(
            source=source,
            instrument=instrument,
            field=field,
            latest=latest,
            value=value,
            yesterday_close=close,
            yesterday_value=close_value,
            change=change,
            pct=pct,
        )

    def daily_ohlc(
        self, source: str, instrument: str, day: date, field: str = DEFAULT_FIELD
    ) -> DailyOHLC:
        _check_field(field)
        window = day_window(day, self.timezone)
        rows = self.backend.find_in_window(source, instrument, window.start, window.end)
        low, high = self.backend.aggregate_min_max(
            source, instrument, window.start, window.end, field
        )
        return DailyOHLC(
            date=day,
            field=field,
            open=rows[0].price(field) if rows else None,
            high=high,
            low=low,
            close=rows[-1].price(field) if rows else None,
        )

    def _daily_closes(
        self, source: str, instrument: str, start: datetime, end: datetime
    ) -> list[tuple[date, CanonicalSnapshot]]:
        closes: dict[date, CanonicalSnapshot] = {}
        for row in self.backend.find_in_window(source, instrument, start, end):
            day = civil_date(row.observed_at, self.timezone)
            current = closes.get(day)
            if current is None or row.observed_at > current.observed_at:
                closes[day] = row
        return sorted(closes.items())

    def history(
        self,
        source: str,
        instrument: str,
        start: datetime,
        end: datetime,
        fields: Sequence[str] = PRICE_FIELDS,
    ) -> list[HistoryPoint]:
        """Return one point per civil day that has data, carrying that day's close.

        Days without snapshots are omitted rather than zero-filled.
        """

        chosen = [name for name in fields if name in PRICE_FIELDS]
        if not chosen:
            raise ValidationError("no valid fields selected")
        return [
            HistoryPoint(date=day, values={name: row.price(name) for name in chosen})
            for day, row in self._daily_closes(source, instrument, start, end)
        ]

    def daily_close_series(
        self,
        source: str,
        instrument: str,
        start: datetime,
        end: datetime,
        field: str = DEFAULT_FIELD,
    ) -> list[tuple[date, float | None]]:
        _check_field(field)
        return [
            (day, row.price(field))
            for day, row in self._daily_closes(source, instrument, start, end)
        ]

    # -- cross-source -----------------------------------------------------

    def best_of_day(self, instrument: str, day: date) -> BestOfDay:
        """Rank sources by their best quote of ``day`` for each price field.

        Per source the day's minimum sell and maximum buy prices are taken;
        across sources the most favourable wins. Equal values go to the
        lexicographically smallest source id.
        """

        window = day_window(day, self.timezone)
        rows = self.backend.find_instrument_window(instrument, window.start, window.end)
        winners = {name: _pick_best(rows, name) for name in PRICE_FIELDS}

        def _as_of(name: str) -> BestQuote | None:
            winner = winners[name]
            if winner is None:
                return None
            source, value = winner
            match = self.backend.find_latest_matching(
                source, instrument, window.start, window.end, name, value
            )
            at = match.observed_at.astimezone(self.timezone) if match else None
            return BestQuote(source=source, value=value, at=at)

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            quotes = dict(zip(PRICE_FIELDS, pool.map(_as_of, PRICE_FIELDS)))

        return BestOfDay(
            instrument=instrument,
            date=day,
            best_sell=quotes["sell"],
            best_buy_cash=quotes["buy_cash"],
            best_buy_transfer=quotes["buy_transfer"],
        )

    def latest_across_sources(self, instrument: str) -> LatestAcrossSources:
        items = [
            row.in_zone(self.timezone)
            for row in self.backend.latest_per_group("source", instrument=instrument)
        ]
        return LatestAcrossSources(instrument=instrument, as_of=_newest(items), items=items)

    def latest_across_instruments(
        self, source: str, fields: Sequence[str] = PRICE_FIELDS
    ) -> LatestAcrossInstruments:
        """Latest snapshot per instrument for ``source`` with a 24h lookback delta."""

        chosen = tuple(_check_field(name) for name in fields)
        items: list[InstrumentDelta] = []
        latest_rows = [
            row.in_zone(self.timezone)
            for row in self.backend.latest_per_group("instrument", source=source)
        ]
        for row in latest_rows:
            previous = self.backend.find_latest_at_or_before(
                source, row.instrument, row.observed_at - DELTA_LOOKBACK
            )
            items.append(
                InstrumentDelta(snapshot=row, deltas=_deltas(row, previous, chosen))
            )
        return LatestAcrossInstruments(source=source, as_of=_newest(latest_rows), items=items)


def _pick_best(rows: Iterable[CanonicalSnapshot], field: str) -> tuple[str, float] | None:
    direction = _BEST_DIRECTION[field]
    per_source: dict[str, float] = {}
    for row in rows:
        value = row.price(field)
        if value is None:
            continue
        current = per_source.get(row.source)
        if current is None or value * direction > current * direction:
            per_source[row.source] = value
    best: tuple[str, float] | None = None
    for source in sorted(per_source):
        value = per_source[source]
        if best is None or value * direction > best[1] * direction:
            best = (source, value)
    return best


def _deltas(
    latest: CanonicalSnapshot,
    previous: CanonicalSnapshot | None,
    fields: Sequence[str],
) -> dict[str, FieldDelta]:
    deltas: dict[str, FieldDelta] = {}
    for name in fields:
        prev_value = previous.price(name) if previous else None
        change, pct = change_between(latest.price(name), prev_value)
        deltas[name] = FieldDelta(
            prev_value=prev_value, change=change, pct=pct, trend=trend_of(change)
        )
    return deltas


def _newest(rows: Iterable[CanonicalSnapshot]) -> datetime | None:
    return max((row.observed_at for row in rows), default=None)


__all__ = ["AnalyticsEngine", "DELTA_LOOKBACK", "change_between", "trend_of"]
