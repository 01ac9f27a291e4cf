"""Derived (non-persisted) views produced by the analytics engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

from fx_snapshot.ingestion.models import PRICE_FIELDS, CanonicalSnapshot

Trend = Literal["up", "down", "flat"]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def signed_text(value: float | None) -> str | None:
    """Format a change with thousands separators, ``+`` marking a rise."""

    if value is None:
        return None
    return f"{'+' if value > 0 else ''}{value:,.2f}"


def pct_text(value: float | None) -> str | None:
    if value is None:
        return None
    return f"{'+' if value >= 0 else ''}{value * 100:.2f}%"


@dataclass(frozen=True, slots=True)
class DailyOHLC:
    date: date
    field: str
    open: float | None
    high: float | None
    low: float | None
    close: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "field": self.field,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
        }


@dataclass(frozen=True, slots=True)
class HistoryPoint:
    """Daily close of one (source, instrument) for the requested fields."""

    date: date
    values: dict[str, float | None]

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date.isoformat(), **self.values}


@dataclass(frozen=True, slots=True)
class BestQuote:
    source: str
    value: float
    at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "value": self.value, "at": _iso(self.at)}


@dataclass(frozen=True, slots=True)
class BestOfDay:
    """Most favourable quote per field across sources for one civil day.

    ``best_sell`` is the lowest sell price (cheapest for a customer buying
    foreign currency); the buy fields hold the highest prices.
    """

    instrument: str
    date: date
    best_sell: BestQuote | None = None
    best_buy_cash: BestQuote | None = None
    best_buy_transfer: BestQuote | None = None

    def quote(self, field_name: str) -> BestQuote | None:
        return getattr(self, f"best_{field_name}")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"instrument": self.instrument, "date": self.date.isoformat()}
        for name in PRICE_FIELDS:
            quote = self.quote(name)
            payload[f"best_{name}"] = quote.to_dict() if quote else None
        return payload


@dataclass(frozen=True, slots=True)
class LatestAcrossSources:
    instrument: str
    as_of: datetime | None
    items: list[CanonicalSnapshot] = field(default_factory=list)

    def to_dict(self, fields: tuple[str, ...] = PRICE_FIELDS) -> dict[str, Any]:
        return {
            "instrument": self.instrument,
            "as_of": _iso(self.as_of),
            "sources": [item.to_dict(fields) for item in self.items],
        }


@dataclass(frozen=True, slots=True)
class FieldDelta:
    prev_value: float | None
    change: float | None
    pct: float | None
    trend: Trend | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "prev_value": self.prev_value,
            "change": self.change,
            "change_text": signed_text(self.change),
            "pct": self.pct,
            "pct_text": pct_text(self.pct),
            "trend": self.trend,
        }


@dataclass(frozen=True, slots=True)
class InstrumentDelta:
    snapshot: CanonicalSnapshot
    deltas: dict[str, FieldDelta]

    def to_dict(self) -> dict[str, Any]:
        fields = tuple(self.deltas)
        return {
            **self.snapshot.to_dict(fields),
            "deltas": {name: delta.to_dict() for name, delta in self.deltas.items()},
        }


@dataclass(frozen=True, slots=True)
class LatestAcrossInstruments:
    """Latest snapshot of every instrument quoted by one source, with 24h deltas."""

    source: str
    as_of: datetime | None
    items: list[InstrumentDelta] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "as_of": _iso(self.as_of),
            "items": [item.to_dict() for item in self.items],
        }


@dataclass(frozen=True, slots=True)
class LatestComparison:
    source: str
    instrument: str
    field: str
    latest: CanonicalSnapshot
    value: float | None
    yesterday_close: CanonicalSnapshot | None
    yesterday_value: float | None
    change: float | None
    pct: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "instrument": self.instrument,
            "field": self.field,
            "observed_at": self.latest.observed_at.isoformat(),
            "value": self.value,
            "yesterday_close": {
                "at": _iso(self.yesterday_close.observed_at if self.yesterday_close else None),
                "value": self.yesterday_value,
            },
            "change": self.change,
            "change_text": signed_text(self.change),
            "pct": self.pct,
            "pct_text": pct_text(self.pct),
            "snapshot": self.latest.to_dict(),
        }


__all__ = [
    "BestOfDay",
    "BestQuote",
    "DailyOHLC",
    "FieldDelta",
    "HistoryPoint",
    "InstrumentDelta",
    "LatestAcrossInstruments",
    "LatestAcrossSources",
    "LatestComparison",
    "Trend",
    "pct_text",
    "signed_text",
]
