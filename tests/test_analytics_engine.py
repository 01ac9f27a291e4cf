from __future__ import annotations

from datetime import date, timedelta

import pytest

from conftest import BANGKOK, NOW, bkk, snapshot
from fx_snapshot.analytics.engine import AnalyticsEngine, change_between, trend_of
from fx_snapshot.analytics.models import pct_text, signed_text
from fx_snapshot.db.sqlite_backend import SQLiteBackend
from fx_snapshot.exceptions import ValidationError
from fx_snapshot.utils.date_range import range_window


@pytest.fixture()
def engine(sqlite_backend: SQLiteBackend) -> AnalyticsEngine:
    return AnalyticsEngine(sqlite_backend, timezone=BANGKOK, clock=lambda: NOW)


def test_daily_ohlc_from_hourly_snapshots(engine: AnalyticsEngine) -> None:
    engine.backend.bulk_upsert(
        [
            snapshot("acb", "USD", bkk(16, 9), sell=100.0),
            snapshot("acb", "USD", bkk(16, 12), sell=105.0),
            snapshot("acb", "USD", bkk(16, 15), sell=98.0),
            snapshot("acb", "USD", bkk(16, 18), sell=102.0),
            snapshot("acb", "USD", bkk(17, 9), sell=200.0),
        ]
    )

    ohlc = engine.daily_ohlc("acb", "USD", date(2025, 9, 16))

    assert (ohlc.open, ohlc.high, ohlc.low, ohlc.close) == (100.0, 105.0, 98.0, 102.0)
    assert ohlc.to_dict() == {
        "date": "2025-09-16",
        "field": "sell",
        "open": 100.0,
        "high": 105.0,
        "low": 98.0,
        "close": 102.0,
    }


def test_daily_ohlc_for_empty_day_is_all_null(engine: AnalyticsEngine) -> None:
    ohlc = engine.daily_ohlc("acb", "USD", date(2025, 9, 10), "buy_cash")

    assert (ohlc.open, ohlc.high, ohlc.low, ohlc.close) == (None, None, None, None)


def test_daily_ohlc_propagates_null_open_and_close(engine: AnalyticsEngine) -> None:
    engine.backend.bulk_upsert(
        [
            snapshot("acb", "USD", bkk(16, 9), buy_cash=1.0),
            snapshot("acb", "USD", bkk(16, 12), sell=105.0),
            snapshot("acb", "USD", bkk(16, 18), buy_cash=2.0),
        ]
    )

    ohlc = engine.daily_ohlc("acb", "USD", date(2025, 9, 16))

    assert ohlc.open is None
    assert ohlc.close is None
    assert (ohlc.low, ohlc.high) == (105.0, 105.0)


def test_daily_ohlc_rejects_unknown_field(engine: AnalyticsEngine) -> None:
    with pytest.raises(ValidationError):
        engine.daily_ohlc("acb", "USD", date(2025, 9, 16), "mid")


def test_day_boundaries_follow_configured_zone(engine: AnalyticsEngine) -> None:
    engine.backend.bulk_upsert(
        [
            snapshot("acb", "USD", bkk(16, 23), sell=1.0),
            snapshot("acb", "USD", bkk(17, 0), sell=2.0),
        ]
    )

    assert engine.daily_close("acb", "USD", date(2025, 9, 16)).sell == 1.0
    assert engine.daily_open("acb", "USD", date(2025, 9, 17)).sell == 2.0
    assert engine.daily_open("acb", "USD", date(2025, 9, 18)) is None


def test_latest_with_comparison_against_yesterday_close(engine: AnalyticsEngine) -> None:
    engine.backend.bulk_upsert(
        [
            snapshot("acb", "USD", bkk(16, 9), sell=25900.0),
            snapshot("acb", "USD", bkk(16, 18), sell=26000.0),
            snapshot("acb", "USD", bkk(17, 10), sell=26100.0),
        ]
    )

    result = engine.latest_with_comparison("acb", "USD")

    assert result is not None
    assert result.value == 26100.0
    assert result.yesterday_value == 26000.0
    assert result.change == pytest.approx(100.0)
    assert result.pct == pytest.approx(100.0 / 26000.0)
    assert result.yesterday_close.observed_at == bkk(16, 18)


def test_latest_with_comparison_handles_missing_and_zero_close(engine: AnalyticsEngine) -> None:
    assert engine.latest_with_comparison("acb", "USD") is None

    engine.backend.bulk_upsert([snapshot("acb", "USD", bkk(17, 10), sell=5.0)])
    no_close = engine.latest_with_comparison("acb", "USD")
    assert no_close is not None
    assert no_close.yesterday_close is None
    assert (no_close.change, no_close.pct) == (None, None)

    engine.backend.bulk_upsert([snapshot("acb", "USD", bkk(16, 20), sell=0.0)])
    zero_close = engine.latest_with_comparison("acb", "USD")
    assert zero_close is not None
    assert zero_close.change == 5.0
    assert zero_close.pct is None


def test_history_is_sparse_and_carries_daily_closes(engine: AnalyticsEngine) -> None:
    engine.backend.bulk_upsert(
        [
            snapshot("acb", "USD", bkk(10, 9), sell=1.0, buy_cash=0.5),
            snapshot("acb", "USD", bkk(10, 17), sell=2.0),
            snapshot("acb", "USD", bkk(13, 8), sell=3.0, buy_cash=2.5),
            snapshot("acb", "USD", bkk(17, 0), sell=4.0),
            snapshot("acb", "USD", bkk(1, 9, month=7), sell=9.0),
        ]
    )
    window = range_window("1w", NOW, BANGKOK)

    points = engine.history("acb", "USD", window.start, window.end, ("sell", "buy_cash"))

    assert [point.date for point in points] == [
        date(2025, 9, 10),
        date(2025, 9, 13),
        date(2025, 9, 17),
    ]
    assert points[0].values == {"sell": 2.0, "buy_cash": None}
    assert points[1].to_dict() == {"date": "2025-09-13", "sell": 3.0, "buy_cash": 2.5}
    assert engine.daily_close_series("acb", "USD", window.start, window.end) == [
        (date(2025, 9, 10), 2.0),
        (date(2025, 9, 13), 3.0),
        (date(2025, 9, 17), 4.0),
    ]


def test_history_requires_a_valid_field(engine: AnalyticsEngine) -> None:
    window = range_window("1m", NOW, BANGKOK)

    with pytest.raises(ValidationError):
        engine.history("acb", "USD", window.start, window.end, ("mid",))


def test_best_of_day_ranks_sources(engine: AnalyticsEngine) -> None:
    engine.backend.bulk_upsert(
        [
            snapshot("a", "USD", bkk(16, 9), sell=26000.0, buy_cash=25800.0),
            snapshot("a", "USD", bkk(16, 10), sell=26050.0),
            snapshot("b", "USD", bkk(16, 11), sell=25950.0, buy_cash=25750.0),
            snapshot("b", "USD", bkk(16, 12), sell=26100.0),
            snapshot("c", "USD", bkk(17, 9), sell=1.0),
        ]
    )

    best = engine.best_of_day("USD", date(2025, 9, 16))

    assert best.best_sell is not None
    assert (best.best_sell.source, best.best_sell.value, best.best_sell.at) == ("b", 25950.0, bkk(16, 11))
    assert best.best_buy_cash is not None
    assert (best.best_buy_cash.source, best.best_buy_cash.value) == ("a", 25800.0)
    assert best.best_buy_transfer is None
    assert best.quote("sell") is best.best_sell


def test_best_of_day_tie_goes_to_smallest_source(engine: AnalyticsEngine) -> None:
    engine.backend.bulk_upsert(
        [
            snapshot("vcb", "USD", bkk(16, 9), sell=25950.0),
            snapshot("acb", "USD", bkk(16, 14), sell=25950.0),
            snapshot("acb", "USD", bkk(16, 8), sell=25950.0),
        ]
    )

    best = engine.best_of_day("USD", date(2025, 9, 16))

    assert best.best_sell is not None
    assert best.best_sell.source == "acb"
    assert best.best_sell.at == bkk(16, 14)


def test_latest_across_sources(engine: AnalyticsEngine) -> None:
    engine.backend.bulk_upsert(
        [
            snapshot("acb", "USD", bkk(16, 9), sell=1.0),
            snapshot("acb", "USD", bkk(17, 9), sell=2.0),
            snapshot("vcb", "USD", bkk(17, 10), sell=3.0),
            snapshot("vcb", "EUR", bkk(17, 11), sell=4.0),
        ]
    )

    result = engine.latest_across_sources("USD")

    assert [(item.source, item.sell) for item in result.items] == [("acb", 2.0), ("vcb", 3.0)]
    assert result.as_of == bkk(17, 10)
    payload = result.to_dict(("sell",))
    assert payload["instrument"] == "USD"
    assert [entry["sell"] for entry in payload["sources"]] == [2.0, 3.0]
    assert engine.latest_across_sources("GBP").as_of is None


def test_latest_across_instruments_uses_24h_lookback(engine: AnalyticsEngine) -> None:
    engine.backend.bulk_upsert(
        [
            snapshot("acb", "USD", bkk(16, 10), sell=26000.0, buy_cash=None),
            snapshot("acb", "USD", bkk(16, 12), sell=25900.0),
            snapshot("acb", "USD", bkk(17, 10), sell=26100.0, buy_cash=25900.0),
            snapshot("acb", "EUR", bkk(17, 9), sell=30000.0),
        ]
    )

    result = engine.latest_across_instruments("acb", ("sell", "buy_cash"))

    by_instrument = {item.snapshot.instrument: item for item in result.items}
    usd = by_instrument["USD"].deltas["sell"]
    assert usd.prev_value == 26000.0
    assert usd.change == pytest.approx(100.0)
    assert usd.pct == pytest.approx(0.0038461, rel=1e-4)
    assert usd.trend == "up"
    assert by_instrument["USD"].deltas["buy_cash"].change is None
    eur = by_instrument["EUR"].deltas["sell"]
    assert (eur.prev_value, eur.change, eur.pct, eur.trend) == (None, None, None, None)
    assert result.as_of == bkk(17, 10)


def test_change_helpers() -> None:
    assert change_between(None, 1.0) == (None, None)
    assert change_between(2.0, 0.0) == (2.0, None)
    assert change_between(99.0, 100.0) == (-1.0, -0.01)
    assert [trend_of(value) for value in (1.0, -1.0, 0.0, None)] == ["up", "down", "flat", None]


def test_today_uses_civil_date_of_clock(engine: AnalyticsEngine) -> None:
    late = AnalyticsEngine(
        engine.backend, timezone=BANGKOK, clock=lambda: NOW.replace(hour=23) + timedelta(hours=1)
    )

    assert engine.today() == date(2025, 9, 17)
    assert late.today() == date(2025, 9, 18)


def test_text_formatting_of_changes() -> None:
    assert signed_text(1234.5) == "+1,234.50"
    assert signed_text(-50.0) == "-50.00"
    assert signed_text(0.0) == "0.00"
    assert signed_text(None) is None
    assert pct_text(0.0038461) == "+0.38%"
    assert pct_text(-0.01) == "-1.00%"
    assert pct_text(None) is None
