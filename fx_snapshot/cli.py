"""Command line access to snapshot ingestion and analytics."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Sequence

from fx_snapshot import FxSnapshot
from fx_snapshot.config import SnapshotSettings
from fx_snapshot.exceptions import FxSnapshotError, StorageError
from fx_snapshot.utils.logger import get_logger

LOGGER = get_logger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="fx-snapshot", description=__doc__)
    parser.add_argument("--db", dest="db_url", help="Database DSN (defaults to DB_URL or bundled SQLite)")
    parser.add_argument("--timezone", help="Civil time zone for bucketing (defaults to FX_SNAPSHOT_TZ)")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Upsert observations from a JSON file ('-' for stdin)")
    ingest.add_argument("path", help="JSON list of observations or {\"items\": [...]}")

    latest = sub.add_parser("latest", help="Latest value compared with yesterday's close")
    latest.add_argument("source")
    latest.add_argument("instrument")
    latest.add_argument("--field")

    ohlc = sub.add_parser("ohlc", help="Daily open/high/low/close for one field")
    ohlc.add_argument("source")
    ohlc.add_argument("instrument")
    ohlc.add_argument("--date", dest="day")
    ohlc.add_argument("--field")

    history = sub.add_parser("history", help="Daily closes over a range")
    history.add_argument("source")
    history.add_argument("instrument")
    history.add_argument("--range", dest="range_key")
    history.add_argument("--fields", help="'all' or a comma separated list")

    best = sub.add_parser("best", help="Best quote per field across sources for a day")
    best.add_argument("instrument")
    best.add_argument("--date", dest="day")

    latest_all = sub.add_parser("latest-all", help="Latest snapshot of every source for an instrument")
    latest_all.add_argument("instrument")
    latest_all.add_argument("--fields")

    pairs = sub.add_parser("pairs", help="Latest snapshot of every instrument for a source, with 24h deltas")
    pairs.add_argument("source")
    pairs.add_argument("--fields")
    return parser.parse_args(argv)


def _load_items(path: str) -> list[Any]:
    raw = sys.stdin.read() if path == "-" else Path(path).read_text(encoding="utf-8")
    payload = json.loads(raw)
    if isinstance(payload, dict):
        payload = payload.get("items", [])
    if not isinstance(payload, list):
        raise ValueError("Expected a JSON list of observations or an object with 'items'")
    return payload


def run(args: argparse.Namespace) -> Any:
    settings = SnapshotSettings.from_env()
    if args.timezone:
        settings = SnapshotSettings(**{**settings.to_dict(), "timezone": args.timezone})
    with FxSnapshot(args.db_url, settings=settings) as app:
        if args.command == "ingest":
            return app.ingest(_load_items(args.path))
        if args.command == "latest":
            result = app.latest(args.source, args.instrument, args.field)
            return result if result is not None else {"error": "not found"}
        if args.command == "ohlc":
            return app.daily_ohlc(args.source, args.instrument, args.day, args.field)
        if args.command == "history":
            return app.history(args.source, args.instrument, args.range_key, args.fields)
        if args.command == "best":
            return app.best_of_day(args.instrument, args.day)
        if args.command == "latest-all":
            return app.latest_all_sources(args.instrument, args.fields)
        if args.command == "pairs":
            return app.latest_all_instruments(args.source, args.fields)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        result = run(args)
    except StorageError as exc:
        LOGGER.error("Storage failure: %s", exc)
        return 2
    except (FxSnapshotError, ValueError) as exc:
        LOGGER.error("%s", exc)
        return 1
    print(json.dumps(result, indent=2, ensure_ascii=False, default=str))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
