"""MongoDB backend strategy."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from fx_snapshot.db.base_backend import (
    BackendStrategy,
    GroupKey,
    PersistenceResult,
    check_group_key,
)
from fx_snapshot.exceptions import StorageError
from fx_snapshot.ingestion.models import PRICE_FIELDS, CanonicalSnapshot
from fx_snapshot.utils.date_range import from_storage, to_storage
from fx_snapshot.utils.logger import get_logger

try:  # pragma: no cover - optional dependency
    from pymongo import ASCENDING, DESCENDING, MongoClient, UpdateOne
    from pymongo.collection import Collection
    from pymongo.errors import BulkWriteError, PyMongoError
except ModuleNotFoundError:  # pragma: no cover - handled dynamically
    MongoClient = None  # type: ignore[assignment]
    UpdateOne = None  # type: ignore[assignment]
    Collection = None  # type: ignore[assignment]
    ASCENDING, DESCENDING = 1, -1
    BulkWriteError = None  # type: ignore[assignment]
    PyMongoError = None  # type: ignore[assignment]

LOGGER = get_logger(__name__)

COLLECTION_NAME = "rate_snapshots"


def _to_record(doc: Mapping[str, Any]) -> CanonicalSnapshot:
    recorded_at = doc.get("recorded_at")
    return CanonicalSnapshot(
        source=doc["source"],
        instrument=doc["instrument"],
        observed_at=from_storage(doc["observed_at"]),
        buy_cash=doc.get("buy_cash"),
        buy_transfer=doc.get("buy_transfer"),
        sell=doc.get("sell"),
        display_name=doc.get("display_name"),
        provenance=doc.get("provenance"),
        recorded_at=from_storage(recorded_at) if recorded_at else None,
    )


def _partial_from_details(details: Mapping[str, Any]) -> PersistenceResult:
    return PersistenceResult(
        upserted=int(details.get("nUpserted", 0)),
        updated=int(details.get("nModified", 0)),
        matched=int(details.get("nMatched", 0)),
    )


class MongoBackend(BackendStrategy):
    """Backend strategy that persists snapshots inside a MongoDB collection."""

    def __init__(
        self,
        url: str,
        *,
        database: str | None = None,
        server_selection_timeout_ms: int = 5000,
    ) -> None:
        if MongoClient is None:  # pragma: no cover - optional dependency
            raise ModuleNotFoundError("pymongo is required for MongoDB backends")
        self.url = url
        self._client = MongoClient(url, serverSelectionTimeoutMS=server_selection_timeout_ms)
        db = self._client.get_default_database() if database is None else self._client[database]
        if db is None:
            raise ValueError("MongoDB connection URI must include a database name")
        self._collection: Collection = db[COLLECTION_NAME]

    def ensure_schema(self) -> None:
        try:
            LOGGER.info("Ensuring MongoDB %s collection exists", COLLECTION_NAME)
            self._client.admin.command("ping")
            self._collection.create_index(
                [("source", ASCENDING), ("instrument", ASCENDING), ("observed_at", ASCENDING)],
                unique=True,
            )
            self._collection.create_index([("instrument", ASCENDING), ("observed_at", ASCENDING)])
        except PyMongoError as exc:  # pragma: no cover - error path
            raise StorageError(f"Failed to ensure MongoDB schema: {exc}") from exc

    def bulk_upsert(self, records: Sequence[CanonicalSnapshot]) -> PersistenceResult:
        if not records:
            return PersistenceResult()
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        # Unordered bulk writes may race two upserts of one new key; keep the last.
        latest_by_key = {record.key: record for record in records}
        operations = []
        for record in latest_by_key.values():
            key = {
                "source": record.source,
                "instrument": record.instrument,
                "observed_at": to_storage(record.observed_at),
            }
            operations.append(
                UpdateOne(
                    key,
                    {
                        "$set": {**record.values(), "recorded_at": now},
                        "$setOnInsert": {"created_at": now},
                    },
                    upsert=True,
                )
            )
        try:
            outcome = self._collection.bulk_write(operations, ordered=False)
        except BulkWriteError as exc:
            partial = _partial_from_details(exc.details or {})
            raise StorageError(f"Failed to upsert MongoDB snapshots: {exc}", partial=partial) from exc
        except PyMongoError as exc:
            raise StorageError(f"Failed to upsert MongoDB snapshots: {exc}") from exc
        return PersistenceResult(
            upserted=outcome.upserted_count,
            updated=outcome.modified_count,
            matched=outcome.matched_count,
        )

    @staticmethod
    def _window(start: datetime, end: datetime) -> dict[str, datetime]:
        return {"$gte": to_storage(start), "$lte": to_storage(end)}

    def _find_one(self, query: dict[str, Any], action: str) -> CanonicalSnapshot | None:
        try:
            doc = self._collection.find_one(query, sort=[("observed_at", DESCENDING)])
        except PyMongoError as exc:
            raise StorageError(f"Failed to {action}: {exc}") from exc
        return _to_record(doc) if doc else None

    def _find(
        self, query: dict[str, Any], sort: list[tuple[str, int]], action: str
    ) -> list[CanonicalSnapshot]:
        try:
            return [_to_record(doc) for doc in self._collection.find(query).sort(sort)]
        except PyMongoError as exc:
            raise StorageError(f"Failed to {action}: {exc}") from exc

    def _aggregate(self, pipeline: list[dict[str, Any]], action: str) -> list[dict[str, Any]]:
        try:
            return list(self._collection.aggregate(pipeline))
        except PyMongoError as exc:
            raise StorageError(f"Failed to {action}: {exc}") from exc

    def find_latest(self, source: str, instrument: str) -> CanonicalSnapshot | None:
        return self._find_one({"source": source, "instrument": instrument}, "fetch latest snapshot")

    def find_in_window(
        self, source: str, instrument: str, start: datetime, end: datetime
    ) -> list[CanonicalSnapshot]:
        query = {"source": source, "instrument": instrument, "observed_at": self._window(start, end)}
        return self._find(query, [("observed_at", ASCENDING)], "fetch snapshot window")

    def find_instrument_window(
        self, instrument: str, start: datetime, end: datetime
    ) -> list[CanonicalSnapshot]:
        query = {"instrument": instrument, "observed_at": self._window(start, end)}
        return self._find(
            query, [("source", ASCENDING), ("observed_at", ASCENDING)], "fetch instrument window"
        )

    def aggregate_min_max(
        self, source: str, instrument: str, start: datetime, end: datetime, field: str
    ) -> tuple[float | None, float | None]:
        if field not in PRICE_FIELDS:
            raise ValueError(f"Unsupported price field: {field}")
        pipeline = [
            {
                "$match": {
                    "source": source,
                    "instrument": instrument,
                    "observed_at": self._window(start, end),
                    field: {"$ne": None},
                }
            },
            {"$group": {"_id": None, "low": {"$min": f"${field}"}, "high": {"$max": f"${field}"}}},
        ]
        rows = self._aggregate(pipeline, "aggregate snapshot window")
        if not rows:
            return None, None
        return rows[0].get("low"), rows[0].get("high")

    def latest_per_group(
        self,
        group_key: GroupKey,
        *,
        source: str | None = None,
        instrument: str | None = None,
    ) -> list[CanonicalSnapshot]:
        check_group_key(group_key)
        other_key = "instrument" if group_key == "source" else "source"
        match: dict[str, Any] = {}
        if source is not None:
            match["source"] = source
        if instrument is not None:
            match["instrument"] = instrument
        pipeline = [
            {"$match": match},
            {"$sort": {group_key: ASCENDING, "observed_at": DESCENDING, other_key: ASCENDING}},
            {"$group": {"_id": f"${group_key}", "doc": {"$first": "$$ROOT"}}},
            {"$replaceWith": "$doc"},
            {"$sort": {group_key: ASCENDING}},
        ]
        docs = self._aggregate(pipeline, f"fetch latest snapshot per {group_key}")
        return [_to_record(doc) for doc in docs]

    def find_latest_at_or_before(
        self, source: str, instrument: str, cutoff: datetime
    ) -> CanonicalSnapshot | None:
        query = {
            "source": source,
            "instrument": instrument,
            "observed_at": {"$lte": to_storage(cutoff)},
        }
        return self._find_one(query, "fetch prior snapshot")

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
        query = {
            "source": source,
            "instrument": instrument,
            "observed_at": self._window(start, end),
            field: value,
        }
        return self._find_one(query, "fetch matching snapshot")

    def close(self) -> None:  # pragma: no cover - trivial cleanup
        self._client.close()


__all__ = ["MongoBackend", "COLLECTION_NAME"]
