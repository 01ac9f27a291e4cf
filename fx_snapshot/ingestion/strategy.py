"""Abstractions for pluggable observation producers."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol


class ObservationProducer(Protocol):
    """Contract for whatever acquires raw observations (scrapers, feeds, files).

    Implementations return an unordered batch of raw observation mappings with
    the keys understood by :class:`~fx_snapshot.ingestion.normalizer.SnapshotNormalizer`.
    Site-specific parsing heuristics stay behind this interface.
    """

    def fetch(self) -> Iterable[Mapping[str, Any]]:
        ...  # pragma: no cover - protocol definition


__all__ = ["ObservationProducer"]
