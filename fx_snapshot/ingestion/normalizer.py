"""Validation and canonicalisation of raw rate observations."""

from __future__ import annotations

import math
import re
from datetime import datetime, tzinfo
from decimal import Decimal
from numbers import Real
from typing import Any, Callable, Mapping

import pandas as pd

from fx_snapshot.exceptions import ValidationError
from fx_snapshot.ingestion.models import PRICE_DECIMALS, PRICE_FIELDS, CanonicalSnapshot
from fx_snapshot.utils.date_range import bucket_to_hour

NO_QUOTE_SENTINELS = frozenset({"", "-"})
_URL_PATTERN = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)

# Accepted spellings for each canonical key, first match wins.
_KEY_ALIASES: dict[str, tuple[str, ...]] = {
    "source": ("bank", "source"),
    "instrument": ("instrument", "code"),
    "display_name": ("display_name", "displayName", "name"),
    "buy_cash": ("buy_cash", "buyCash"),
    "buy_transfer": ("buy_transfer", "buyTransfer"),
    "sell": ("sell",),
    "observed_at": ("observed_at", "observedAt", "periodStart"),
    "provenance": ("provenance", "url"),
}


def _lookup(raw: Mapping[str, Any], key: str) -> Any:
    for alias in _KEY_ALIASES[key]:
        if alias in raw:
            return raw[alias]
    return None


def parse_price(value: object, *, field: str = "price") -> float | None:
    """Coerce a quoted price into ``float`` or ``None`` for "no quote".

    ``None``, empty strings and ``"-"`` mean no quote. ``0`` is a real value.
    Values are rounded to ``PRICE_DECIMALS`` places.
    """

    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric, got a boolean")
    if isinstance(value, (Real, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = value.strip()
        if cleaned in NO_QUOTE_SENTINELS:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            raise ValidationError(f"{field} is not numeric: {value!r}") from None
    else:
        raise ValidationError(f"{field} has unsupported type {type(value).__name__}")
    if not math.isfinite(number):
        raise ValidationError(f"{field} must be finite, got {value!r}")
    # Rounded to the stored scale so re-ingesting a value compares equal.
    return round(number, PRICE_DECIMALS)


def parse_timestamp(value: object) -> datetime:
    """Parse an explicit observation time (ISO-8601 or anything pandas understands)."""

    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid observation timestamp: {value!r}")
    text = value.strip()
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    try:
        parsed = pd.to_datetime(text, errors="coerce")
    except (TypeError, ValueError, OverflowError):
        parsed = pd.NaT
    if pd.isna(parsed):
        raise ValidationError(f"Invalid observation timestamp: {value!r}")
    return parsed.to_pydatetime()


def _required_text(raw: Mapping[str, Any], key: str) -> str:
    value = _lookup(raw, key)
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError(f"{key} is required")
    return text


def _optional_text(raw: Mapping[str, Any], key: str) -> str | None:
    value = _lookup(raw, key)
    if value is None:
        return None
    return str(value).strip() or None


def _source_and_provenance(raw: Mapping[str, Any]) -> tuple[str, str | None]:
    """Resolve the source id and provenance.

    Crawlers emit ``{bank, code, ..., source: <page url>}``; when ``bank`` is
    present it is the id and ``source`` is where the quote was read from.
    """

    source = _required_text(raw, "source")
    if _URL_PATTERN.match(source):
        raise ValidationError(f"source must be an identifier, not a URL: {source!r}")
    provenance = _optional_text(raw, "provenance")
    if provenance is None and "bank" in raw and raw.get("source") is not None:
        provenance = str(raw["source"]).strip() or None
    return source.lower(), provenance


class SnapshotNormalizer:
    """Turn raw observation mappings into :class:`CanonicalSnapshot` rows.

    The normalizer is the only component that buckets timestamps; every
    ``observed_at`` it emits is the start of an hour in ``timezone``.
    """

    def __init__(
        self,
        timezone: tzinfo,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.timezone = timezone
        self._clock = clock or (lambda: datetime.now(self.timezone))

    def normalize(self, raw: Mapping[str, Any], *, now: datetime | None = None) -> CanonicalSnapshot:
        if not isinstance(raw, Mapping):
            raise ValidationError("Observation payload must be a mapping")

        source, provenance = _source_and_provenance(raw)
        instrument = _required_text(raw, "instrument").upper()
        prices = {field: parse_price(_lookup(raw, field), field=field) for field in PRICE_FIELDS}
        if all(value is None for value in prices.values()):
            raise ValidationError(f"{source}/{instrument} carries no price")

        explicit = _lookup(raw, "observed_at")
        if explicit is not None and explicit != "":
            instant = parse_timestamp(explicit)
        else:
            instant = now if now is not None else self._clock()

        return CanonicalSnapshot(
            source=source,
            instrument=instrument,
            observed_at=bucket_to_hour(instant, self.timezone),
            display_name=_optional_text(raw, "display_name"),
            provenance=provenance,
            **prices,
        )

    def bucket(self, instant: datetime) -> datetime:
        return bucket_to_hour(instant, self.timezone)


__all__ = ["SnapshotNormalizer", "parse_price", "parse_timestamp", "NO_QUOTE_SENTINELS"]
