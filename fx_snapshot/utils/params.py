"""Validation of query parameters coming from the outer (HTTP/CLI) layer."""

from __future__ import annotations

from datetime import date
from typing import Iterable

from fx_snapshot.exceptions import ValidationError
from fx_snapshot.ingestion.models import DEFAULT_FIELD, FIELD_ALIASES, PRICE_FIELDS
from fx_snapshot.utils.date_range import DEFAULT_RANGE, RANGE_KEYS


def parse_source(value: object) -> str:
    text = str(value).strip().lower() if value is not None else ""
    if not text:
        raise ValidationError("source is required")
    return text


def parse_instrument(value: object) -> str:
    text = str(value).strip().upper() if value is not None else ""
    if not text:
        raise ValidationError("instrument is required")
    return text


def parse_field(value: str | None) -> str:
    """Resolve a price field name, accepting camelCase wire spellings."""

    if value is None or not str(value).strip():
        return DEFAULT_FIELD
    resolved = FIELD_ALIASES.get(str(value).strip().lower())
    if resolved is None:
        raise ValidationError(f"field must be one of {', '.join(PRICE_FIELDS)}")
    return resolved


def parse_fields(value: str | Iterable[str] | None) -> tuple[str, ...]:
    """Resolve ``"all"``, a comma separated string or an iterable of field names."""

    if value is None:
        return PRICE_FIELDS
    if isinstance(value, str):
        if value.strip().lower() in {"", "all"}:
            return PRICE_FIELDS
        parts = [part for part in value.split(",") if part.strip()]
    else:
        parts = list(value)
    if not parts:
        return PRICE_FIELDS
    chosen: list[str] = []
    for part in parts:
        resolved = parse_field(part)
        if resolved not in chosen:
            chosen.append(resolved)
    return tuple(chosen)


def parse_range(value: str | None) -> str:
    if value is None or not value.strip():
        return DEFAULT_RANGE
    key = value.strip().lower()
    if key not in RANGE_KEYS:
        raise ValidationError(f"range must be one of {', '.join(RANGE_KEYS)}")
    return key


def parse_day(value: str | date | None, default: date) -> date:
    if value is None or value == "":
        return default
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValidationError(f"date must be YYYY-MM-DD, got {value!r}") from exc


__all__ = [
    "parse_day",
    "parse_field",
    "parse_fields",
    "parse_instrument",
    "parse_range",
    "parse_source",
]
