"""Data models shared across ingestion and storage modules."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, tzinfo
from typing import Any, Final, Literal, Mapping

PriceField = Literal["buy_cash", "buy_transfer", "sell"]

PRICE_FIELDS: Final[tuple[PriceField, ...]] = ("buy_cash", "buy_transfer", "sell")
DEFAULT_FIELD: Final[PriceField] = "sell"
# Matches the scale of the relational price columns.
PRICE_DECIMALS: Final[int] = 6

# Wire-level spellings accepted at the boundary for each canonical field.
FIELD_ALIASES: Final[Mapping[str, PriceField]] = {
    "buy_cash": "buy_cash",
    "buycash": "buy_cash",
    "buy_transfer": "buy_transfer",
    "buytransfer": "buy_transfer",
    "sell": "sell",
}


@dataclass(slots=True)
class CanonicalSnapshot:
    """One stored observation of a source's prices for an instrument at an hour."""

    source: str
    instrument: str
    observed_at: datetime
    buy_cash: float | None = None
    buy_transfer: float | None = None
    sell: float | None = None
    display_name: str | None = None
    provenance: str | None = None
    recorded_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str, datetime]:
        """Return the ``(source, instrument, observed_at)`` uniqueness key."""

        return (self.source, self.instrument, self.observed_at)

    def price(self, field: str) -> float | None:
        """Return the value of a price field, validating the field name."""

        if field not in PRICE_FIELDS:
            raise KeyError(field)
        return getattr(self, field)

    def values(self) -> dict[str, Any]:
        """Return the replaceable value tuple for this key."""

        return {
            "display_name": self.display_name,
            "buy_cash": self.buy_cash,
            "buy_transfer": self.buy_transfer,
            "sell": self.sell,
            "provenance": self.provenance,
        }

    def in_zone(self, tz: tzinfo) -> "CanonicalSnapshot":
        """Return a copy whose timestamps are expressed in ``tz``."""

        return replace(
            self,
            observed_at=self.observed_at.astimezone(tz),
            recorded_at=self.recorded_at.astimezone(tz) if self.recorded_at else None,
        )

    def to_dict(self, fields: tuple[str, ...] = PRICE_FIELDS) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "source": self.source,
            "instrument": self.instrument,
            "display_name": self.display_name,
            "observed_at": self.observed_at.isoformat(),
            "provenance": self.provenance,
        }
        for field in fields:
            payload[field] = getattr(self, field)
        return payload


__all__ = [
    "DEFAULT_FIELD",
    "PRICE_DECIMALS",
    "FIELD_ALIASES",
    "PRICE_FIELDS",
    "CanonicalSnapshot",
    "PriceField",
]
