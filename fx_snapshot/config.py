"""Process-wide configuration, resolved once at the edge and injected downward."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fx_snapshot.exceptions import ValidationError

DEFAULT_TIMEZONE = "Asia/Bangkok"


@dataclass(frozen=True)
class SnapshotSettings:
    """Settings shared by the normalizer, analytics engine and scheduler.

    ``timezone`` drives both hourly and daily bucketing. Changing it after data
    has been written would fragment the uniqueness key, so pick it once per
    deployment.
    """

    timezone: str = DEFAULT_TIMEZONE
    db_url: str | None = None
    ingest_interval_minutes: int = 60
    retry_attempts: int = 1
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        _ = self.zone
        if self.ingest_interval_minutes <= 0:
            raise ValidationError("ingest_interval_minutes must be positive")
        if self.retry_attempts < 1:
            raise ValidationError("retry_attempts must be at least 1")

    @property
    def zone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValidationError(f"Unknown time zone: {self.timezone!r}") from exc

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SnapshotSettings":
        """Build settings from ``FX_SNAPSHOT_*``/``DB_URL`` environment variables."""

        env = os.environ if environ is None else environ
        try:
            return cls(
                timezone=env.get("FX_SNAPSHOT_TZ", DEFAULT_TIMEZONE),
                db_url=env.get("DB_URL") or None,
                ingest_interval_minutes=int(env.get("FX_SNAPSHOT_INTERVAL_MINUTES", "60")),
                retry_attempts=int(env.get("FX_SNAPSHOT_RETRY_ATTEMPTS", "1")),
                log_level=env.get("FX_SNAPSHOT_LOG_LEVEL", "INFO"),
            )
        except ValueError as exc:
            if isinstance(exc, ValidationError):
                raise
            raise ValidationError(f"Invalid numeric setting: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


__all__ = ["DEFAULT_TIMEZONE", "SnapshotSettings"]
