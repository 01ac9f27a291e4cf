"""Public interface for the fx_snapshot package."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from importlib import metadata as importlib_metadata
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from sqlalchemy import create_engine, text

from fx_snapshot.analytics.engine import AnalyticsEngine
from fx_snapshot.config import SnapshotSettings
from fx_snapshot.db import DEFAULT_SQLITE_DB_PATH
from fx_snapshot.db.base_backend import BackendStrategy, PersistenceResult
from fx_snapshot.db.sqlite_backend import SQLiteBackend, sqlite_url
from fx_snapshot.exceptions import FxSnapshotError, StorageError, ValidationError
from fx_snapshot.ingestion.coordinator import IngestionCoordinator, IngestionReport
from fx_snapshot.ingestion.models import CanonicalSnapshot
from fx_snapshot.ingestion.normalizer import SnapshotNormalizer
from fx_snapshot.utils.date_range import range_window
from fx_snapshot.utils.logger import set_level
from fx_snapshot.utils.params import (
    parse_day,
    parse_field,
    parse_fields,
    parse_instrument,
    parse_range,
    parse_source,
)

try:  # pragma: no cover - imported lazily
    from pymongo import MongoClient
except ModuleNotFoundError:  # pragma: no cover - optional dependency
    MongoClient = None  # type: ignore[misc, assignment]

__all__ = [
    "__version__",
    "AnalyticsEngine",
    "CanonicalSnapshot",
    "DatabaseBackend",
    "DatabaseConnectionInfo",
    "FxSnapshot",
    "FxSnapshotError",
    "IngestionCoordinator",
    "IngestionReport",
    "PersistenceResult",
    "SnapshotNormalizer",
    "SnapshotSettings",
    "StorageError",
    "ValidationError",
]

try:
    __version__ = importlib_metadata.version("fx-snapshot")
except importlib_metadata.PackageNotFoundError:  # pragma: no cover - fallback for local runs
    __version__ = "0.1.0"


class DatabaseBackend(str, Enum):
    """Supported database engines for FxSnapshot."""

    SQLITE = "sqlite"
    MYSQL = "mysql"
    POSTGRES = "postgres"
    MONGODB = "mongodb"

    @classmethod
    def resolve_backend_and_scheme(cls, scheme: str) -> tuple["DatabaseBackend", str]:
        """Return backend enum + canonical scheme used in connection URLs."""

        if not scheme:
            raise ValueError("DB_URL must include a scheme (e.g. mysql:// or postgres://)")
        scheme_lower = scheme.lower()
        base_scheme, _, driver = scheme_lower.partition("+")
        if base_scheme in {"postgresql", "postgres"}:
            # Keep driver hints such as ``postgresql+psycopg`` for SQLAlchemy.
            canonical_scheme = f"postgresql+{driver}" if driver else "postgresql"
            return cls.POSTGRES, canonical_scheme
        if base_scheme == "sqlite":
            return cls.SQLITE, "sqlite"
        if base_scheme == "mysql":
            canonical_scheme = scheme_lower if driver else "mysql+pymysql"
            return cls.MYSQL, canonical_scheme
        if base_scheme == "mongodb":
            # Keep srv-style schemes intact so pymongo can route via DNS.
            canonical_scheme = scheme_lower if driver else "mongodb"
            return cls.MONGODB, canonical_scheme
        raise ValueError(
            "Unsupported database backend. Supported values are SQLite, MySQL, "
            "Postgres, and MongoDB."
        )

    @classmethod
    def from_scheme(cls, scheme: str) -> "DatabaseBackend":
        """Normalise URL schemes into a DatabaseBackend value."""

        backend, _ = cls.resolve_backend_and_scheme(scheme)
        return backend


@dataclass(slots=True)
class DatabaseConnectionInfo:
    """Represents how FxSnapshot should talk to the persistence layer."""

    backend: DatabaseBackend
    url: str
    name: str | None
    username: str | None = None
    password: str | None = None
    host: str | None = None
    port: int | None = None

    @classmethod
    def from_url(cls, url: str) -> "DatabaseConnectionInfo":
        """Create a connection object by parsing a database URL/DSN."""

        if url.lower().startswith("sqlite"):
            # File paths are kept verbatim; ``sqlite:///rel.db`` and ``sqlite:////abs.db`` both work.
            _, _, path = url.partition(":///")
            if not path:
                raise ValueError("SQLite DSNs look like sqlite:///path/to/snapshots.db")
            return cls(backend=DatabaseBackend.SQLITE, url=url, name=path)
        cleaned_url, query_db_name = cls._normalise_database_name_parameter(url)
        parsed = urlparse(cleaned_url)
        if not parsed.scheme:
            raise ValueError("DB_URL must include a scheme (e.g. mysql:// or postgres://)")
        backend, canonical_scheme = DatabaseBackend.resolve_backend_and_scheme(parsed.scheme)
        if parsed.scheme != canonical_scheme:
            parsed = parsed._replace(scheme=canonical_scheme)
            cleaned_url = urlunparse(parsed)
        name = parsed.path[1:] if parsed.path and parsed.path != "/" else None
        return cls(
            backend=backend,
            url=cleaned_url,
            name=name or query_db_name,
            username=parsed.username,
            password=parsed.password,
            host=parsed.hostname,
            port=parsed.port,
        )

    @classmethod
    def sqlite(cls, db_path: str | Path = DEFAULT_SQLITE_DB_PATH) -> "DatabaseConnectionInfo":
        return cls(backend=DatabaseBackend.SQLITE, url=sqlite_url(db_path), name=str(db_path))

    @staticmethod
    def _normalise_database_name_parameter(url: str) -> tuple[str, str | None]:
        """Support ``DATABASE_NAME=`` query parameters in DSNs."""

        # Some callers append ``DATABASE_NAME=foo`` without an ``&`` delimiter.
        patched_url = re.sub(r"(?i)(?<![?&])DATABASE_NAME=", "&DATABASE_NAME=", url)
        parsed = urlparse(patched_url)
        query_pairs = parse_qsl(parsed.query, keep_blank_values=True)
        remaining_pairs: list[tuple[str, str]] = []
        database_name: str | None = None
        for key, value in query_pairs:
            if key.lower() == "database_name":
                if value:
                    database_name = value
                continue
            remaining_pairs.append((key, value))

        new_path = parsed.path
        if (not new_path or new_path == "/") and database_name:
            new_path = f"/{database_name}"
        cleaned = parsed._replace(query=urlencode(remaining_pairs, doseq=True), path=new_path)
        return urlunparse(cleaned), database_name

    @property
    def is_sqlite(self) -> bool:
        return self.backend is DatabaseBackend.SQLITE


def build_backend(connection_info: DatabaseConnectionInfo) -> BackendStrategy:
    """Instantiate the backend strategy described by ``connection_info``."""

    backend = connection_info.backend
    if backend is DatabaseBackend.SQLITE:
        return SQLiteBackend(connection_info.name or DEFAULT_SQLITE_DB_PATH)
    if backend is DatabaseBackend.POSTGRES:
        from fx_snapshot.db.postgres_backend import PostgresBackend

        return PostgresBackend(connection_info.url)
    if backend is DatabaseBackend.MYSQL:
        from fx_snapshot.db.mysql_backend import MySQLBackend

        return MySQLBackend(connection_info.url)
    if backend is DatabaseBackend.MONGODB:
        from fx_snapshot.db.mongo_backend import MongoBackend

        return MongoBackend(connection_info.url, database=connection_info.name)
    raise ValueError(f"Unsupported backend: {backend}")


class FxSnapshot:
    """Package facade wiring settings, store, normalizer and analytics together.

    This is the surface an HTTP layer or the CLI calls: it validates query
    parameters, delegates to the core and returns plain dictionaries.
    """

    _DRIVER_HINTS: dict[DatabaseBackend, str] = {
        DatabaseBackend.POSTGRES: "Install psycopg2-binary via 'pip install psycopg2-binary'.",
        DatabaseBackend.MYSQL: "Install PyMySQL via 'pip install PyMySQL'.",
        DatabaseBackend.MONGODB: "Install pymongo via 'pip install pymongo'.",
    }

    __version__ = __version__

    def __init__(
        self,
        db_config: DatabaseConnectionInfo | str | None = None,
        *,
        settings: SnapshotSettings | None = None,
        backend: BackendStrategy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Configure persistence and time zone.

        ``db_config`` may be a ``DatabaseConnectionInfo`` or a DSN string. When
        omitted, ``settings.db_url`` is used, and failing that the bundled
        SQLite file. A pre-built ``backend`` bypasses DSN handling entirely.
        """

        self.settings = settings or SnapshotSettings()
        set_level(self.settings.log_level)
        self.timezone = self.settings.zone
        self.connection_info = self._build_connection_info(db_config, self.settings)
        self.backend = backend or build_backend(self.connection_info)
        if backend is None and not self.connection_info.is_sqlite:
            self.backend.ensure_schema()
        self._clock = clock or (lambda: datetime.now(self.timezone))
        self.normalizer = SnapshotNormalizer(self.timezone, clock=self._clock)
        self.coordinator = IngestionCoordinator(self.backend, self.normalizer, clock=self._clock)
        self.engine = AnalyticsEngine(self.backend, timezone=self.timezone, clock=self._clock)

    @staticmethod
    def _build_connection_info(
        db_config: DatabaseConnectionInfo | str | None,
        settings: SnapshotSettings,
    ) -> DatabaseConnectionInfo:
        if isinstance(db_config, DatabaseConnectionInfo):
            return db_config
        if isinstance(db_config, str):
            return DatabaseConnectionInfo.from_url(db_config)
        if settings.db_url:
            return DatabaseConnectionInfo.from_url(settings.db_url)
        return DatabaseConnectionInfo.sqlite(DEFAULT_SQLITE_DB_PATH)

    # -- ingestion --------------------------------------------------------

    def ingest(self, items: Iterable[Mapping[str, Any]], at: datetime | None = None) -> dict[str, Any]:
        """Normalise and upsert a batch of raw observations."""

        return self.coordinator.ingest(items, at=at).to_dict()

    # -- queries ----------------------------------------------------------

    def latest(self, source: str, instrument: str, field: str | None = None) -> dict[str, Any] | None:
        """Latest value plus the comparison against yesterday's close; ``None`` if no data."""

        comparison = self.engine.latest_with_comparison(
            parse_source(source), parse_instrument(instrument), parse_field(field)
        )
        return comparison.to_dict() if comparison else None

    def daily_ohlc(
        self,
        source: str,
        instrument: str,
        day: str | date | None = None,
        field: str | None = None,
    ) -> dict[str, Any]:
        source_id, code = parse_source(source), parse_instrument(instrument)
        ohlc = self.engine.daily_ohlc(
            source_id, code, parse_day(day, self.engine.today()), parse_field(field)
        )
        return {"source": source_id, "instrument": code, **ohlc.to_dict()}

    def history(
        self,
        source: str,
        instrument: str,
        range: str | None = None,
        fields: str | Iterable[str] | None = None,
    ) -> dict[str, Any]:
        source_id, code = parse_source(source), parse_instrument(instrument)
        range_key = parse_range(range)
        chosen = parse_fields(fields)
        window = range_window(range_key, self._clock(), self.timezone)
        series = self.engine.history(source_id, code, window.start, window.end, chosen)
        return {
            "source": source_id,
            "instrument": code,
            "fields": list(chosen),
            "range": {
                "key": range_key,
                "start": window.start.isoformat(),
                "end": window.end.isoformat(),
            },
            "series": [point.to_dict() for point in series],
        }

    def best_of_day(self, instrument: str, day: str | date | None = None) -> dict[str, Any]:
        best = self.engine.best_of_day(
            parse_instrument(instrument), parse_day(day, self.engine.today())
        )
        return best.to_dict()

    def latest_all_sources(
        self, instrument: str, fields: str | Iterable[str] | None = None
    ) -> dict[str, Any]:
        chosen = parse_fields(fields)
        view = self.engine.latest_across_sources(parse_instrument(instrument))
        return {"fields": list(chosen), **view.to_dict(chosen)}

    def latest_all_instruments(
        self, source: str, fields: str | Iterable[str] | None = None
    ) -> dict[str, Any]:
        view = self.engine.latest_across_instruments(parse_source(source), parse_fields(fields))
        return view.to_dict()

    # -- connectivity -----------------------------------------------------

    def connection(self) -> tuple[bool, str | None]:
        """Attempt to establish a database connection and report the outcome."""

        if self.connection_info.backend is DatabaseBackend.MONGODB:
            return self._probe_mongodb()
        return self._probe_relational_db()

    def _missing_driver_message(self, exc: ModuleNotFoundError) -> str:
        module_name = exc.name or str(exc)
        hint = self._DRIVER_HINTS.get(self.connection_info.backend)
        base = (
            f"Missing optional dependency '{module_name}' required for "
            f"{self.connection_info.backend.value} connections."
        )
        return f"{base} {hint}" if hint else base

    def _probe_relational_db(self) -> tuple[bool, str | None]:
        engine = None
        try:
            engine = create_engine(self.connection_info.url, future=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except ModuleNotFoundError as exc:
            return False, self._missing_driver_message(exc)
        except Exception as exc:  # pragma: no cover - SQLAlchemy provides error detail
            return False, str(exc)
        finally:
            if engine is not None:
                engine.dispose()
        return True, None

    def _probe_mongodb(self) -> tuple[bool, str | None]:
        if MongoClient is None:
            return False, self._missing_driver_message(ModuleNotFoundError(name="pymongo"))
        client = None
        try:
            client = MongoClient(self.connection_info.url, serverSelectionTimeoutMS=5000)
            client.admin.command("ping")
        except Exception as exc:  # pragma: no cover - pymongo surfaces detail
            return False, str(exc)
        finally:
            if client is not None:
                client.close()
        return True, None

    def close(self) -> None:
        self.backend.close()

    def __enter__(self) -> "FxSnapshot":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
