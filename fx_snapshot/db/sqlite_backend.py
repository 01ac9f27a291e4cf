"""SQLite backend strategy implementation."""

from __future__ import annotations

from pathlib import Path
from urllib.parse import quote

from fx_snapshot.db import DEFAULT_SQLITE_DB_PATH
from fx_snapshot.db.relational_backend import RelationalBackend


def sqlite_url(db_path: str | Path) -> str:
    """Build a SQLAlchemy URL for an on-disk SQLite file."""

    resolved = Path(db_path).expanduser().resolve()
    return f"sqlite:///{quote(resolved.as_posix(), safe='/:')}"


class SQLiteBackend(RelationalBackend):
    """Backend strategy that stores snapshots in a local SQLite file."""

    def __init__(self, db_path: str | Path = DEFAULT_SQLITE_DB_PATH) -> None:
        self.db_path = Path(db_path).expanduser().resolve()
        super().__init__(
            sqlite_url(self.db_path),
            engine_options={"connect_args": {"check_same_thread": False}},
        )
        # SQLite files are created lazily, so the schema is always ensured up front.
        self.ensure_schema()


__all__ = ["SQLiteBackend", "sqlite_url"]
