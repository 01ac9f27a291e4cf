"""Helpers for working with the bundled SQLite snapshot database."""

from __future__ import annotations

from pathlib import Path
from typing import Final

__all__ = ["DEFAULT_SQLITE_DB_PATH", "bundled_sqlite_path"]

# Resolved relative to this package so installed copies find the same file
# regardless of the working directory.
DEFAULT_SQLITE_DB_PATH: Final[Path] = Path(__file__).resolve().with_name("snapshots.db")


def bundled_sqlite_path() -> Path:
    """Return the absolute path to the packaged ``snapshots.db`` file."""

    return DEFAULT_SQLITE_DB_PATH
