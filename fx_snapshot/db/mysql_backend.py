"""MySQL backend strategy."""

from __future__ import annotations

from fx_snapshot.db.relational_backend import RelationalBackend


class MySQLBackend(RelationalBackend):
    """Concrete relational backend for MySQL engines."""

    def __init__(self, url: str) -> None:
        super().__init__(url, engine_options={"pool_pre_ping": True, "pool_recycle": 3600})


__all__ = ["MySQLBackend"]
