from __future__ import annotations

from pathlib import Path

from mcload.storage.duckdb_store import Storage


def default_storage() -> Storage:
    return Storage(Path(".mcload/mcload.duckdb"))


__all__ = ["Storage", "default_storage"]
