"""Job store factory.

Supports JSON (small, file-based) and SQLite backends.
"""

from pathlib import Path
from typing import Literal

from sitesampler.backends.base import JobStore, apply_job_update
from sitesampler.backends.json_backend import JSONStore
from sitesampler.backends.sqlite_backend import SQLiteStore

__all__ = [
    "JobStore",
    "JSONStore",
    "SQLiteStore",
    "apply_job_update",
    "create_store",
]

SQLITE_SUFFIXES = (".db", ".sqlite", ".sqlite3")


def create_store(path: Path, backend: Literal["json", "sqlite"] | None = None) -> JobStore:
    """Create a store based on path and optional type hint.

    Args:
        path: Path to store file (.json or .db)
        backend: Explicit backend type, or None to auto-detect from path

    Returns:
        JobStore instance (JSONStore or SQLiteStore), not yet initialized

    Examples:
        >>> store = create_store(Path("jobs.json"))  # JSON
        >>> store = create_store(Path("jobs.db"))    # SQLite
        >>> store = create_store(Path("jobs.dat"), "sqlite")
    """
    if backend is None:
        backend = "sqlite" if path.suffix in SQLITE_SUFFIXES else "json"

    if backend == "sqlite":
        return SQLiteStore(path)
    return JSONStore(path)
