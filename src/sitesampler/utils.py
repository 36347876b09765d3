"""Utility functions."""

import logging
from datetime import UTC, datetime

from rich.logging import RichHandler


def setup_logging(verbose: bool = False) -> None:
    """Setup logging with RichHandler for console output.

    Args:
        verbose: If True, sets logging to DEBUG level and shows file paths.
                If False, sets logging to INFO level and suppresses noisy loggers.
    """
    level = logging.DEBUG if verbose else logging.INFO

    handler = RichHandler(
        rich_tracebacks=True,
        markup=True,
        show_time=True,
        show_path=verbose,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    logging.basicConfig(
        level=level,
        handlers=[handler],
        force=True,
    )

    if not verbose:
        for name in ("httpx", "httpcore", "aiosqlite", "asyncio"):
            logging.getLogger(name).setLevel(logging.WARNING)


def utcnow_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(UTC).isoformat()
