"""Completion notification.

The pipeline calls a Notifier once a job completes. Sending email or any
other user-facing message is up to the deployment; LoggingNotifier is the
default used for local runs.
"""

import logging
from typing import Protocol

from sitesampler.models import CrawlStats

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Receives the completion signal for a job."""

    async def send_completion(
        self, email: str, job_id: str, url: str, stats: CrawlStats | None
    ) -> None:
        """Notify the job owner. Failures are logged by the caller, never fatal."""
        ...


class LoggingNotifier:
    """Notifier that only writes a log line."""

    async def send_completion(
        self, email: str, job_id: str, url: str, stats: CrawlStats | None
    ) -> None:
        pages = f"{stats.successful_pages}/{stats.total_pages} pages" if stats else "no stats"
        logger.info(f"Job {job_id} for {url} completed ({pages}); notifying {email}")
