"""Protocol for job/page store backends.

Defines the interface the pipeline uses to persist crawl jobs and the pages
crawled for them, plus the update rules every backend shares.
"""

from dataclasses import fields
from typing import Any, Protocol

from sitesampler.exceptions import StoreError
from sitesampler.models import Job, JobStatus, Page
from sitesampler.utils import utcnow_iso

# Fields the store owns; callers may not overwrite them through update_job
PROTECTED_JOB_FIELDS = frozenset({"id", "created_at", "updated_at"})
JOB_FIELDS = frozenset(f.name for f in fields(Job))


def apply_job_update(job: Job, changes: dict[str, Any]) -> Job:
    """Apply field changes to a job in place and bump updated_at.

    Args:
        job: Job loaded from the store
        changes: Field name -> new value

    Returns:
        The same job instance, updated

    Raises:
        StoreError: If a field is unknown or protected, or if an already
            written sample_sitemap would be replaced
    """
    unknown = set(changes) - JOB_FIELDS
    if unknown:
        raise StoreError(f"Unknown job field(s): {', '.join(sorted(unknown))}")

    protected = set(changes) & PROTECTED_JOB_FIELDS
    if protected:
        raise StoreError(f"Job field(s) cannot be updated: {', '.join(sorted(protected))}")

    if "sample_sitemap" in changes and job.sample_sitemap is not None:
        raise StoreError(f"Sample sitemap of job {job.id} is already set and cannot change")

    for name, value in changes.items():
        if name == "status":
            value = JobStatus(value)
        setattr(job, name, value)

    job.updated_at = utcnow_iso()
    return job


class JobStore(Protocol):
    """Interface for job and page persistence.

    Implementations handle their own file formats while providing a
    consistent async interface. Jobs are returned as fresh copies, so
    mutating a returned Job never changes stored state.
    """

    async def initialize(self) -> None:
        """Open files/connections and create the schema.

        Must be idempotent.
        """
        ...

    async def close(self) -> None:
        """Release resources. Must be idempotent."""
        ...

    # === Job Operations ===

    async def create_job(self, job: Job) -> Job:
        """Insert a new job.

        Raises:
            StoreError: If a job with the same id exists
        """
        ...

    async def get_job(self, job_id: str) -> Job | None:
        """Load a job by id, None if it does not exist."""
        ...

    async def find_jobs(
        self,
        *,
        status: JobStatus | None = None,
        verified: bool | None = None,
        cancelled: bool | None = None,
    ) -> list[Job]:
        """Find jobs matching all given filters, oldest first.

        Args:
            status: Required status, or None for any
            verified: Required verified flag, or None for any
            cancelled: Required cancelled flag, or None for any

        Returns:
            Matching jobs ordered by created_at ascending
        """
        ...

    async def update_job(self, job_id: str, **changes: Any) -> Job:
        """Persist field changes for a job atomically.

        Returns:
            The updated job

        Raises:
            JobNotFoundError: If the job does not exist
            StoreError: If the update is rejected (see apply_job_update)
        """
        ...

    # === Page Operations ===

    async def create_page(self, page: Page) -> Page:
        """Insert a page for an existing job.

        Raises:
            JobNotFoundError: If the owning job does not exist
            StoreError: If a page with the same id exists
        """
        ...

    async def update_page(self, page: Page) -> Page:
        """Replace a stored page with the given state.

        Raises:
            StoreError: If the page does not exist
        """
        ...

    async def list_pages(self, job_id: str) -> list[Page]:
        """All pages of a job in the order they were stored."""
        ...
