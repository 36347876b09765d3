"""JSON file job store.

Keeps every job and page in memory and rewrites the whole file after each
change. Suitable for local runs and small deployments.
Uses atomic writes (temp file + rename) for crash safety.
"""

import asyncio
import json
import logging
import tempfile
from pathlib import Path
from typing import Any

import aiofiles

from sitesampler.backends.base import apply_job_update
from sitesampler.exceptions import JobNotFoundError, StoreError
from sitesampler.models import Job, JobStatus, Page

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class JSONStore:
    """JSON file-based job store.

    File format:
        {
          "version": 1,
          "jobs": {"<job id>": {...}},
          "pages": [{...}, ...]
        }
    """

    def __init__(self, path: Path) -> None:
        """Initialize JSON store.

        Args:
            path: Path to the JSON store file
        """
        self.path = path
        self._jobs: dict[str, dict[str, Any]] = {}
        self._pages: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._loaded = False

    async def initialize(self) -> None:
        """Load state from the JSON file if it exists.

        Raises:
            StoreError: If the file exists but is not a valid store
        """
        if self._loaded:
            return
        self._loaded = True

        if not self.path.exists():
            return

        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                data = json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Cannot read job store {self.path}: {e}") from e

        if not isinstance(data, dict) or data.get("version") != STORE_VERSION:
            raise StoreError(f"Unsupported job store format in {self.path}")

        self._jobs = dict(data.get("jobs", {}))
        self._pages = {page["id"]: page for page in data.get("pages", [])}
        logger.debug(f"Loaded {len(self._jobs)} jobs and {len(self._pages)} pages from {self.path}")

    async def close(self) -> None:
        """No cleanup needed; every change is already on disk."""
        pass

    async def create_job(self, job: Job) -> Job:
        async with self._lock:
            if job.id in self._jobs:
                raise StoreError(f"Job {job.id} already exists")
            self._jobs[job.id] = job.to_dict()
            await self._save_to_disk()
        return Job.from_dict(self._jobs[job.id])

    async def get_job(self, job_id: str) -> Job | None:
        data = self._jobs.get(job_id)
        return Job.from_dict(data) if data is not None else None

    async def find_jobs(
        self,
        *,
        status: JobStatus | None = None,
        verified: bool | None = None,
        cancelled: bool | None = None,
    ) -> list[Job]:
        matches = [
            data
            for data in self._jobs.values()
            if (status is None or data["status"] == JobStatus(status).value)
            and (verified is None or data["verified"] == verified)
            and (cancelled is None or data["cancelled"] == cancelled)
        ]
        matches.sort(key=lambda data: (data["created_at"], data["id"]))
        return [Job.from_dict(data) for data in matches]

    async def update_job(self, job_id: str, **changes: Any) -> Job:
        async with self._lock:
            data = self._jobs.get(job_id)
            if data is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            job = apply_job_update(Job.from_dict(data), changes)
            self._jobs[job_id] = job.to_dict()
            await self._save_to_disk()
        return job

    async def create_page(self, page: Page) -> Page:
        async with self._lock:
            if page.job_id not in self._jobs:
                raise JobNotFoundError(f"Job {page.job_id} not found")
            if page.id in self._pages:
                raise StoreError(f"Page {page.id} already exists")
            self._pages[page.id] = page.to_dict()
            await self._save_to_disk()
        return page

    async def update_page(self, page: Page) -> Page:
        async with self._lock:
            if page.id not in self._pages:
                raise StoreError(f"Page {page.id} not found")
            self._pages[page.id] = page.to_dict()
            await self._save_to_disk()
        return page

    async def list_pages(self, job_id: str) -> list[Page]:
        return [Page.from_dict(data) for data in self._pages.values() if data["job_id"] == job_id]

    async def _save_to_disk(self) -> None:
        """Write complete state to the JSON file with an atomic rename.

        Callers must hold self._lock.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "version": STORE_VERSION,
            "jobs": self._jobs,
            "pages": list(self._pages.values()),
        }

        # Same directory as target so the rename stays on one filesystem
        temp_fd, temp_path_str = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=".sitesampler_store_",
            suffix=".tmp",
        )
        temp_path = Path(temp_path_str)

        try:
            async with aiofiles.open(temp_fd, "w", encoding="utf-8", closefd=True) as f:
                await f.write(json.dumps(data, indent=2))

            temp_path.replace(self.path)

        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise
