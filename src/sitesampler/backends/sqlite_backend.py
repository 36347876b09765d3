"""SQLite job store.

Jobs and pages are stored as JSON documents next to the indexed columns the
pipeline queries on (status flags, owning job, creation time).
"""

import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Any

import aiosqlite

from sitesampler.backends.base import apply_job_update
from sitesampler.exceptions import JobNotFoundError, StoreError
from sitesampler.models import Job, JobStatus, Page


class SQLiteStore:
    """SQLite-based job store.

    Schema:
        jobs: id (PK), status, verified, cancelled, created_at, data (JSON)
        pages: id (PK), job_id (FK), seq, data (JSON)

    Performance optimizations:
        - WAL mode for better concurrency
        - Index on jobs(status, verified, cancelled, created_at) for the scan query
        - Index on pages(job_id, seq)
    """

    def __init__(self, path: Path) -> None:
        """Initialize SQLite store.

        Args:
            path: Path to SQLite database file
        """
        self.path = path
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open connection and create schema if needed."""
        if self._conn is not None:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self.path)
        self._conn.row_factory = sqlite3.Row

        await self._conn.execute("PRAGMA journal_mode = WAL")
        await self._conn.execute("PRAGMA synchronous = NORMAL")
        await self._conn.execute("PRAGMA foreign_keys = ON")

        await self._create_schema()

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Store not initialized")
        return self._conn

    async def _create_schema(self) -> None:
        conn = self._connection()
        await conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                verified INTEGER NOT NULL,
                cancelled INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                data TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_jobs_scan
                ON jobs(status, verified, cancelled, created_at);

            CREATE TABLE IF NOT EXISTS pages (
                id TEXT PRIMARY KEY,
                job_id TEXT NOT NULL REFERENCES jobs(id),
                seq INTEGER NOT NULL,
                data TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_pages_job
                ON pages(job_id, seq);
        """
        )
        await conn.commit()

    async def create_job(self, job: Job) -> Job:
        conn = self._connection()
        async with self._write_lock:
            try:
                await conn.execute(
                    """
                    INSERT INTO jobs (id, status, verified, cancelled, created_at, data)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.status.value,
                        int(job.verified),
                        int(job.cancelled),
                        job.created_at,
                        json.dumps(job.to_dict()),
                    ),
                )
            except sqlite3.IntegrityError as e:
                await conn.rollback()
                raise StoreError(f"Job {job.id} already exists") from e
            await conn.commit()
        return job

    async def get_job(self, job_id: str) -> Job | None:
        conn = self._connection()
        cursor = await conn.execute("SELECT data FROM jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return Job.from_dict(json.loads(row["data"]))

    async def find_jobs(
        self,
        *,
        status: JobStatus | None = None,
        verified: bool | None = None,
        cancelled: bool | None = None,
    ) -> list[Job]:
        conn = self._connection()

        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)
        if verified is not None:
            clauses.append("verified = ?")
            params.append(int(verified))
        if cancelled is not None:
            clauses.append("cancelled = ?")
            params.append(int(cancelled))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await conn.execute(
            f"SELECT data FROM jobs {where} ORDER BY created_at ASC, id ASC",  # noqa: S608
            params,
        )
        rows = await cursor.fetchall()
        return [Job.from_dict(json.loads(row["data"])) for row in rows]

    async def update_job(self, job_id: str, **changes: Any) -> Job:
        conn = self._connection()

        # Read-modify-write; the lock keeps other writers on this connection out
        async with self._write_lock:
            cursor = await conn.execute("SELECT data FROM jobs WHERE id = ?", (job_id,))
            row = await cursor.fetchone()
            if row is None:
                raise JobNotFoundError(f"Job {job_id} not found")

            job = apply_job_update(Job.from_dict(json.loads(row["data"])), changes)
            await conn.execute(
                """
                UPDATE jobs
                SET status = ?, verified = ?, cancelled = ?, data = ?
                WHERE id = ?
                """,
                (
                    job.status.value,
                    int(job.verified),
                    int(job.cancelled),
                    json.dumps(job.to_dict()),
                    job_id,
                ),
            )
            await conn.commit()
        return job

    async def create_page(self, page: Page) -> Page:
        conn = self._connection()
        async with self._write_lock:
            cursor = await conn.execute(
                "SELECT 1 FROM jobs WHERE id = ? LIMIT 1", (page.job_id,)
            )
            if await cursor.fetchone() is None:
                raise JobNotFoundError(f"Job {page.job_id} not found")

            try:
                await conn.execute(
                    """
                    INSERT INTO pages (id, job_id, seq, data)
                    VALUES (?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM pages), ?)
                    """,
                    (page.id, page.job_id, json.dumps(page.to_dict())),
                )
            except sqlite3.IntegrityError as e:
                await conn.rollback()
                raise StoreError(f"Page {page.id} already exists") from e
            await conn.commit()
        return page

    async def update_page(self, page: Page) -> Page:
        conn = self._connection()
        async with self._write_lock:
            cursor = await conn.execute(
                "UPDATE pages SET data = ? WHERE id = ?",
                (json.dumps(page.to_dict()), page.id),
            )
            updated = cursor.rowcount
            await conn.commit()
        if updated == 0:
            raise StoreError(f"Page {page.id} not found")
        return page

    async def list_pages(self, job_id: str) -> list[Page]:
        conn = self._connection()
        cursor = await conn.execute(
            "SELECT data FROM pages WHERE job_id = ? ORDER BY seq ASC",
            (job_id,),
        )
        rows = await cursor.fetchall()
        return [Page.from_dict(json.loads(row["data"])) for row in rows]
