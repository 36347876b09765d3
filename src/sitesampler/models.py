"""Data records for jobs, pages and crawl samples.

Plain dataclasses with to_dict()/from_dict() so that every store backend
can persist them as JSON without knowing their shape.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import StrEnum
from typing import Any

from sitesampler.utils import utcnow_iso


class JobStatus(StrEnum):
    """Lifecycle states of a crawl job."""

    PENDING = "pending"
    VERIFIED = "verified"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


def _known_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in data.items() if key in names}


@dataclass(frozen=True, slots=True)
class SampleUrl:
    """A URL selected (or eligible) for crawling, with its sitemap metadata."""

    loc: str
    pathname: str
    segments: tuple[str, ...]
    level: int
    priority: float | None = None
    changefreq: str | None = None
    lastmod: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["segments"] = list(self.segments)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SampleUrl:
        data = _known_fields(cls, data)
        data["segments"] = tuple(data.get("segments", ()))
        return cls(**data)


@dataclass(frozen=True, slots=True)
class SampleSitemap:
    """Bounded set of URLs chosen for crawling a site.

    Attributes:
        urls: URLs to crawl, in crawl order
        categories: Category name -> number of source URLs in it
        first_level_pages: {"total", "crawled", "all_pages"} for depth-1 pages
        total_original_urls: Number of same-host URLs before sampling
        crawling_limits: Limits used to build the sample
        fallback: True when built from homepage links instead of a sitemap
        source: "sitemap" or "homepage_crawl"
    """

    urls: tuple[SampleUrl, ...]
    categories: dict[str, int]
    first_level_pages: dict[str, Any]
    total_original_urls: int
    crawling_limits: dict[str, int]
    fallback: bool = False
    source: str = "sitemap"

    def to_dict(self) -> dict[str, Any]:
        return {
            "urls": [url.to_dict() for url in self.urls],
            "categories": dict(self.categories),
            "first_level_pages": dict(self.first_level_pages),
            "total_original_urls": self.total_original_urls,
            "crawling_limits": dict(self.crawling_limits),
            "fallback": self.fallback,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SampleSitemap:
        return cls(
            urls=tuple(SampleUrl.from_dict(url) for url in data.get("urls", [])),
            categories=dict(data.get("categories", {})),
            first_level_pages=dict(data.get("first_level_pages", {})),
            total_original_urls=int(data.get("total_original_urls", 0)),
            crawling_limits=dict(data.get("crawling_limits", {})),
            fallback=bool(data.get("fallback", False)),
            source=data.get("source", "sitemap"),
        )


@dataclass(slots=True)
class CrawlStats:
    """Aggregate outcome of crawling a job's sample."""

    total_pages: int = 0
    successful_pages: int = 0
    failed_pages: int = 0
    ai_webhook_succeeded: int = 0
    ai_webhook_failed: int = 0
    ai_webhook_skipped: int = 0
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CrawlStats:
        return cls(**_known_fields(cls, data))


@dataclass(slots=True)
class WebhookOutcome:
    """Result of one webhook delivery, including retries."""

    success: bool
    skipped: bool = False
    status_code: int | None = None
    data: Any = None
    error: str | None = None
    retries: int = 0
    attempted_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebhookOutcome:
        return cls(**_known_fields(cls, data))


@dataclass(slots=True)
class ErrorDetails:
    """Diagnostics recorded on a job when a stage fails."""

    message: str
    error_type: str
    traceback: str | None = None
    timestamp: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_exception(cls, exc: BaseException, traceback_text: str | None = None) -> ErrorDetails:
        return cls(message=str(exc), error_type=type(exc).__name__, traceback=traceback_text)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorDetails:
        return cls(**_known_fields(cls, data))


@dataclass(slots=True)
class Job:
    """One crawl request and the output of every pipeline stage.

    Jobs are created by the intake side already verified; the pipeline only
    moves them from VERIFIED through PROCESSING to COMPLETED or FAILED.
    """

    id: str
    url: str
    email: str
    status: JobStatus = JobStatus.PENDING
    verified: bool = False
    cancelled: bool = False
    verify_attempts: int = 0
    homepage: str | None = None
    robots_txt: str | None = None
    sitemap_xml: str | None = None
    sample_sitemap: SampleSitemap | None = None
    crawl_stats: CrawlStats | None = None
    crawl_completion_ai: WebhookOutcome | None = None
    failed_step: str | None = None
    error: str | None = None
    error_details: ErrorDetails | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def create(cls, url: str, email: str, *, verified: bool = False) -> Job:
        """Build a new job with a fresh id.

        Args:
            url: Site URL to crawl
            email: Contact address for the completion notice
            verified: Create the job already verified (status VERIFIED)
        """
        return cls(
            id=uuid.uuid4().hex,
            url=url,
            email=email,
            status=JobStatus.VERIFIED if verified else JobStatus.PENDING,
            verified=verified,
        )

    @property
    def is_ready(self) -> bool:
        """True when the job may enter the pipeline."""
        return self.status == JobStatus.VERIFIED and self.verified and not self.cancelled

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "email": self.email,
            "status": self.status.value,
            "verified": self.verified,
            "cancelled": self.cancelled,
            "verify_attempts": self.verify_attempts,
            "homepage": self.homepage,
            "robots_txt": self.robots_txt,
            "sitemap_xml": self.sitemap_xml,
            "sample_sitemap": self.sample_sitemap.to_dict() if self.sample_sitemap else None,
            "crawl_stats": self.crawl_stats.to_dict() if self.crawl_stats else None,
            "crawl_completion_ai": (
                self.crawl_completion_ai.to_dict() if self.crawl_completion_ai else None
            ),
            "failed_step": self.failed_step,
            "error": self.error,
            "error_details": self.error_details.to_dict() if self.error_details else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        data = _known_fields(cls, data)
        data["status"] = JobStatus(data.get("status", JobStatus.PENDING))
        for key, record in (
            ("sample_sitemap", SampleSitemap),
            ("crawl_stats", CrawlStats),
            ("crawl_completion_ai", WebhookOutcome),
            ("error_details", ErrorDetails),
        ):
            if isinstance(data.get(key), dict):
                data[key] = record.from_dict(data[key])
        return cls(**data)


@dataclass(slots=True)
class Page:
    """Crawl result for one sampled URL. Exactly one per sampled URL."""

    id: str
    job_id: str
    url: str
    title: str | None = None
    html: str | None = None
    status_code: int = 0  # 0 = fetch never completed
    redirected: bool = False
    final_url: str | None = None
    level: int = 0
    pathname: str = "/"
    segments: list[str] = field(default_factory=list)
    priority: float | None = None
    changefreq: str | None = None
    lastmod: str | None = None
    error: str | None = None
    ai_processed: bool = False
    ai_response: Any = None
    ai_error: str | None = None
    ai_retries: int = 0
    ai_processed_at: str | None = None
    crawled_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def for_sample(cls, job_id: str, sample: SampleUrl, **values: Any) -> Page:
        """Create a page carrying the sitemap metadata of a sampled URL."""
        return cls(
            id=uuid.uuid4().hex,
            job_id=job_id,
            url=sample.loc,
            level=sample.level,
            pathname=sample.pathname,
            segments=list(sample.segments),
            priority=sample.priority,
            changefreq=sample.changefreq,
            lastmod=sample.lastmod,
            **values,
        )

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.status_code > 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Page:
        data = _known_fields(cls, data)
        data["segments"] = list(data.get("segments") or [])
        return cls(**data)


@dataclass(frozen=True, slots=True)
class JobStatusView:
    """Read-only subset of a job exposed to status queries."""

    id: str
    url: str
    email: str
    status: JobStatus
    verified: bool
    cancelled: bool
    failed_step: str | None
    error: str | None
    crawl_stats: CrawlStats | None
    created_at: str
    updated_at: str

    @classmethod
    def from_job(cls, job: Job) -> JobStatusView:
        return cls(
            id=job.id,
            url=job.url,
            email=job.email,
            status=job.status,
            verified=job.verified,
            cancelled=job.cancelled,
            failed_step=job.failed_step,
            error=job.error,
            crawl_stats=job.crawl_stats,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )
