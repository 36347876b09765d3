"""Crawl job state machine and background scan loop.

Moves verified jobs through the pipeline stages, persisting each stage's
output on the job as soon as it is available:

    resolve_url -> robots_txt -> sitemap_xml -> build_sample -> crawl_pages
    -> completion_webhook (best-effort) -> notify (external)

A failing stage marks the job failed with diagnostics and stops that job
only; the scan loop moves on to the next one.
"""

import asyncio
import contextlib
import logging
import traceback
from collections.abc import Awaitable, Callable
from enum import Enum

from sitesampler.backends import JobStore
from sitesampler.config import SiteSamplerConfig
from sitesampler.coordinator import BatchCrawlCoordinator
from sitesampler.exceptions import CrawlError, JobNotFoundError, JobStateError
from sitesampler.fetcher import RemotePageFetcher
from sitesampler.models import ErrorDetails, Job, JobStatus, JobStatusView, SampleSitemap
from sitesampler.notifier import LoggingNotifier, Notifier
from sitesampler.sampler import create_sample, sample_from_links
from sitesampler.sitemap import SitemapParser, categorize
from sitesampler.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


class PipelineStage(Enum):
    """Ordered stages of a job; values are stored as Job.failed_step."""

    RESOLVE_URL = "resolve_url"
    ROBOTS_TXT = "robots_txt"
    SITEMAP_XML = "sitemap_xml"
    BUILD_SAMPLE = "build_sample"
    CRAWL_PAGES = "crawl_pages"
    COMPLETION_WEBHOOK = "completion_webhook"
    NOTIFY = "notify"


StageHandler = Callable[[Job], Awaitable[None]]


class CrawlOrchestrator:
    """Owns the job pipeline and the periodic scan for verified jobs.

    Jobs run strictly one at a time from the scan loop. The set of in-flight
    job ids refuses a second concurrent run of the same job, including runs
    started directly through process_job().

    Example:
        >>> orchestrator = CrawlOrchestrator(store, fetcher, parser, coordinator,
        ...                                  dispatcher, config)
        >>> orchestrator.start()
        >>> ...
        >>> await orchestrator.stop()
    """

    def __init__(
        self,
        store: JobStore,
        fetcher: RemotePageFetcher,
        sitemap_parser: SitemapParser,
        coordinator: BatchCrawlCoordinator,
        dispatcher: WebhookDispatcher,
        config: SiteSamplerConfig,
        *,
        notifier: Notifier | None = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.sitemap_parser = sitemap_parser
        self.coordinator = coordinator
        self.dispatcher = dispatcher
        self.config = config
        self.notifier: Notifier = notifier or LoggingNotifier()

        self._processing: set[str] = set()
        self._processing_lock = asyncio.Lock()
        self._scanning = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    # ========== Scan loop ==========

    def start(self) -> None:
        """Start the background scan loop on the running event loop.

        The first scan happens immediately, then every scan_interval seconds.
        """
        if self.is_running:
            logger.info("Background crawler processor already running")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="sitesampler-scan-loop")

    async def stop(self) -> None:
        """Stop scheduling scans and wait for the loop to exit.

        A job that is already running is allowed to finish; no further jobs
        are picked up.
        """
        self._stop_event.set()
        if self._task is None:
            return
        task, self._task = self._task, None
        await task

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def _run_loop(self) -> None:
        interval = self.config.crawl.scan_interval
        logger.info(f"Background crawler processor started (checking every {interval:g}s)")

        while not self.stopping:
            try:
                await self.scan_once()
            except Exception as e:
                logger.error(f"Error in crawler scan: {e}")

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)

        logger.info("Background crawler processor stopped")

    async def scan_once(self) -> int:
        """Process all currently verified jobs, oldest first, one at a time.

        Overlapping calls return immediately. Failures of individual jobs are
        logged and do not stop the scan.

        Returns:
            Number of jobs attempted in this scan
        """
        if self._scanning:
            logger.debug("Scan already in progress, skipping")
            return 0

        self._scanning = True
        attempted = 0
        try:
            jobs = await self.find_verified_jobs()
            if not jobs:
                return 0

            logger.info(f"Processing {len(jobs)} verified jobs...")
            for job in jobs:
                if self.stopping:
                    logger.info("Stop requested, remaining jobs are left for the next run")
                    break
                attempted += 1
                try:
                    await self.process_job(job.id)
                except Exception as e:
                    logger.error(f"Failed to process job {job.id}: {e}")
        finally:
            self._scanning = False

        return attempted

    async def find_verified_jobs(self) -> list[Job]:
        """Jobs ready to enter the pipeline, oldest first."""
        return await self.store.find_jobs(
            status=JobStatus.VERIFIED,
            verified=True,
            cancelled=False,
        )

    # ========== Job status ==========

    async def get_job_status(self, job_id: str) -> JobStatusView | None:
        job = await self.store.get_job(job_id)
        return JobStatusView.from_job(job) if job is not None else None

    def is_job_processing(self, job_id: str) -> bool:
        return job_id in self._processing

    @property
    def processing_count(self) -> int:
        return len(self._processing)

    # ========== Pipeline ==========

    async def process_job(self, job_id: str) -> Job:
        """Run the full pipeline for one job.

        Args:
            job_id: Id of a job in VERIFIED state

        Returns:
            The job as stored after the pipeline finished

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the job is not ready or is already being processed
            Exception: Whatever a stage raised; the job is marked failed first
        """
        async with self._processing_lock:
            if job_id in self._processing:
                raise JobStateError(f"Job {job_id} is already being processed")
            self._processing.add(job_id)

        try:
            return await self._run_pipeline(job_id)
        finally:
            async with self._processing_lock:
                self._processing.discard(job_id)

    async def _run_pipeline(self, job_id: str) -> Job:
        job = await self._load(job_id)
        if job.status.is_terminal:
            raise JobStateError(f"Job {job_id} already finished (status={job.status})")
        if not job.is_ready:
            raise JobStateError(
                f"Job {job_id} is not ready for processing "
                f"(status={job.status}, verified={job.verified}, cancelled={job.cancelled})"
            )

        logger.info(f"Starting crawl job {job_id} for {job.url}")
        await self.store.update_job(job_id, status=JobStatus.PROCESSING)

        stages: list[tuple[PipelineStage, StageHandler]] = [
            (PipelineStage.RESOLVE_URL, self._resolve_url),
            (PipelineStage.ROBOTS_TXT, self._fetch_robots_txt),
            (PipelineStage.SITEMAP_XML, self._fetch_sitemap),
            (PipelineStage.BUILD_SAMPLE, self._build_sample),
            (PipelineStage.CRAWL_PAGES, self._crawl_pages),
        ]
        for stage, handler in stages:
            await self._run_stage(job_id, stage, handler)

        await self._send_completion_webhook(job_id)
        job = await self._load(job_id)
        await self._notify(job)

        logger.info(f"Crawl job {job_id} completed")
        return job

    async def _run_stage(self, job_id: str, stage: PipelineStage, handler: StageHandler) -> None:
        """Run one stage against a freshly loaded job; record failure and re-raise."""
        job = await self._load(job_id)
        logger.debug(f"Job {job_id}: stage {stage.value}")
        try:
            await handler(job)
        except Exception as e:
            logger.error(f"Job {job_id} failed at stage {stage.value}: {e}")
            await self._record_failure(job_id, stage, e)
            raise

    async def _record_failure(self, job_id: str, stage: PipelineStage, error: Exception) -> None:
        details = ErrorDetails.from_exception(error, "".join(traceback.format_exception(error)))
        try:
            await self.store.update_job(
                job_id,
                status=JobStatus.FAILED,
                failed_step=stage.value,
                error=details.message or details.error_type,
                error_details=details,
            )
        except Exception as e:
            logger.error(f"Could not record failure of job {job_id}: {e}")

    async def _load(self, job_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    @staticmethod
    def _require_homepage(job: Job, purpose: str) -> str:
        if not job.homepage:
            raise CrawlError(f"Homepage not found for {purpose} processing")
        return job.homepage

    async def _resolve_url(self, job: Job) -> None:
        status = await self.fetcher.check_url_status(job.url)
        if status.status_code >= 400:
            raise CrawlError(f"URL returned {status.status_code}: {job.url}")

        homepage = self.fetcher.extract_homepage(status.final_url)
        await self.store.update_job(job.id, homepage=homepage)
        logger.info(f"Job {job.id}: homepage {homepage}")

    async def _fetch_robots_txt(self, job: Job) -> None:
        homepage = self._require_homepage(job, "robots.txt")
        robots = await self.fetcher.fetch_robots_txt(homepage)
        await self.store.update_job(job.id, robots_txt=robots.content if robots.found else None)

    async def _fetch_sitemap(self, job: Job) -> None:
        homepage = self._require_homepage(job, "sitemap.xml")
        document = await self.fetcher.fetch_sitemap(homepage, job.robots_txt)
        await self.store.update_job(
            job.id, sitemap_xml=document.content if document.found else None
        )

    async def _build_sample(self, job: Job) -> None:
        homepage = self._require_homepage(job, "sample sitemap")
        sampling = self.config.sampling

        sample: SampleSitemap | None = None
        if job.sitemap_xml:
            entries = await self.sitemap_parser.parse(job.sitemap_xml, homepage)
            categories = categorize(entries, homepage)
            sample = create_sample(
                categories,
                max_per_category=sampling.max_per_category,
                first_level_limit=sampling.first_level_limit,
            )
            if not sample.urls:
                logger.info(f"Job {job.id}: sitemap has no usable URLs, crawling homepage links")
                sample = None
        else:
            logger.info(f"Job {job.id}: no sitemap.xml found, crawling homepage for links")

        if sample is None:
            sample = await self._sample_from_homepage(homepage)

        await self.store.update_job(job.id, sample_sitemap=sample)
        logger.info(
            f"Job {job.id}: sample of {len(sample.urls)} URLs "
            f"from {sample.total_original_urls} ({sample.source})"
        )

    async def _sample_from_homepage(self, homepage: str) -> SampleSitemap:
        """Fallback sample from links on the rendered homepage.

        If the homepage cannot be rendered the sample holds only the
        homepage; the crawl stage then records that failure on its Page.
        """
        sampling = self.config.sampling
        try:
            result = await self.fetcher.fetch(homepage, extract_links=True)
            links = result.links
            logger.info(f"Found {len(links)} links on homepage {homepage}")
        except Exception as e:
            logger.warning(f"Could not render homepage {homepage} for link discovery: {e}")
            links = []

        return sample_from_links(
            homepage,
            links,
            first_level_limit=sampling.first_level_limit,
            fallback_limit=sampling.fallback_limit,
        )

    async def _crawl_pages(self, job: Job) -> None:
        await self.coordinator.crawl_job(job)

    async def _send_completion_webhook(self, job_id: str) -> None:
        """Post the finished job and its pages; omitted when unconfigured."""
        if not self.dispatcher.completion_configured:
            return
        try:
            job = await self._load(job_id)
            pages = await self.store.list_pages(job_id)
            outcome = await self.dispatcher.send_completion(job, pages)
            await self.store.update_job(job_id, crawl_completion_ai=outcome)
            if not outcome.success:
                logger.warning(f"Completion webhook for job {job_id} failed: {outcome.error}")
        except Exception as e:
            logger.error(f"Completion webhook step for job {job_id} failed: {e}")

    async def _notify(self, job: Job) -> None:
        try:
            await self.notifier.send_completion(job.email, job.id, job.url, job.crawl_stats)
        except Exception as e:
            logger.error(f"Failed to send completion notification for job {job.id}: {e}")
