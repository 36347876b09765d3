"""Batch crawling of a job's sample.

Pages are rendered in small parallel batches; batches run one after another
with a pause in between to keep load on the remote browser bounded.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

from sitesampler.backends import JobStore
from sitesampler.config import CrawlConfig
from sitesampler.exceptions import CrawlError
from sitesampler.fetcher import RemotePageFetcher
from sitesampler.models import CrawlStats, Job, JobStatus, Page, SampleUrl
from sitesampler.utils import utcnow_iso
from sitesampler.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


class AIOutcome(StrEnum):
    """Per-page result of the analysis webhook step."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_ATTEMPTED = "not_attempted"


@dataclass(slots=True)
class PageOutcome:
    page: Page
    ai: AIOutcome


class BatchCrawlCoordinator:
    """Crawls sampled URLs and records exactly one Page per URL.

    A failed fetch is stored as a Page with status_code 0 and the error; the
    analysis webhook only runs for pages that were fetched and stored. Fetch,
    webhook and store failures all stay inside their own batch item.
    """

    def __init__(
        self,
        store: JobStore,
        fetcher: RemotePageFetcher,
        dispatcher: WebhookDispatcher,
        config: CrawlConfig,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.dispatcher = dispatcher
        self.config = config
        self._sleep = sleep

    async def crawl_job(self, job: Job) -> CrawlStats:
        """Crawl every URL of the job's sample and complete the job.

        Args:
            job: Job with a sample sitemap

        Returns:
            Aggregated statistics, also written to the job together with
            status=completed

        Raises:
            CrawlError: If the job has no sample sitemap
        """
        if job.sample_sitemap is None:
            raise CrawlError(f"Sample sitemap not found for job {job.id}")

        urls = list(job.sample_sitemap.urls)
        batch_size = self.config.batch_size
        batches = [urls[i : i + batch_size] for i in range(0, len(urls), batch_size)]
        logger.info(f"Crawling {len(urls)} pages for job {job.id} in {len(batches)} batches")

        outcomes: list[PageOutcome] = []
        for index, batch in enumerate(batches):
            logger.debug(f"Job {job.id}: batch {index + 1}/{len(batches)} ({len(batch)} URLs)")
            outcomes.extend(await asyncio.gather(*(self._crawl_url(job, url) for url in batch)))

            if index + 1 < len(batches):
                await self._sleep(self.config.batch_delay)

        stats = CrawlStats(
            total_pages=len(urls),
            successful_pages=sum(1 for outcome in outcomes if outcome.page.succeeded),
            failed_pages=sum(1 for outcome in outcomes if not outcome.page.succeeded),
            ai_webhook_succeeded=sum(1 for o in outcomes if o.ai is AIOutcome.SUCCEEDED),
            ai_webhook_failed=sum(1 for o in outcomes if o.ai is AIOutcome.FAILED),
            ai_webhook_skipped=sum(1 for o in outcomes if o.ai is AIOutcome.SKIPPED),
            completed_at=utcnow_iso(),
        )

        await self.store.update_job(job.id, crawl_stats=stats, status=JobStatus.COMPLETED)
        logger.info(
            f"Job {job.id} crawled: {stats.successful_pages}/{stats.total_pages} pages, "
            f"{stats.failed_pages} failed"
        )
        return stats

    async def _crawl_url(self, job: Job, sample: SampleUrl) -> PageOutcome:
        """Fetch one URL, store its Page and run the analysis webhook.

        Never raises: fetch and store failures stay with this URL.
        """
        try:
            result = await self.fetcher.fetch(sample.loc)
        except Exception as e:
            logger.warning(f"Failed to crawl {sample.loc}: {e}")
            page = Page.for_sample(job.id, sample, status_code=0, error=str(e) or type(e).__name__)
            await self._save_page(page, create=True)
            return PageOutcome(page=page, ai=AIOutcome.NOT_ATTEMPTED)

        page = Page.for_sample(
            job.id,
            sample,
            title=result.title,
            html=result.html,
            status_code=result.status_code,
            redirected=result.redirected,
            final_url=result.final_url,
        )
        if not await self._save_page(page, create=True):
            return PageOutcome(page=page, ai=AIOutcome.NOT_ATTEMPTED)

        outcome = await self.dispatcher.send_page(job, page)
        page.ai_processed = True
        page.ai_response = outcome.data if outcome.success else None
        page.ai_error = outcome.error
        page.ai_retries = outcome.retries
        page.ai_processed_at = outcome.attempted_at
        await self._save_page(page, create=False)

        if outcome.skipped:
            ai = AIOutcome.SKIPPED
        elif outcome.success:
            ai = AIOutcome.SUCCEEDED
        else:
            ai = AIOutcome.FAILED
        return PageOutcome(page=page, ai=ai)

    async def _save_page(self, page: Page, *, create: bool) -> bool:
        """Write page to the store.

        A store failure is logged and recorded on ``page.error`` when the
        page could not be created at all.

        Returns:
            True if the write succeeded
        """
        try:
            if create:
                await self.store.create_page(page)
            else:
                await self.store.update_page(page)
        except Exception as e:
            logger.error(f"Failed to store page {page.url} for job {page.job_id}: {e}")
            if create and page.error is None:
                page.error = f"Failed to store page: {e}"
            return False
        return True
