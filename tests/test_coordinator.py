"""Tests for batch crawling of a job's sample."""

from pathlib import Path

import httpx
import pytest
from conftest import FakeBrowser, SleepRecorder, add_verified_job
from pytest_httpx import HTTPXMock

from sitesampler.backends import JSONStore
from sitesampler.config import SiteSamplerConfig, WebhookConfig
from sitesampler.coordinator import BatchCrawlCoordinator
from sitesampler.exceptions import CrawlError, StoreError
from sitesampler.fetcher import RemotePageFetcher
from sitesampler.models import Job, JobStatus, Page
from sitesampler.sampler import sample_from_links
from sitesampler.urls import Link
from sitesampler.webhooks import NOT_CONFIGURED, WebhookDispatcher

PAGE_HOOK = "https://ai.example.com/page"


def make_coordinator(
    config: SiteSamplerConfig,
    store: JSONStore,
    fetcher: RemotePageFetcher,
    client: httpx.AsyncClient,
    sleeper: SleepRecorder,
    page_url: str | None = None,
) -> BatchCrawlCoordinator:
    dispatcher = WebhookDispatcher(WebhookConfig(page_url=page_url), client, sleep=sleeper)
    return BatchCrawlCoordinator(store, fetcher, dispatcher, config.crawl, sleep=sleeper)


async def job_with_sample(store: JSONStore, paths: list[str]) -> Job:
    job = await add_verified_job(store)
    sample = sample_from_links(
        "https://example.com/",
        [Link(f"https://example.com{path}", "") for path in paths],
    )
    return await store.update_job(job.id, homepage="https://example.com/", sample_sitemap=sample)


@pytest.fixture
def coordinator(
    config: SiteSamplerConfig,
    json_store: JSONStore,
    fetcher: RemotePageFetcher,
    http_client: httpx.AsyncClient,
    sleeper: SleepRecorder,
) -> BatchCrawlCoordinator:
    return make_coordinator(config, json_store, fetcher, http_client, sleeper)


class TestCrawlJob:
    """Tests for BatchCrawlCoordinator.crawl_job()."""

    async def test_failure_isolated(
        self, coordinator: BatchCrawlCoordinator, json_store: JSONStore, browser: FakeBrowser
    ) -> None:
        """Test that one failing URL does not affect its batch."""
        job = await job_with_sample(json_store, ["/about", "/pricing"])
        browser.route(
            "https://example.com/about", always_fail=RuntimeError("net::ERR_NAME_NOT_RESOLVED")
        )

        stats = await coordinator.crawl_job(job)

        assert stats.total_pages == 3
        assert stats.successful_pages == 2
        assert stats.failed_pages == 1
        assert stats.completed_at is not None

        pages = {page.url: page for page in await json_store.list_pages(job.id)}
        assert set(pages) == {
            "https://example.com/",
            "https://example.com/about",
            "https://example.com/pricing",
        }
        failed = pages["https://example.com/about"]
        assert failed.status_code == 0
        assert "ERR_NAME_NOT_RESOLVED" in (failed.error or "")
        assert failed.ai_processed is False
        assert pages["https://example.com/pricing"].succeeded

    async def test_job_completed_with_stats(
        self, coordinator: BatchCrawlCoordinator, json_store: JSONStore
    ) -> None:
        job = await job_with_sample(json_store, ["/about"])

        await coordinator.crawl_job(job)

        stored = await json_store.get_job(job.id)
        assert stored is not None
        assert stored.status == JobStatus.COMPLETED
        assert stored.crawl_stats is not None
        assert stored.crawl_stats.total_pages == 2

    async def test_page_metadata(
        self, coordinator: BatchCrawlCoordinator, json_store: JSONStore, browser: FakeBrowser
    ) -> None:
        """Test that pages carry render results and sampling metadata."""
        browser.route(
            "https://example.com/blog/post",
            title="Post",
            final_url="https://example.com/blog/post/",
        )
        job = await job_with_sample(json_store, ["/blog/post"])

        await coordinator.crawl_job(job)

        page = next(
            p for p in await json_store.list_pages(job.id) if p.url == "https://example.com/blog/post"
        )
        assert page.title == "Post"
        assert page.status_code == 200
        assert page.final_url == "https://example.com/blog/post/"
        assert page.redirected is True
        assert page.level == 2
        assert page.segments == ["blog", "post"]

    async def test_batches_and_delays(
        self,
        coordinator: BatchCrawlCoordinator,
        json_store: JSONStore,
        browser: FakeBrowser,
        sleeper: SleepRecorder,
    ) -> None:
        """Test batch size concurrency and delays only between batches."""
        job = await job_with_sample(json_store, [f"/p{i}" for i in range(6)])

        stats = await coordinator.crawl_job(job)

        # 7 URLs in batches of 3: 3 + 3 + 1
        assert stats.total_pages == 7
        assert len(await json_store.list_pages(job.id)) == 7
        assert sleeper.delays == [2.0, 2.0]
        assert browser.max_active == 3

    async def test_single_batch_no_delay(
        self, coordinator: BatchCrawlCoordinator, json_store: JSONStore, sleeper: SleepRecorder
    ) -> None:
        job = await job_with_sample(json_store, ["/a", "/b"])

        await coordinator.crawl_job(job)

        assert sleeper.delays == []

    async def test_missing_sample(
        self, coordinator: BatchCrawlCoordinator, json_store: JSONStore
    ) -> None:
        job = await add_verified_job(json_store)

        with pytest.raises(CrawlError, match="Sample sitemap not found"):
            await coordinator.crawl_job(job)


class TestAnalysisWebhook:
    """Tests for the per-page analysis webhook step."""

    async def test_skipped_when_unconfigured(
        self, coordinator: BatchCrawlCoordinator, json_store: JSONStore
    ) -> None:
        """Test that every fetched page counts as skipped without a webhook URL."""
        job = await job_with_sample(json_store, ["/about"])

        stats = await coordinator.crawl_job(job)

        assert stats.ai_webhook_skipped == 2
        assert stats.ai_webhook_succeeded == 0
        assert stats.ai_webhook_failed == 0
        for page in await json_store.list_pages(job.id):
            assert page.ai_processed is True
            assert page.ai_error == NOT_CONFIGURED
            assert page.ai_response is None

    async def test_responses_recorded(
        self,
        config: SiteSamplerConfig,
        json_store: JSONStore,
        fetcher: RemotePageFetcher,
        http_client: httpx.AsyncClient,
        sleeper: SleepRecorder,
        browser: FakeBrowser,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test success and failure counts and what is stored on each page."""
        coordinator = make_coordinator(
            config, json_store, fetcher, http_client, sleeper, page_url=PAGE_HOOK
        )
        # Homepage fails to render, so only /about and /pricing reach the webhook
        browser.route("https://example.com/", always_fail=ValueError("invalid url"))

        def analyse(request: httpx.Request) -> httpx.Response:
            if b"https://example.com/about" in request.content:
                return httpx.Response(200, json={"summary": "about page"})
            return httpx.Response(400, json={"detail": "rejected"})

        # One callback per delivered page
        httpx_mock.add_callback(analyse, url=PAGE_HOOK, method="POST")
        httpx_mock.add_callback(analyse, url=PAGE_HOOK, method="POST")
        job = await job_with_sample(json_store, ["/about", "/pricing"])

        stats = await coordinator.crawl_job(job)

        assert stats.successful_pages == 2
        assert stats.failed_pages == 1
        assert stats.ai_webhook_succeeded == 1
        assert stats.ai_webhook_failed == 1
        assert stats.ai_webhook_skipped == 0

        pages = {page.url: page for page in await json_store.list_pages(job.id)}
        about = pages["https://example.com/about"]
        assert about.ai_response == {"summary": "about page"}
        assert about.ai_error is None
        assert about.ai_processed_at is not None
        pricing = pages["https://example.com/pricing"]
        assert pricing.ai_response is None
        assert pricing.ai_error == "HTTP 400"
        assert pages["https://example.com/"].ai_processed is False


class FlakyStore(JSONStore):
    """JSON store whose page writes fail for chosen URLs."""

    def __init__(
        self,
        path: Path,
        *,
        fail_create: frozenset[str] = frozenset(),
        fail_update: frozenset[str] = frozenset(),
    ) -> None:
        super().__init__(path)
        self.fail_create = fail_create
        self.fail_update = fail_update

    async def create_page(self, page: Page) -> Page:
        if page.url in self.fail_create:
            raise StoreError("disk full")
        return await super().create_page(page)

    async def update_page(self, page: Page) -> Page:
        if page.url in self.fail_update:
            raise StoreError("disk full")
        return await super().update_page(page)


class TestStoreFailures:
    """Tests that page store errors stay with their own URL."""

    async def test_failed_page_not_stored(
        self,
        config: SiteSamplerConfig,
        fetcher: RemotePageFetcher,
        http_client: httpx.AsyncClient,
        sleeper: SleepRecorder,
        browser: FakeBrowser,
        tmp_path: Path,
    ) -> None:
        """Test a store error while recording a failed fetch."""
        store = FlakyStore(tmp_path / "flaky.json", fail_create=frozenset({"https://example.com/b"}))
        await store.initialize()
        browser.route("https://example.com/b", always_fail=RuntimeError("net::ERR_FAILED"))
        job = await job_with_sample(store, ["/a", "/b", "/c"])
        coordinator = make_coordinator(config, store, fetcher, http_client, sleeper)

        stats = await coordinator.crawl_job(job)

        assert stats.total_pages == 4
        assert stats.successful_pages == 3
        assert stats.failed_pages == 1
        urls = {page.url for page in await store.list_pages(job.id)}
        assert urls == {"https://example.com/", "https://example.com/a", "https://example.com/c"}
        stored = await store.get_job(job.id)
        assert stored is not None
        assert stored.status == JobStatus.COMPLETED

    async def test_fetched_page_not_stored(
        self,
        config: SiteSamplerConfig,
        fetcher: RemotePageFetcher,
        http_client: httpx.AsyncClient,
        sleeper: SleepRecorder,
        tmp_path: Path,
    ) -> None:
        """Test that an unstored page counts as failed and skips the webhook."""
        store = FlakyStore(tmp_path / "flaky.json", fail_create=frozenset({"https://example.com/a"}))
        await store.initialize()
        job = await job_with_sample(store, ["/a"])
        coordinator = make_coordinator(config, store, fetcher, http_client, sleeper)

        stats = await coordinator.crawl_job(job)

        assert stats.successful_pages == 1
        assert stats.failed_pages == 1
        assert stats.ai_webhook_skipped == 1

    async def test_update_failure_keeps_page(
        self,
        config: SiteSamplerConfig,
        fetcher: RemotePageFetcher,
        http_client: httpx.AsyncClient,
        sleeper: SleepRecorder,
        tmp_path: Path,
    ) -> None:
        """Test that losing the webhook result does not fail the page."""
        store = FlakyStore(tmp_path / "flaky.json", fail_update=frozenset({"https://example.com/a"}))
        await store.initialize()
        job = await job_with_sample(store, ["/a"])
        coordinator = make_coordinator(config, store, fetcher, http_client, sleeper)

        stats = await coordinator.crawl_job(job)

        assert stats.successful_pages == 2
        assert stats.ai_webhook_skipped == 2
        pages = {page.url: page for page in await store.list_pages(job.id)}
        assert pages["https://example.com/a"].ai_processed is False
        assert pages["https://example.com/"].ai_processed is True
