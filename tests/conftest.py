"""Pytest fixtures for sitesampler tests."""

import asyncio
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

import httpx
import pytest

from sitesampler.backends import JSONStore
from sitesampler.config import (
    BrowserConfig,
    CrawlConfig,
    SiteSamplerConfig,
    StoreConfig,
    WebhookConfig,
)
from sitesampler.fetcher import RemotePageFetcher
from sitesampler.http_client import create_http_client
from sitesampler.models import Job

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@dataclass
class FakeRoute:
    """Canned behaviour of the fake browser for one URL.

    ``errors`` are raised by successive goto() calls before the page loads;
    ``always_fail`` is raised on every call. ``late_errors`` are raised by
    successive title() calls, after navigation succeeded.
    """

    html: str = "<html><head><title>Page</title></head><body><p>Hello</p></body></html>"
    title: str = "Page"
    status: int | None = 200
    final_url: str | None = None
    errors: list[BaseException] = field(default_factory=list)
    always_fail: BaseException | None = None
    late_errors: list[BaseException] = field(default_factory=list)


@dataclass
class GotoCall:
    url: str
    wait_until: str
    timeout: float


@dataclass
class FakeResponse:
    status: int


class FakePage:
    """Minimal stand-in for a Playwright page."""

    def __init__(self, browser: "FakeBrowser") -> None:
        self._browser = browser
        self._route = FakeRoute()
        self.url = ""

    async def goto(self, url: str, *, wait_until: str, timeout: float) -> FakeResponse | None:
        self._browser.goto_calls.append(GotoCall(url, wait_until, timeout))
        await asyncio.sleep(0)

        route = self._browser.route_for(url)
        if route.errors:
            raise route.errors.pop(0)
        if route.always_fail is not None:
            raise route.always_fail

        self._route = route
        self.url = route.final_url or url
        return FakeResponse(route.status) if route.status is not None else None

    async def wait_for_function(self, expression: str, *, timeout: float) -> None:
        self._browser.stability_waits.append(timeout)
        if self._browser.stability_error is not None:
            raise self._browser.stability_error

    async def title(self) -> str:
        if self._route.late_errors:
            raise self._route.late_errors.pop(0)
        return self._route.title

    async def content(self) -> str:
        return self._route.html


class FakeBrowser:
    """Remote browser double; ``session`` is a RemotePageFetcher session factory.

    Unknown URLs render a default page. Tracks how many sessions were opened,
    closed and alive at the same time.
    """

    def __init__(self) -> None:
        self.routes: dict[str, FakeRoute] = {}
        self.goto_calls: list[GotoCall] = []
        self.stability_waits: list[float] = []
        self.stability_error: BaseException | None = None
        self.sessions_opened = 0
        self.sessions_closed = 0
        self.active = 0
        self.max_active = 0

    def route(self, url: str, **kwargs: object) -> FakeRoute:
        route = FakeRoute(**kwargs)  # type: ignore[arg-type]
        self.routes[url] = route
        return route

    def route_for(self, url: str) -> FakeRoute:
        return self.routes.get(url) or FakeRoute(title=f"Title of {url}")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[FakePage]:
        self.sessions_opened += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            yield FakePage(self)
        finally:
            self.active -= 1
            self.sessions_closed += 1

    @property
    def visited(self) -> list[str]:
        return [call.url for call in self.goto_calls]


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def read_fixture(*parts: str) -> str:
    return FIXTURES_DIR.joinpath(*parts).read_text(encoding="utf-8")


@pytest.fixture
def config(tmp_path: Path) -> SiteSamplerConfig:
    """Configuration with default limits and no settle pauses.

    Backoff and batch delays keep their defaults; tests inject a
    SleepRecorder so nothing actually waits.
    """
    return SiteSamplerConfig(
        browser=BrowserConfig(settle_delay=0.0, settle_step=0.0),
        crawl=CrawlConfig(batch_size=3, batch_delay=2.0, scan_interval=0.01),
        webhooks=WebhookConfig(),
        store=StoreConfig(path=str(tmp_path / "jobs.json")),
    )


@pytest.fixture
def browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
async def http_client(config: SiteSamplerConfig) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Shared HTTP client; requests are served by httpx_mock where a test uses it."""
    client = create_http_client(config)
    yield client
    await client.aclose()


@pytest.fixture
def fetcher(
    config: SiteSamplerConfig,
    http_client: httpx.AsyncClient,
    browser: FakeBrowser,
    sleeper: SleepRecorder,
) -> RemotePageFetcher:
    return RemotePageFetcher(
        config.browser,
        config.http,
        http_client,
        session_factory=browser.session,
        sleep=sleeper,
    )


@pytest.fixture
async def json_store(tmp_path: Path) -> AsyncGenerator[JSONStore, None]:
    store = JSONStore(tmp_path / "jobs.json")
    await store.initialize()
    yield store
    await store.close()


async def add_verified_job(
    store: JSONStore, url: str = "https://example.com/", email: str = "owner@example.com"
) -> Job:
    """Insert a job that is ready for the pipeline."""
    return await store.create_job(Job.create(url, email, verified=True))
