"""Remote page fetching.

Renders pages through a remote headless Chromium (Playwright over CDP) with
a bounded retry loop, and performs the lightweight plain-HTTP checks the
pipeline needs before rendering anything: URL status, robots.txt and
sitemap discovery.
"""

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx

from sitesampler.config import BrowserConfig, HTTPConfig
from sitesampler.exceptions import ErrorClassification, FetchError, SitemapError
from sitesampler.sitemap import decompress_if_needed
from sitesampler.types import BrowserPage
from sitesampler.urls import Link, LinkExtractor, extract_homepage, normalize_url, site_root

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[BrowserPage]]
Sleep = Callable[[float], Awaitable[None]]

# Escalates per attempt: reliable idle, lenient DOM-ready, strict network idle.
# The last strategy is reused for any further attempts.
WAIT_STRATEGIES: tuple[str, ...] = ("load", "domcontentloaded", "networkidle")

FRAME_DETACHED_MARKERS = (
    "navigating frame was detached",
    "attempted to use detached frame",
    "frame was detached",
)

RETRYABLE_MARKERS = (
    "navigating frame was detached",
    "attempted to use detached frame",
    "execution context was destroyed",
    "target closed",
    "session closed",
    "connection closed",
    "protocol error",
    "net::err_failed",
    "net::err_timed_out",
    "net::err_connection_reset",
    "net::err_connection_refused",
    "timeout",
)

READY_STATE_EXPRESSION = (
    "document.readyState === 'complete' || document.readyState === 'interactive'"
)

SITEMAP_DIRECTIVE_RE = re.compile(r"^\s*sitemap:\s*(\S+)", re.IGNORECASE | re.MULTILINE)
SITEMAP_FALLBACK_PATHS = ("/sitemap.xml", "/sitemap_index.xml")
SITEMAP_ROOT_RE = re.compile(rb"<(?:[\w.-]+:)?(?:urlset|sitemapindex)[\s>]")


def classify_error(error: BaseException) -> ErrorClassification:
    """Classify a rendering failure for the retry loop.

    Frame detachment is checked first because it also matches the generic
    retryable markers. Timeouts without a matching message are retryable.

    Examples:
        >>> classify_error(RuntimeError("Navigating frame was detached"))
        <ErrorClassification.FRAME_DETACHED: 'frame_detached'>
        >>> classify_error(RuntimeError("net::ERR_CONNECTION_RESET at https://x"))
        <ErrorClassification.RETRYABLE: 'retryable'>
        >>> classify_error(ValueError("invalid url"))
        <ErrorClassification.FATAL: 'fatal'>
    """
    message = str(error).lower()
    if any(marker in message for marker in FRAME_DETACHED_MARKERS):
        return ErrorClassification.FRAME_DETACHED
    if any(marker in message for marker in RETRYABLE_MARKERS):
        return ErrorClassification.RETRYABLE
    if isinstance(error, TimeoutError):
        return ErrorClassification.RETRYABLE
    return ErrorClassification.FATAL


@dataclass(slots=True)
class PageFetchResult:
    """Rendered page."""

    url: str
    final_url: str
    status_code: int
    title: str
    html: str
    links: list[Link] = field(default_factory=list)
    redirected: bool = False
    attempts: int = 1


@dataclass(frozen=True, slots=True)
class UrlStatus:
    """Outcome of a plain GET against the job URL."""

    status_code: int
    final_url: str
    redirected: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class RobotsTxt:
    found: bool
    url: str
    content: str | None = None


@dataclass(frozen=True, slots=True)
class SitemapDocument:
    found: bool
    url: str | None = None
    content: str | None = None


class RemotePageFetcher:
    """Fetches pages through a remote browser and plain HTTP.

    Every render attempt opens its own browser session (connection, context
    and page) and closes all of it on every exit path, so a retry after a
    detached frame always starts from a fresh session.

    Example:
        >>> fetcher = RemotePageFetcher(config.browser, config.http, client)
        >>> result = await fetcher.fetch("https://example.com/", extract_links=True)
        >>> result.title, len(result.links)
    """

    def __init__(
        self,
        browser_config: BrowserConfig,
        http_config: HTTPConfig,
        client: httpx.AsyncClient,
        *,
        session_factory: SessionFactory | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize fetcher.

        Args:
            browser_config: Remote browser endpoint and retry settings
            http_config: Plain HTTP settings
            client: Shared HTTP client for status, robots.txt and sitemap requests
            session_factory: Callable returning an async context manager that
                yields a page; defaults to a Playwright CDP session
            sleep: Awaitable used for backoff and settle pauses
        """
        self.browser_config = browser_config
        self.http_config = http_config
        self.client = client
        self._session_factory = session_factory or self._remote_session
        self._sleep = sleep
        self._link_extractor = LinkExtractor()

    # ========== Rendering ==========

    async def fetch(self, url: str, *, extract_links: bool = False) -> PageFetchResult:
        """Render a page, retrying transient browser failures.

        Attempt ``n`` (0-based) uses ``WAIT_STRATEGIES[min(n, 2)]`` and a
        navigation timeout of ``navigation_timeout + n * timeout_step``.
        Retryable failures back off ``retry_delay * 2**n`` seconds.

        Args:
            url: URL to render
            extract_links: Also extract links from the rendered HTML

        Returns:
            PageFetchResult with the number of attempts used

        Raises:
            FetchError: On a fatal error, or after all attempts failed
        """
        total_attempts = self.browser_config.max_retries + 1
        last_error: BaseException | None = None
        last_classification = ErrorClassification.FATAL

        for attempt in range(total_attempts):
            wait_until = WAIT_STRATEGIES[min(attempt, len(WAIT_STRATEGIES) - 1)]
            timeout_s = (
                self.browser_config.navigation_timeout + self.browser_config.timeout_step * attempt
            )
            logger.debug(
                f"Rendering {url} (attempt {attempt + 1}/{total_attempts}, "
                f"wait_until={wait_until}, timeout={timeout_s:.0f}s)"
            )

            try:
                result = await self._render(url, attempt, wait_until, timeout_s * 1000)
            except Exception as e:
                last_error = e
                last_classification = classify_error(e)

                if last_classification is ErrorClassification.FATAL:
                    raise FetchError(
                        f"Failed to fetch {url}: {e}",
                        url=url,
                        classification=last_classification,
                        attempts=attempt + 1,
                    ) from e

                if last_classification is ErrorClassification.FRAME_DETACHED:
                    logger.warning(f"Frame detached while rendering {url}, using a fresh session")

                if attempt + 1 < total_attempts:
                    delay = self.browser_config.retry_delay * (2**attempt)
                    logger.warning(
                        f"Attempt {attempt + 1}/{total_attempts} for {url} failed "
                        f"({last_classification}): {e}; retrying in {delay:.1f}s"
                    )
                    await self._sleep(delay)
                continue

            result.attempts = attempt + 1
            if extract_links:
                result.links = self._link_extractor.extract_links(result.html, result.final_url)
            return result

        raise FetchError(
            f"Failed to fetch {url} after {total_attempts} attempts: {last_error}",
            url=url,
            classification=last_classification,
            attempts=total_attempts,
        ) from last_error

    async def _render(
        self, url: str, attempt: int, wait_until: str, timeout_ms: float
    ) -> PageFetchResult:
        async with self._session_factory() as page:
            response = await page.goto(url, wait_until=wait_until, timeout=timeout_ms)
            await self._wait_for_stability(page, url, attempt)

            final_url = page.url or url
            status_code = response.status if response is not None else 200
            title = await page.title()
            html = await page.content()

        return PageFetchResult(
            url=url,
            final_url=final_url,
            status_code=status_code,
            title=title,
            html=html,
            redirected=_redirected(url, final_url),
        )

    async def _wait_for_stability(self, page: BrowserPage, url: str, attempt: int) -> None:
        """Wait for the document to be ready, then let late scripts settle.

        Failures here are logged and never raised.
        """
        try:
            await page.wait_for_function(
                READY_STATE_EXPRESSION,
                timeout=self.browser_config.stability_timeout * 1000,
            )
        except Exception as e:
            logger.debug(f"Page stability wait failed for {url}: {e}")

        settle = self.browser_config.settle_delay + self.browser_config.settle_step * attempt
        if settle > 0:
            await self._sleep(settle)

    @asynccontextmanager
    async def _remote_session(self) -> AsyncIterator[BrowserPage]:
        """Connect to the remote browser and yield a fresh page.

        Raises:
            ImportError: If playwright is not installed
        """
        try:
            from playwright.async_api import async_playwright
        except ImportError as e:
            raise ImportError(
                "Playwright is required for page rendering. Install with: pip install playwright"
            ) from e

        playwright = await async_playwright().start()
        resources: list[tuple[str, Any]] = []
        try:
            browser = await playwright.chromium.connect_over_cdp(self.browser_config.ws_endpoint)
            resources.append(("browser", browser))
            context = await browser.new_context(
                user_agent=self.browser_config.user_agent,
                viewport={
                    "width": self.browser_config.viewport_width,
                    "height": self.browser_config.viewport_height,
                },
            )
            resources.append(("context", context))
            page = await context.new_page()
            resources.append(("page", page))
            yield page
        finally:
            for name, resource in reversed(resources):
                try:
                    await resource.close()
                except Exception as e:
                    logger.debug(f"Error closing remote {name}: {e}")
            try:
                await playwright.stop()
            except Exception as e:
                logger.debug(f"Error stopping playwright: {e}")

    # ========== Plain HTTP ==========

    async def check_url_status(self, url: str) -> UrlStatus:
        """GET a URL following redirects and report where it ends up.

        4xx/5xx responses are returned, not raised.

        Raises:
            httpx.HTTPError: On network failures or too many redirects
        """
        response = await self.client.get(url, timeout=self.http_config.timeout)
        final_url = str(response.url)
        error = None
        if response.status_code >= 400:
            error = f"HTTP {response.status_code} {response.reason_phrase}".strip()

        return UrlStatus(
            status_code=response.status_code,
            final_url=final_url,
            redirected=bool(response.history) or _redirected(url, final_url),
            error=error,
        )

    def extract_homepage(self, url: str) -> str:
        """Homepage for a resolved URL (see urls.extract_homepage)."""
        return extract_homepage(url)

    async def fetch_robots_txt(self, base_url: str) -> RobotsTxt:
        """Download /robots.txt for the site of base_url.

        Any failure is reported as not found.
        """
        robots_url = f"{site_root(base_url)}/robots.txt"
        try:
            response = await self.client.get(robots_url, timeout=self.http_config.timeout)
        except httpx.HTTPError as e:
            logger.info(f"robots.txt not available at {robots_url}: {e}")
            return RobotsTxt(found=False, url=robots_url)

        if response.status_code != 200:
            logger.info(f"robots.txt not found at {robots_url} ({response.status_code})")
            return RobotsTxt(found=False, url=robots_url)

        return RobotsTxt(found=True, url=robots_url, content=response.text)

    async def fetch_sitemap(
        self, base_url: str, robots_content: str | None = None
    ) -> SitemapDocument:
        """Find and download the site's sitemap.

        Tries ``Sitemap:`` locations declared in robots.txt first, then
        /sitemap.xml and /sitemap_index.xml. Responses that are not sitemap
        XML (soft 404 pages) are skipped.

        Args:
            base_url: Site homepage
            robots_content: robots.txt body, if one was found

        Returns:
            SitemapDocument; ``found=False`` when no candidate worked
        """
        for candidate in self.sitemap_candidates(base_url, robots_content):
            try:
                response = await self.client.get(candidate, timeout=self.http_config.timeout)
            except httpx.HTTPError as e:
                logger.info(f"Sitemap not found at {candidate}: {e}")
                continue

            if response.status_code != 200:
                logger.info(f"Sitemap not found at {candidate} ({response.status_code})")
                continue

            try:
                content = decompress_if_needed(response.content, candidate)
            except SitemapError as e:
                logger.warning(str(e))
                continue

            if not SITEMAP_ROOT_RE.search(content[:4096]):
                logger.info(f"Ignoring {candidate}: response is not sitemap XML")
                continue

            logger.info(f"Found sitemap at {candidate}")
            return SitemapDocument(
                found=True,
                url=candidate,
                content=content.decode("utf-8", errors="replace"),
            )

        return SitemapDocument(found=False)

    @staticmethod
    def sitemap_candidates(base_url: str, robots_content: str | None = None) -> list[str]:
        """Sitemap URLs to try, robots.txt declarations first, without duplicates.

        Examples:
            >>> RemotePageFetcher.sitemap_candidates(
            ...     "https://a.com/", "Sitemap: https://a.com/sitemap.xml")
            ['https://a.com/sitemap.xml', 'https://a.com/sitemap_index.xml']
        """
        root = site_root(base_url)
        candidates: list[str] = []
        if robots_content:
            candidates.extend(SITEMAP_DIRECTIVE_RE.findall(robots_content))
        candidates.extend(f"{root}{path}" for path in SITEMAP_FALLBACK_PATHS)
        return list(dict.fromkeys(candidates))


def _redirected(requested: str, final: str) -> bool:
    try:
        return normalize_url(requested) != normalize_url(final)
    except ValueError:
        return requested != final
