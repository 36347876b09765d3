"""Service wiring.

Builds the store, HTTP client, fetcher, dispatcher, coordinator and
orchestrator from configuration, and runs the scan loop until a shutdown
signal arrives.
"""

import asyncio
import contextlib
import logging
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import httpx

from sitesampler.backends import JobStore, create_store
from sitesampler.config import SiteSamplerConfig
from sitesampler.coordinator import BatchCrawlCoordinator
from sitesampler.fetcher import RemotePageFetcher, SessionFactory
from sitesampler.http_client import create_http_client
from sitesampler.notifier import Notifier
from sitesampler.orchestrator import CrawlOrchestrator
from sitesampler.sitemap import SitemapParser
from sitesampler.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


@dataclass
class Service:
    """Wired components sharing one store and one HTTP client."""

    config: SiteSamplerConfig
    store: JobStore
    client: httpx.AsyncClient
    orchestrator: CrawlOrchestrator


@asynccontextmanager
async def build_service(
    config: SiteSamplerConfig,
    *,
    store: JobStore | None = None,
    notifier: Notifier | None = None,
    session_factory: SessionFactory | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[Service]:
    """Create all components and close them on exit.

    Args:
        config: sitesampler configuration
        store: Store to use instead of the configured one
        notifier: Completion notifier, defaults to LoggingNotifier
        session_factory: Browser session factory, defaults to Playwright CDP
        transport: httpx transport override

    Yields:
        Service with an initialized store
    """
    if store is None:
        store = create_store(Path(config.store.path), config.store.backend)
    await store.initialize()

    client = create_http_client(config, transport=transport)
    try:
        fetcher = RemotePageFetcher(
            config.browser, config.http, client, session_factory=session_factory
        )
        dispatcher = WebhookDispatcher(config.webhooks, client)
        parser = SitemapParser(
            client,
            max_child_sitemaps=config.sampling.max_child_sitemaps,
            timeout=config.http.timeout,
            user_agent=config.http.user_agent,
        )
        coordinator = BatchCrawlCoordinator(store, fetcher, dispatcher, config.crawl)
        orchestrator = CrawlOrchestrator(
            store, fetcher, parser, coordinator, dispatcher, config, notifier=notifier
        )
        yield Service(config=config, store=store, client=client, orchestrator=orchestrator)
    finally:
        await client.aclose()
        await store.close()


async def run_service(config: SiteSamplerConfig, *, once: bool = False) -> int:
    """Run the background processor.

    Args:
        config: sitesampler configuration
        once: Run a single scan and return instead of looping

    Returns:
        Number of jobs attempted when ``once`` is set, otherwise 0
    """
    async with build_service(config) as service:
        orchestrator = service.orchestrator

        if once:
            return await orchestrator.scan_once()

        stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_requested.set)
            except NotImplementedError:
                # Signal handlers are unavailable on some platforms (Windows)
                logger.debug(f"Cannot install handler for {sig.name}")

        orchestrator.start()
        try:
            await stop_requested.wait()
            logger.info("Shutdown requested, waiting for the current job to finish...")
        finally:
            await orchestrator.stop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError):
                    loop.remove_signal_handler(sig)

        return 0
