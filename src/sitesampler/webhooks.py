"""AI-analysis webhook delivery.

Posts crawl data to the external page-analysis and job-completion endpoints.
Delivery is best-effort: every call resolves to a WebhookOutcome and nothing
is raised to the caller. Retries run in the client's RetryTransport, driven
by a WebhookRetry policy attached to each request.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, cast

import httpx
from httpx_retries import Retry

from sitesampler import __version__
from sitesampler.config import WebhookConfig
from sitesampler.models import Job, Page, WebhookOutcome
from sitesampler.utils import utcnow_iso

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "AI webhook URL not configured"

PAGE_EVENT = "page.crawled"
COMPLETION_EVENT = "job.completed"

# Upstream failures worth another attempt; network errors and timeouts use
# the httpx_retries defaults (TimeoutException, NetworkError, RemoteProtocolError)
RETRY_STATUS_CODES = range(500, 600)

SleepFunc = Callable[[float], Awaitable[None]]


class WebhookRetry(Retry):
    """Fixed-delay retry policy for a single webhook request.

    ``backoff_factor`` is the delay before every retry. Waits go through a
    replaceable sleep coroutine, and the number of retries is kept on the
    policy the request started with, so it is known even when the last
    attempt raised.
    """

    def __init__(self, *args: Any, sleep: SleepFunc = asyncio.sleep, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.sleep_func = sleep
        self.origin: WebhookRetry = self
        self.retries = 0

    def increment(self) -> "WebhookRetry":
        retry = cast(WebhookRetry, super().increment())
        retry.sleep_func = self.sleep_func
        retry.origin = self.origin
        return retry

    def backoff_strategy(self) -> float:
        return self.backoff_factor

    async def asleep(self, response: httpx.Response | Exception) -> None:
        if isinstance(response, httpx.Response):
            reason = f"HTTP {response.status_code}"
        else:
            reason = f"{type(response).__name__}: {response}"
        delay = self.backoff_strategy()

        self.origin.retries = self.attempts_made
        logger.info(
            f"Webhook transient failure ({reason}), "
            f"retry {self.attempts_made}/{self.total} in {delay:.1f}s"
        )
        await self.sleep_func(delay)
        self.elapsed_sleep += delay


def _response_data(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


class WebhookDispatcher:
    """Delivers JSON payloads with a small fixed-delay retry budget.

    Network errors, timeouts and 5xx responses are retried; any other
    failure is terminal on the first attempt. The client must route
    requests through an ``httpx_retries.RetryTransport``, as the one from
    ``create_http_client`` does; the retry policy travels in the request's
    ``retry`` extension.
    """

    def __init__(
        self,
        config: WebhookConfig,
        client: httpx.AsyncClient,
        *,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.config = config
        self.client = client
        self._sleep = sleep

    def retry_policy(self) -> WebhookRetry:
        """Fresh retry state for one request."""
        return WebhookRetry(
            total=self.config.max_retries,
            allowed_methods=["POST"],
            status_forcelist=RETRY_STATUS_CODES,
            backoff_factor=self.config.retry_delay,
            backoff_jitter=0.0,
            respect_retry_after_header=False,
            sleep=self._sleep,
        )

    async def dispatch(self, endpoint: str | None, payload: dict[str, Any]) -> WebhookOutcome:
        """POST payload to endpoint.

        Args:
            endpoint: Webhook URL, or None when unconfigured
            payload: JSON-serializable body

        Returns:
            WebhookOutcome; ``skipped=True`` when endpoint is unconfigured
        """
        if not endpoint:
            return WebhookOutcome(success=False, skipped=True, error=NOT_CONFIGURED)

        retry = self.retry_policy()
        try:
            response = await self.client.post(
                endpoint,
                json=payload,
                timeout=self.config.timeout,
                extensions={"retry": retry},
            )
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"Webhook {endpoint} failed after {retry.retries} retries: {error}")
            return WebhookOutcome(success=False, error=error, retries=retry.retries)

        if response.is_success:
            logger.debug(f"Webhook {endpoint} answered {response.status_code}")
            return WebhookOutcome(
                success=True,
                status_code=response.status_code,
                data=_response_data(response),
                retries=retry.retries,
            )

        error = f"HTTP {response.status_code}"
        logger.warning(f"Webhook {endpoint} rejected payload after {retry.retries} retries: {error}")
        return WebhookOutcome(
            success=False,
            status_code=response.status_code,
            data=_response_data(response),
            error=error,
            retries=retry.retries,
        )

    async def send_page(self, job: Job, page: Page) -> WebhookOutcome:
        """Send one crawled page for analysis."""
        payload = {
            "job": {
                "id": job.id,
                "url": job.url,
                "email": job.email,
                "homepage": job.homepage,
            },
            "page": page.to_dict(),
            "metadata": self._metadata(PAGE_EVENT),
        }
        return await self.dispatch(self.config.page_url, payload)

    async def send_completion(self, job: Job, pages: Sequence[Page]) -> WebhookOutcome:
        """Send the finished job with all of its pages."""
        payload = {
            "job": job.to_dict(),
            "pages": [page.to_dict() for page in pages],
            "metadata": self._metadata(COMPLETION_EVENT),
        }
        return await self.dispatch(self.config.completion_url, payload)

    @property
    def completion_configured(self) -> bool:
        return self.config.completion_url is not None

    @staticmethod
    def _metadata(event: str) -> dict[str, Any]:
        return {
            "event": event,
            "timestamp": utcnow_iso(),
            "source": "sitesampler",
            "version": __version__,
        }
