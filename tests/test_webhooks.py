"""Tests for AI-analysis webhook delivery."""

import asyncio
import json

import httpx
import pytest
from conftest import SleepRecorder
from pytest_httpx import HTTPXMock

from sitesampler.config import WebhookConfig
from sitesampler.models import Job, Page, SampleUrl
from sitesampler.webhooks import (
    COMPLETION_EVENT,
    NOT_CONFIGURED,
    PAGE_EVENT,
    WebhookDispatcher,
    WebhookRetry,
)

PAGE_HOOK = "https://ai.example.com/page"
DONE_HOOK = "https://ai.example.com/done"


@pytest.fixture
def dispatcher(http_client: httpx.AsyncClient, sleeper: SleepRecorder) -> WebhookDispatcher:
    config = WebhookConfig(page_url=PAGE_HOOK, completion_url=DONE_HOOK)
    return WebhookDispatcher(config, http_client, sleep=sleeper)


@pytest.fixture
def job() -> Job:
    job = Job.create("https://example.com/", "owner@example.com", verified=True)
    job.homepage = "https://example.com/"
    return job


@pytest.fixture
def page(job: Job) -> Page:
    sample = SampleUrl("https://example.com/about", "/about", ("about",), 1, 0.8)
    return Page.for_sample(job.id, sample, title="About", html="<html></html>", status_code=200)


class TestDispatch:
    """Tests for WebhookDispatcher.dispatch()."""

    async def test_not_configured(
        self, http_client: httpx.AsyncClient, sleeper: SleepRecorder, httpx_mock: HTTPXMock
    ) -> None:
        """Test that a missing URL is a skip, not a failure, and sends nothing."""
        dispatcher = WebhookDispatcher(WebhookConfig(), http_client, sleep=sleeper)

        outcome = await dispatcher.dispatch(None, {"x": 1})

        assert outcome.skipped is True
        assert outcome.success is False
        assert outcome.error == NOT_CONFIGURED
        assert httpx_mock.get_requests() == []

    async def test_success_json(
        self, dispatcher: WebhookDispatcher, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(url=PAGE_HOOK, method="POST", json={"score": 7})

        outcome = await dispatcher.dispatch(PAGE_HOOK, {"x": 1})

        assert outcome.success is True
        assert outcome.skipped is False
        assert outcome.status_code == 200
        assert outcome.data == {"score": 7}
        assert outcome.retries == 0
        assert json.loads(httpx_mock.get_requests()[0].content) == {"x": 1}

    async def test_success_text(self, dispatcher: WebhookDispatcher, httpx_mock: HTTPXMock) -> None:
        """Test that non-JSON answers are kept as text."""
        httpx_mock.add_response(url=PAGE_HOOK, method="POST", text="accepted")

        outcome = await dispatcher.dispatch(PAGE_HOOK, {})

        assert outcome.data == "accepted"

    async def test_server_error_retried(
        self, dispatcher: WebhookDispatcher, sleeper: SleepRecorder, httpx_mock: HTTPXMock
    ) -> None:
        """Test that 5xx answers are retried with a fixed delay."""
        httpx_mock.add_response(url=PAGE_HOOK, method="POST", status_code=502)
        httpx_mock.add_response(url=PAGE_HOOK, method="POST", json={"ok": True})

        outcome = await dispatcher.dispatch(PAGE_HOOK, {})

        assert outcome.success is True
        assert outcome.retries == 1
        assert sleeper.delays == [2.0]

    async def test_server_error_exhausts_retries(
        self, dispatcher: WebhookDispatcher, sleeper: SleepRecorder, httpx_mock: HTTPXMock
    ) -> None:
        """Test 1 + max_retries attempts, then a failure outcome."""
        for _ in range(4):
            httpx_mock.add_response(url=PAGE_HOOK, method="POST", status_code=503)

        outcome = await dispatcher.dispatch(PAGE_HOOK, {})

        assert outcome.success is False
        assert outcome.status_code == 503
        assert outcome.error == "HTTP 503"
        assert outcome.retries == 3
        assert len(httpx_mock.get_requests()) == 4
        assert sleeper.delays == [2.0, 2.0, 2.0]

    async def test_client_error_not_retried(
        self, dispatcher: WebhookDispatcher, sleeper: SleepRecorder, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(url=PAGE_HOOK, method="POST", status_code=400, json={"detail": "bad"})

        outcome = await dispatcher.dispatch(PAGE_HOOK, {})

        assert outcome.success is False
        assert outcome.status_code == 400
        assert outcome.data == {"detail": "bad"}
        assert outcome.retries == 0
        assert sleeper.delays == []

    async def test_connection_errors_retried(
        self, dispatcher: WebhookDispatcher, httpx_mock: HTTPXMock
    ) -> None:
        """Test that connection failures are transient."""
        for _ in range(4):
            httpx_mock.add_exception(httpx.ConnectError("Connection refused"), url=PAGE_HOOK)

        outcome = await dispatcher.dispatch(PAGE_HOOK, {})

        assert outcome.success is False
        assert outcome.retries == 3
        assert outcome.error is not None
        assert outcome.error.startswith("ConnectError")

    async def test_timeout_then_success(
        self, dispatcher: WebhookDispatcher, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"), url=PAGE_HOOK)
        httpx_mock.add_response(url=PAGE_HOOK, method="POST", json={})

        outcome = await dispatcher.dispatch(PAGE_HOOK, {})

        assert outcome.success is True
        assert outcome.retries == 1

    async def test_non_transient_error_terminal(
        self, dispatcher: WebhookDispatcher, httpx_mock: HTTPXMock
    ) -> None:
        """Test that other request errors fail on the first attempt."""
        httpx_mock.add_exception(httpx.UnsupportedProtocol("bad scheme"), url=PAGE_HOOK)

        outcome = await dispatcher.dispatch(PAGE_HOOK, {})

        assert outcome.success is False
        assert outcome.retries == 0


    async def test_retry_after_header_ignored(
        self, dispatcher: WebhookDispatcher, sleeper: SleepRecorder, httpx_mock: HTTPXMock
    ) -> None:
        """Test that the delay stays fixed whatever the server asks for."""
        httpx_mock.add_response(
            url=PAGE_HOOK, method="POST", status_code=503, headers={"Retry-After": "30"}
        )
        httpx_mock.add_response(url=PAGE_HOOK, method="POST", json={})

        outcome = await dispatcher.dispatch(PAGE_HOOK, {})

        assert outcome.success is True
        assert sleeper.delays == [2.0]

    async def test_retries_disabled(
        self, http_client: httpx.AsyncClient, sleeper: SleepRecorder, httpx_mock: HTTPXMock
    ) -> None:
        config = WebhookConfig(page_url=PAGE_HOOK, max_retries=0)
        dispatcher = WebhookDispatcher(config, http_client, sleep=sleeper)
        httpx_mock.add_response(url=PAGE_HOOK, method="POST", status_code=500)

        outcome = await dispatcher.dispatch(PAGE_HOOK, {})

        assert outcome.success is False
        assert outcome.retries == 0
        assert sleeper.delays == []

    async def test_concurrent_retries_counted_per_request(
        self, dispatcher: WebhookDispatcher, httpx_mock: HTTPXMock
    ) -> None:
        """Test that parallel deliveries keep separate retry counts."""
        other = "https://ai.example.com/other"
        httpx_mock.add_response(url=PAGE_HOOK, method="POST", status_code=502)
        httpx_mock.add_response(url=PAGE_HOOK, method="POST", status_code=502)
        httpx_mock.add_response(url=PAGE_HOOK, method="POST", json={})
        httpx_mock.add_response(url=other, method="POST", json={})

        first, second = await asyncio.gather(
            dispatcher.dispatch(PAGE_HOOK, {}), dispatcher.dispatch(other, {})
        )

        assert first.retries == 2
        assert second.retries == 0


class TestWebhookRetry:
    """Tests for the per-request retry policy."""

    def test_policy_from_config(self, http_client: httpx.AsyncClient) -> None:
        config = WebhookConfig(max_retries=5, retry_delay=0.5)
        retry = WebhookDispatcher(config, http_client).retry_policy()

        assert retry.total == 5
        assert retry.is_retryable_method("POST")
        assert retry.is_retryable_status_code(500)
        assert retry.is_retryable_status_code(599)
        assert not retry.is_retryable_status_code(429)
        assert retry.is_retryable_exception(httpx.ConnectError("refused"))
        assert not retry.is_retryable_exception(httpx.UnsupportedProtocol("bad scheme"))
        assert retry.backoff_strategy() == 0.5

    async def test_increment_keeps_sleep_and_origin(self, sleeper: SleepRecorder) -> None:
        retry = WebhookRetry(total=3, backoff_factor=2.0, backoff_jitter=0.0, sleep=sleeper)

        second = retry.increment().increment()
        await second.asleep(httpx.ReadTimeout("timed out"))

        assert isinstance(second, WebhookRetry)
        assert second.origin is retry
        assert retry.retries == 2
        assert sleeper.delays == [2.0]

    async def test_plain_requests_not_retried(
        self, http_client: httpx.AsyncClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test that only requests carrying a webhook policy are retried."""
        httpx_mock.add_response(url="https://example.com/sitemap.xml", status_code=503)

        response = await http_client.get("https://example.com/sitemap.xml")

        assert response.status_code == 503
        assert len(httpx_mock.get_requests()) == 1


class TestPayloads:
    """Tests for the page and completion payloads."""

    async def test_send_page(
        self, dispatcher: WebhookDispatcher, job: Job, page: Page, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(url=PAGE_HOOK, method="POST", json={})

        outcome = await dispatcher.send_page(job, page)

        assert outcome.success is True
        body = json.loads(httpx_mock.get_requests()[0].content)
        assert body["job"] == {
            "id": job.id,
            "url": "https://example.com/",
            "email": "owner@example.com",
            "homepage": "https://example.com/",
        }
        assert body["page"]["url"] == "https://example.com/about"
        assert body["page"]["title"] == "About"
        assert body["page"]["level"] == 1
        assert body["metadata"]["event"] == PAGE_EVENT
        assert body["metadata"]["source"] == "sitesampler"

    async def test_send_completion(
        self, dispatcher: WebhookDispatcher, job: Job, page: Page, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(url=DONE_HOOK, method="POST", json={"report": "ok"})

        outcome = await dispatcher.send_completion(job, [page])

        assert outcome.data == {"report": "ok"}
        body = json.loads(httpx_mock.get_requests()[0].content)
        assert body["job"]["id"] == job.id
        assert [p["url"] for p in body["pages"]] == ["https://example.com/about"]
        assert body["metadata"]["event"] == COMPLETION_EVENT

    def test_completion_configured(self, http_client: httpx.AsyncClient) -> None:
        assert WebhookDispatcher(WebhookConfig(completion_url=DONE_HOOK), http_client).completion_configured
        assert not WebhookDispatcher(WebhookConfig(), http_client).completion_configured
