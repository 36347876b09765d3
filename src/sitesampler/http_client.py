"""Shared HTTP client factory.

One httpx.AsyncClient serves the plain HTTP checks (URL status, robots.txt,
sitemaps) and the webhook dispatcher, so connection pooling is shared.
Requests go through an httpx_retries RetryTransport whose default policy
never retries; the webhook dispatcher attaches its own policy per request.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
from httpx_retries import Retry, RetryTransport

if TYPE_CHECKING:
    from sitesampler.config import SiteSamplerConfig

# Default for requests that carry no "retry" extension
NO_RETRY = Retry(total=0)


def create_http_client(
    config: SiteSamplerConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    max_connections: int = 20,
    max_keepalive_connections: int = 10,
) -> httpx.AsyncClient:
    """Create the httpx client used for non-browser requests.

    Redirect handling and the default timeout come from ``config.http``.
    Webhook requests override the timeout and retry policy per call.

    Args:
        config: sitesampler configuration
        transport: Optional transport to wrap (tests pass a MockTransport)
        max_connections: Maximum total connections
        max_keepalive_connections: Maximum keepalive connections

    Returns:
        Configured httpx AsyncClient
    """
    if transport is None:
        transport = httpx.AsyncHTTPTransport(
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_keepalive_connections,
            ),
            retries=0,
        )

    return httpx.AsyncClient(
        transport=RetryTransport(transport=transport, retry=NO_RETRY),
        timeout=httpx.Timeout(config.http.timeout),
        follow_redirects=True,
        max_redirects=config.http.max_redirects,
        headers={"User-Agent": config.http.user_agent},
    )
