"""Type definitions and protocols for sitesampler.

Protocols for lxml types, which ship incomplete type stubs, and for the
Playwright objects the fetcher drives, so that tests can substitute fakes.
"""

from typing import Any, Protocol


class LxmlElement(Protocol):
    """Protocol for lxml Element objects."""

    def get(self, key: str) -> str | None:
        """Get attribute value."""
        ...

    def text_content(self) -> str:
        """Text of the element and its descendants."""
        ...


class BrowserResponse(Protocol):
    """Navigation response returned by page.goto()."""

    @property
    def status(self) -> int:
        """HTTP status code of the main document."""
        ...


class BrowserPage(Protocol):
    """Subset of a Playwright page used for rendering."""

    @property
    def url(self) -> str:
        """Current URL after redirects."""
        ...

    async def goto(self, url: str, *, wait_until: str, timeout: float) -> BrowserResponse | None:
        """Navigate to url."""
        ...

    async def wait_for_function(self, expression: str, *, timeout: float) -> Any:
        """Wait until expression is truthy in the page."""
        ...

    async def title(self) -> str:
        """Document title."""
        ...

    async def content(self) -> str:
        """Serialized DOM."""
        ...
