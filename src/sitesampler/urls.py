"""URL helpers and HTML link extraction.

Normalization, scheme filtering, homepage detection, path metadata for
sampling, and lxml-based link extraction from rendered pages.
"""

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, cast
from urllib.parse import urljoin, urlparse, urlunparse

from lxml import etree
from lxml import html as lxml_html

if TYPE_CHECKING:
    from sitesampler.types import LxmlElement

SAFE_SCHEMES = {"http", "https"}

DEFAULT_PORTS = {
    "http": 80,
    "https": 443,
}

# Paths that already are a site's landing page
HOMEPAGE_PATHS = {
    "/",
    "/home",
    "/homepage",
    "/index",
    "/index.html",
    "/index.htm",
    "/index.php",
    "/en",
    "/eng",
}

# Locale-prefixed landing pages such as /en-us/homepage or /eng-au/home
LOCALE_HOMEPAGE_RE = re.compile(r"^/[a-z]{2,3}(?:[-_][a-z]{2})?/(?:home|homepage)$")


def normalize_url(url: str) -> str:
    """Normalize URL for consistent comparison.

    Lowercases scheme and hostname, drops default ports and the fragment,
    turns an empty path into "/" and keeps path and query otherwise untouched.

    Args:
        url: URL to normalize

    Returns:
        Normalized URL

    Raises:
        ValueError: If URL is empty or malformed

    Examples:
        >>> normalize_url("HTTP://Example.COM:80/Path#top")
        'http://example.com/Path'
    """
    if not url or not url.strip():
        raise ValueError("URL cannot be empty")

    try:
        parsed = urlparse(url.strip())

        scheme = parsed.scheme.lower()
        netloc = parsed.hostname.lower() if parsed.hostname else ""

        if parsed.port and parsed.port != DEFAULT_PORTS.get(scheme):
            netloc = f"{netloc}:{parsed.port}"

        path = parsed.path or ("/" if netloc else "")
        return urlunparse((scheme, netloc, path, parsed.params, parsed.query, ""))
    except ValueError as e:
        raise ValueError(f"Failed to normalize URL '{url}': {e}") from e


def is_http_url(url: str) -> bool:
    """Return True if URL has an http(s) scheme and a host."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme.lower() in SAFE_SCHEMES and bool(parsed.netloc)


def site_root(url: str) -> str:
    """Return scheme://host[:port] for a URL.

    Examples:
        >>> site_root("https://example.com:8443/docs/page?x=1")
        'https://example.com:8443'
    """
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def hostname(url: str) -> str:
    """Lowercased hostname of a URL, empty string if it has none."""
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def is_homepage_path(path: str) -> bool:
    """Check whether a URL path names a site's landing page.

    Examples:
        >>> is_homepage_path("/Index.html")
        True
        >>> is_homepage_path("/en-us/homepage")
        True
        >>> is_homepage_path("/about")
        False
    """
    path = path.lower() or "/"
    if path != "/":
        path = path.rstrip("/") or "/"
    return path in HOMEPAGE_PATHS or bool(LOCALE_HOMEPAGE_RE.match(path))


def extract_homepage(url: str) -> str:
    """Derive a site's homepage from a resolved URL.

    A URL whose path already is a landing page is returned unchanged,
    anything else collapses to its site root.

    Args:
        url: Final URL after redirects

    Returns:
        Homepage URL

    Raises:
        ValueError: If URL is not an absolute http(s) URL

    Examples:
        >>> extract_homepage("https://example.com/en-us/homepage")
        'https://example.com/en-us/homepage'
        >>> extract_homepage("https://example.com/blog/post-1")
        'https://example.com'
    """
    if not is_http_url(url):
        raise ValueError(f"Not an absolute http(s) URL: {url!r}")

    if is_homepage_path(urlparse(url).path):
        return url
    return site_root(url)


@dataclass(frozen=True, slots=True)
class PathInfo:
    """Lowercased path with its segments and depth."""

    pathname: str
    segments: tuple[str, ...]
    level: int


def path_info(url: str) -> PathInfo:
    """Split a URL path into sampling metadata.

    Examples:
        >>> path_info("https://example.com/Blog/Post-1/")
        PathInfo(pathname='/blog/post-1/', segments=('blog', 'post-1'), level=2)
    """
    pathname = (urlparse(url).path or "/").lower()
    segments = tuple(segment for segment in pathname.split("/") if segment)
    return PathInfo(pathname=pathname, segments=segments, level=len(segments))


@dataclass(frozen=True, slots=True)
class Link:
    """Anchor found on a rendered page."""

    href: str
    text: str


class LinkExtractor:
    """Extracts absolute http(s) links from HTML.

    Relative hrefs are resolved against the page URL, fragments removed and
    duplicates dropped while keeping document order.
    """

    XPATH = "//a[@href]"

    def extract_links(self, html: str, base_url: str) -> list[Link]:
        """Extract links from HTML.

        Args:
            html: HTML content
            base_url: URL of the page, used to resolve relative links

        Returns:
            Unique links in document order

        Examples:
            >>> LinkExtractor().extract_links(
            ...     '<a href="/about">About us</a><a href="mailto:x@y.z">Mail</a>',
            ...     "https://example.com/",
            ... )
            [Link(href='https://example.com/about', text='About us')]
        """
        if not html or not html.strip():
            return []

        try:
            tree = lxml_html.fromstring(html)
        except (ValueError, etree.ParserError):
            return []

        links: list[Link] = []
        seen: set[str] = set()

        for item in tree.xpath(self.XPATH):
            element = cast("LxmlElement", item)
            href = (element.get("href") or "").strip()
            if not href:
                continue

            try:
                absolute_url = urljoin(base_url, href)
                if not is_http_url(absolute_url):
                    continue
                normalized = normalize_url(absolute_url)
            except ValueError:
                continue

            if normalized in seen:
                continue
            seen.add(normalized)
            text = " ".join(element.text_content().split())
            links.append(Link(href=normalized, text=text))

        return links
