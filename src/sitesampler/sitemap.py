"""Sitemap.xml parsing and URL categorization.

Parses regular sitemaps and sitemap indexes with support for:
- Namespaced and non-namespaced XML
- Sitemap indexes (children fetched sequentially, one level deep, capped)
- Compressed child sitemaps (.xml.gz)
- Grouping same-host URLs into categories by their first path segment
"""

import gzip
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

import httpx
from lxml import etree

from sitesampler.config import BOT_USER_AGENT
from sitesampler.exceptions import SitemapError
from sitesampler.models import SampleUrl
from sitesampler.urls import hostname, path_info

logger = logging.getLogger(__name__)

# Sitemap XML namespace
SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"

HOMEPAGE_CATEGORY = "homepage"
OTHER_CATEGORY = "other"
HOMEPAGE_PATHNAMES = {"/", "", "/home", "/index", "/homepage"}

GZIP_MAGIC = b"\x1f\x8b"


@dataclass(frozen=True, slots=True)
class SitemapEntry:
    """Single <url> entry from a sitemap.

    lastmod is kept as the raw string from the document.
    """

    loc: str
    lastmod: str | None = None
    changefreq: str | None = None
    priority: float | None = None


class SitemapLike(Protocol):
    """Anything carrying sitemap entry fields (SitemapEntry, SampleUrl)."""

    @property
    def loc(self) -> str: ...

    @property
    def lastmod(self) -> str | None: ...

    @property
    def changefreq(self) -> str | None: ...

    @property
    def priority(self) -> float | None: ...


def decompress_if_needed(content: bytes, url: str) -> bytes:
    """Decompress gzip content detected by URL suffix or magic bytes.

    Raises:
        SitemapError: If content claims to be gzip but cannot be decompressed
    """
    if url.endswith(".gz") or content[:2] == GZIP_MAGIC:
        try:
            return gzip.decompress(content)
        except (OSError, EOFError) as e:
            raise SitemapError(f"Failed to decompress gzipped sitemap {url}: {e}") from e
    return content


class SitemapParser:
    """Parser for sitemap documents.

    Example:
        >>> parser = SitemapParser(client)
        >>> entries = await parser.parse(xml_text, "https://example.com")
        >>> categories = categorize(entries, "https://example.com")
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_child_sitemaps: int = 10,
        timeout: float = 10.0,
        user_agent: str = BOT_USER_AGENT,
    ) -> None:
        """Initialize sitemap parser.

        Args:
            client: HTTP client for fetching child sitemaps of an index
            max_child_sitemaps: Maximum children fetched from a sitemap index
            timeout: Timeout in seconds for each child sitemap request
            user_agent: User-Agent header for child sitemap requests
        """
        self.client = client
        self.max_child_sitemaps = max_child_sitemaps
        self.timeout = timeout
        self.user_agent = user_agent
        self._xml_parser = etree.XMLParser(
            resolve_entities=False,
            no_network=True,
            remove_comments=True,
        )

    async def parse(self, content: str | bytes, base_url: str) -> list[SitemapEntry]:
        """Parse a sitemap document (regular or index) into entries.

        Args:
            content: Sitemap XML
            base_url: Site the sitemap belongs to (used for logging only)

        Returns:
            List of entries; children of an index are concatenated in order

        Raises:
            SitemapError: If the XML is malformed or the root element is not
                <urlset> or <sitemapindex>
        """
        entries = await self._parse_document(content, depth=0)
        logger.debug(f"Parsed {len(entries)} sitemap entries for {base_url}")
        return entries

    async def _parse_document(self, content: str | bytes, depth: int) -> list[SitemapEntry]:
        root = self._parse_xml(content)
        tag = etree.QName(root).localname

        if tag == "sitemapindex":
            if depth > 0:
                logger.warning("Nested sitemap index skipped (only one level is followed)")
                return []
            return await self._parse_sitemap_index(root)
        if tag == "urlset":
            return self._parse_url_set(root)

        raise SitemapError(f"Invalid sitemap format: unexpected root element <{tag}>")

    def _parse_xml(self, content: str | bytes) -> etree._Element:
        if isinstance(content, str):
            content = content.encode("utf-8")
        if not content.strip():
            raise SitemapError("Invalid sitemap format: empty document")
        try:
            return etree.fromstring(content, parser=self._xml_parser)
        except etree.XMLSyntaxError as e:
            raise SitemapError(f"Invalid XML in sitemap: {e}") from e

    async def _parse_sitemap_index(self, root: etree._Element) -> list[SitemapEntry]:
        """Fetch and parse child sitemaps of an index sequentially.

        Children that fail to download or parse are logged and skipped.
        """
        child_urls = [
            loc
            for sitemap_elem in _children(root, "sitemap")
            if (loc := _child_text(sitemap_elem, "loc"))
        ]
        logger.info(f"Found {len(child_urls)} sitemaps in sitemap index")

        if len(child_urls) > self.max_child_sitemaps:
            logger.info(f"Processing only the first {self.max_child_sitemaps} child sitemaps")

        entries: list[SitemapEntry] = []
        for child_url in child_urls[: self.max_child_sitemaps]:
            try:
                logger.debug(f"Fetching child sitemap: {child_url}")
                response = await self.client.get(
                    child_url,
                    timeout=self.timeout,
                    headers={"User-Agent": self.user_agent},
                )
                if response.status_code != 200:
                    logger.warning(f"Child sitemap {child_url} returned {response.status_code}")
                    continue
                content = decompress_if_needed(response.content, child_url)
                entries.extend(await self._parse_document(content, depth=1))
            except (httpx.HTTPError, SitemapError) as e:
                logger.warning(f"Error fetching sitemap {child_url}: {e}")
                continue

        logger.info(f"Total URLs found from all sitemaps: {len(entries)}")
        return entries

    def _parse_url_set(self, root: etree._Element) -> list[SitemapEntry]:
        entries: list[SitemapEntry] = []

        for url_elem in _children(root, "url"):
            loc = _child_text(url_elem, "loc")
            if not loc:
                logger.debug("Skipping sitemap entry without <loc>")
                continue

            priority = None
            priority_text = _child_text(url_elem, "priority")
            if priority_text:
                try:
                    priority = float(priority_text)
                except ValueError:
                    logger.debug(f"Invalid priority format: {priority_text}")

            changefreq = _child_text(url_elem, "changefreq")
            entries.append(
                SitemapEntry(
                    loc=loc,
                    lastmod=_child_text(url_elem, "lastmod"),
                    changefreq=changefreq.lower() if changefreq else None,
                    priority=priority,
                )
            )

        return entries


def _children(elem: etree._Element, name: str) -> list[etree._Element]:
    found = elem.findall(f"{{{SITEMAP_NS}}}{name}")
    if not found:
        found = elem.findall(name)
    return found


def _child_text(elem: etree._Element, name: str) -> str | None:
    child = elem.find(f"{{{SITEMAP_NS}}}{name}")
    if child is None:
        child = elem.find(name)
    if child is None or not child.text or not child.text.strip():
        return None
    return child.text.strip()


def categorize(entries: Iterable[SitemapLike], base_url: str) -> dict[str, list[SampleUrl]]:
    """Group same-host sitemap URLs into categories.

    URLs on another host are dropped. Root-like paths go to ``homepage``.
    First path segments shared by at least two URLs become categories of
    their own, everything else lands in ``other``. Category order is
    ``homepage``, ``other``, then first appearance.

    Args:
        entries: Sitemap entries (or previously categorized URLs)
        base_url: Site homepage; only its host is kept

    Returns:
        Mapping of category name to URLs, in input order within a category

    Examples:
        >>> cats = categorize([SitemapEntry("https://a.com/blog/1"),
        ...                    SitemapEntry("https://a.com/blog/2")], "https://a.com")
        >>> [u.loc for u in cats["blog"]]
        ['https://a.com/blog/1', 'https://a.com/blog/2']
    """
    base_host = hostname(base_url)
    homepage: list[SampleUrl] = []
    # None collects paths without segments, such as "//"
    by_segment: dict[str | None, list[SampleUrl]] = {}

    for entry in entries:
        if hostname(entry.loc) != base_host:
            continue

        info = path_info(entry.loc)
        sample = SampleUrl(
            loc=entry.loc,
            pathname=info.pathname,
            segments=info.segments,
            level=info.level,
            priority=entry.priority,
            changefreq=entry.changefreq,
            lastmod=entry.lastmod,
        )

        if info.pathname in HOMEPAGE_PATHNAMES:
            homepage.append(sample)
        else:
            segment = info.segments[0] if info.segments else None
            by_segment.setdefault(segment, []).append(sample)

    categories: dict[str, list[SampleUrl]] = {HOMEPAGE_CATEGORY: homepage, OTHER_CATEGORY: []}
    for segment, urls in by_segment.items():
        if segment is not None and len(urls) >= 2 and segment not in categories:
            categories[segment] = urls
        else:
            categories[OTHER_CATEGORY].extend(urls)

    logger.debug(f"Auto-detected URL patterns: {', '.join(s for s in by_segment if s)}")
    return categories
