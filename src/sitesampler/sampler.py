"""Bounded URL sampling.

Reduces a categorized sitemap (or, when no sitemap exists, the links found
on the homepage) to a small deterministic set of pages worth crawling.
"""

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from sitesampler.models import SampleSitemap, SampleUrl
from sitesampler.sitemap import HOMEPAGE_CATEGORY, OTHER_CATEGORY
from sitesampler.urls import Link, hostname, is_http_url, normalize_url, path_info

logger = logging.getLogger(__name__)

# Sitemap protocol default for entries without <priority>
DEFAULT_PRIORITY = 0.5

SOURCE_SITEMAP = "sitemap"
SOURCE_HOMEPAGE_CRAWL = "homepage_crawl"

SKIP_LINK_PATTERNS = [
    re.compile(r"\.(jpg|jpeg|png|gif|svg|webp|pdf|doc|docx|xls|xlsx|zip|exe)$", re.IGNORECASE),
    re.compile(r"^/wp-admin"),
    re.compile(r"^/admin"),
    re.compile(r"^/login"),
    re.compile(r"^/register"),
    re.compile(r"^/cart"),
    re.compile(r"^/checkout"),
    re.compile(r"^/account"),
    re.compile(r"^/search"),
    re.compile(r"^/#"),
    re.compile(r"^/mailto:"),
    re.compile(r"^/tel:"),
    re.compile(r"^javascript:"),
]


def sort_key(url: SampleUrl) -> tuple[float, str]:
    """Priority descending, then URL ascending."""
    priority = url.priority if url.priority is not None else DEFAULT_PRIORITY
    return (-priority, url.loc)


def _dedupe(urls: Iterable[SampleUrl]) -> list[SampleUrl]:
    seen: set[str] = set()
    unique: list[SampleUrl] = []
    for url in urls:
        if url.loc in seen:
            continue
        seen.add(url.loc)
        unique.append(url)
    return unique


def _page_summary(url: SampleUrl) -> dict[str, Any]:
    return {
        "url": url.loc,
        "level": url.level,
        "pathname": url.pathname,
        "priority": url.priority,
        "changefreq": url.changefreq,
        "lastmod": url.lastmod,
    }


def create_sample(
    categories: Mapping[str, Sequence[SampleUrl]],
    max_per_category: int = 2,
    first_level_limit: int = 10,
) -> SampleSitemap:
    """Build the crawl sample from categorized sitemap URLs.

    Picks at most one homepage URL, the first ``first_level_limit`` depth-1
    pages across all categories, and up to ``max_per_category`` deeper pages
    from every non-homepage category. The result is deduplicated by URL and
    depends only on its inputs.

    Args:
        categories: Output of sitemap.categorize()
        max_per_category: Deeper pages taken from each category
        first_level_limit: Depth-1 pages taken overall

    Returns:
        SampleSitemap with ``source="sitemap"``

    Examples:
        >>> sample = create_sample({"homepage": [], "other": []})
        >>> sample.urls
        ()
    """
    homepage_urls = sorted(categories.get(HOMEPAGE_CATEGORY, ()), key=sort_key)

    first_level = sorted(
        (
            url
            for name, urls in categories.items()
            if name != HOMEPAGE_CATEGORY
            for url in urls
            if url.level == 1
        ),
        key=sort_key,
    )
    first_level = _dedupe(first_level)
    selected_first_level = first_level[:first_level_limit]

    selected: list[SampleUrl] = [*homepage_urls[:1], *selected_first_level]

    for name, urls in categories.items():
        if name == HOMEPAGE_CATEGORY:
            continue
        deeper = sorted((url for url in urls if url.level > 1), key=sort_key)
        selected.extend(deeper[:max_per_category])

    unique = _dedupe(selected)
    logger.info(
        f"Created sample sitemap with {len(unique)} URLs "
        f"(first-level pages limited to {first_level_limit})"
    )

    return SampleSitemap(
        urls=tuple(unique),
        categories={name: len(urls) for name, urls in categories.items()},
        first_level_pages={
            "total": len(first_level),
            "crawled": len(selected_first_level),
            "all_pages": [_page_summary(url) for url in first_level],
        },
        total_original_urls=sum(len(urls) for urls in categories.values()),
        crawling_limits={
            "first_level_limit": first_level_limit,
            "max_per_category": max_per_category,
        },
        fallback=False,
        source=SOURCE_SITEMAP,
    )


def should_skip_link(pathname: str) -> bool:
    """Check a link path against the deny list of non-content pages.

    Examples:
        >>> should_skip_link("/wp-admin/options.php")
        True
        >>> should_skip_link("/files/report.PDF")
        True
        >>> should_skip_link("/about")
        False
    """
    return any(pattern.search(pathname) for pattern in SKIP_LINK_PATTERNS)


def categorize_sample_urls(urls: Iterable[SampleUrl]) -> dict[str, int]:
    """Count sampled URLs per first path segment (homepage counted separately)."""
    counts: dict[str, int] = {HOMEPAGE_CATEGORY: 0, OTHER_CATEGORY: 0}
    for url in urls:
        if url.level == 0:
            counts[HOMEPAGE_CATEGORY] += 1
        elif url.segments and url.segments[0] not in (HOMEPAGE_CATEGORY, OTHER_CATEGORY):
            counts[url.segments[0]] = counts.get(url.segments[0], 0) + 1
        else:
            counts[OTHER_CATEGORY] += 1
    return counts


def sample_from_links(
    homepage: str,
    links: Iterable[Link],
    first_level_limit: int = 10,
    fallback_limit: int = 20,
) -> SampleSitemap:
    """Build a fallback sample from links found on the rendered homepage.

    The homepage always comes first. Links on the same hostname (any port
    or scheme, as in sitemap categorization) that are not on the
    deny list are ordered by depth then URL, depth-1 links are capped at
    ``first_level_limit`` and at most ``fallback_limit`` links are kept.

    Args:
        homepage: Homepage URL the links were extracted from
        links: Links from the rendered homepage
        first_level_limit: Depth-1 links taken
        fallback_limit: Links taken in total, homepage excluded

    Returns:
        SampleSitemap with ``fallback=True`` and ``source="homepage_crawl"``
    """
    home_host = hostname(homepage)
    home_key = normalize_url(homepage)
    home_info = path_info(homepage)

    home = SampleUrl(
        loc=homepage,
        pathname=home_info.pathname,
        segments=(),
        level=0,
        priority=1.0,
    )

    candidates: dict[str, SampleUrl] = {}
    for link in links:
        if not is_http_url(link.href) or hostname(link.href) != home_host:
            continue

        try:
            loc = normalize_url(link.href)
        except ValueError:
            continue

        info = path_info(loc)
        if loc == home_key or info.level == 0 or should_skip_link(info.pathname):
            continue
        if loc in candidates:
            continue

        candidates[loc] = SampleUrl(
            loc=loc,
            pathname=info.pathname,
            segments=info.segments,
            level=info.level,
        )

    ordered = sorted(candidates.values(), key=lambda url: (url.level, url.loc))
    first_level = [url for url in ordered if url.level == 1]
    deeper = [url for url in ordered if url.level > 1]
    selected = [*first_level[:first_level_limit], *deeper][:fallback_limit]

    logger.info(f"Selected {len(selected)} of {len(ordered)} links from homepage crawl")

    urls = (home, *selected)
    return SampleSitemap(
        urls=urls,
        categories=categorize_sample_urls(urls),
        first_level_pages={
            "total": len(first_level),
            "crawled": min(len(first_level), first_level_limit, fallback_limit),
            "all_pages": [_page_summary(url) for url in first_level],
        },
        total_original_urls=len(ordered) + 1,
        crawling_limits={
            "first_level_limit": first_level_limit,
            "fallback_limit": fallback_limit,
        },
        fallback=True,
        source=SOURCE_HOMEPAGE_CRAWL,
    )
