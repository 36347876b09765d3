"""Tests for URL helpers and link extraction."""

import pytest

from sitesampler.urls import (
    Link,
    LinkExtractor,
    extract_homepage,
    hostname,
    is_homepage_path,
    is_http_url,
    normalize_url,
    path_info,
    site_root,
)


class TestNormalizeUrl:
    """Tests for normalize_url()."""

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("HTTP://Example.COM:80/Path#top", "http://example.com/Path"),
            ("https://example.com:443/a?b=1", "https://example.com/a?b=1"),
            ("https://example.com:8443/a", "https://example.com:8443/a"),
            ("https://example.com", "https://example.com/"),
            ("https://example.com/docs/", "https://example.com/docs/"),
        ],
    )
    def test_normalize(self, url: str, expected: str) -> None:
        """Test scheme/host casing, default ports, fragments and empty paths."""
        assert normalize_url(url) == expected

    def test_empty_url(self) -> None:
        """Test that empty input is rejected."""
        with pytest.raises(ValueError, match="cannot be empty"):
            normalize_url("   ")


class TestHelpers:
    """Tests for small URL predicates."""

    def test_is_http_url(self) -> None:
        assert is_http_url("https://example.com/page")
        assert is_http_url("HTTP://example.com")
        assert not is_http_url("mailto:someone@example.com")
        assert not is_http_url("/relative/path")
        assert not is_http_url("ftp://example.com/file")

    def test_site_root_keeps_port(self) -> None:
        assert site_root("https://example.com:8443/docs/page?x=1") == "https://example.com:8443"

    def test_hostname(self) -> None:
        assert hostname("https://WWW.Example.com/x") == "www.example.com"
        assert hostname("not a url") == ""


class TestExtractHomepage:
    """Tests for homepage derivation from a resolved URL."""

    @pytest.mark.parametrize(
        "path",
        ["/", "/home", "/homepage", "/index", "/index.html", "/Index.PHP", "/en", "/eng/",
         "/en-us/homepage", "/eng-au/home", "/fr_fr/home"],
    )
    def test_homepage_paths(self, path: str) -> None:
        """Test that landing page paths are recognised."""
        assert is_homepage_path(path)

    @pytest.mark.parametrize("path", ["/about", "/blog/home-improvement", "/en/about", "/homes"])
    def test_non_homepage_paths(self, path: str) -> None:
        """Test that content paths are not mistaken for landing pages."""
        assert not is_homepage_path(path)

    def test_homepage_url_returned_unchanged(self) -> None:
        """Test that a landing page URL is kept as is."""
        url = "https://example.com/en-us/homepage"
        assert extract_homepage(url) == url

    def test_deep_url_collapses_to_root(self) -> None:
        """Test that other URLs collapse to the site root."""
        assert extract_homepage("https://example.com/blog/post-1?x=1") == "https://example.com"

    def test_port_is_kept(self) -> None:
        """Test that non-default ports survive."""
        assert extract_homepage("http://localhost:8080/app/page") == "http://localhost:8080"

    def test_relative_url_rejected(self) -> None:
        """Test that only absolute http(s) URLs are accepted."""
        with pytest.raises(ValueError):
            extract_homepage("/just/a/path")


class TestPathInfo:
    """Tests for path metadata."""

    def test_nested_path(self) -> None:
        info = path_info("https://example.com/Blog/Post-1/")
        assert info.pathname == "/blog/post-1/"
        assert info.segments == ("blog", "post-1")
        assert info.level == 2

    def test_root(self) -> None:
        info = path_info("https://example.com")
        assert info.pathname == "/"
        assert info.segments == ()
        assert info.level == 0


class TestLinkExtractor:
    """Tests for LinkExtractor."""

    def test_extracts_absolute_links_in_document_order(self) -> None:
        """Test resolution, filtering and de-duplication."""
        html = """
        <html><body>
          <a href="/about">About <b>us</b></a>
          <a href="https://example.com/blog/post#comments">Post</a>
          <a href="mailto:team@example.com">Mail</a>
          <a href="javascript:void(0)">JS</a>
          <a href="tel:+123">Call</a>
          <a href="/about#team">About again</a>
          <a href="https://other.example.org/">Elsewhere</a>
          <a href="">Empty</a>
          <a>No href</a>
        </body></html>
        """
        links = LinkExtractor().extract_links(html, "https://example.com/")

        assert links == [
            Link(href="https://example.com/about", text="About us"),
            Link(href="https://example.com/blog/post", text="Post"),
            Link(href="https://other.example.org/", text="Elsewhere"),
        ]

    def test_relative_to_page_url(self) -> None:
        """Test that relative hrefs resolve against the page URL."""
        links = LinkExtractor().extract_links(
            '<a href="setup">Setup</a>', "https://example.com/docs/intro"
        )
        assert [link.href for link in links] == ["https://example.com/docs/setup"]

    def test_empty_html(self) -> None:
        assert LinkExtractor().extract_links("", "https://example.com/") == []
        assert LinkExtractor().extract_links("   ", "https://example.com/") == []
