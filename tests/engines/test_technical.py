"""
Tests for the technical SEO analyzer.
"""

import pytest

from site_audit.engines.base import BrokenLink, CrawlResult, RedirectChain, Severity
from site_audit.engines.technical.engine import TechnicalAnalyzer, has_different_canonical
from tests.factories import make_page


def issue_texts(issues, url=None):
    return [i.issue for i in issues if url is None or i.url == url]


@pytest.fixture
def analyzer():
    return TechnicalAnalyzer()


@pytest.fixture
def crawl():
    return CrawlResult(has_robots_txt=True, has_sitemap=True)


class TestPageIssues:

    def test_clean_page_has_no_issues(self, analyzer, crawl):
        page = make_page("https://example.com/guide")
        assert analyzer.analyze([page], crawl) == []

    def test_missing_title_is_high(self, analyzer, crawl):
        issues = analyzer.analyze([make_page("https://example.com/a", title=None)], crawl)
        missing = [i for i in issues if i.issue == "Missing title tag"]
        assert missing and missing[0].severity == Severity.HIGH

    def test_title_length_buckets(self, analyzer, crawl):
        pages = [
            make_page("https://example.com/long", title="x" * 75),
            make_page("https://example.com/trunc", title="y" * 65),
            make_page("https://example.com/short", title="z" * 10),
        ]
        issues = analyzer.analyze(pages, crawl)
        assert "Title too long (over 70 characters)" in issue_texts(issues, "https://example.com/long")
        assert "Title may be truncated (60-70 characters)" in issue_texts(issues, "https://example.com/trunc")
        assert "Title too short (under 30 characters)" in issue_texts(issues, "https://example.com/short")

    def test_duplicate_titles_ignore_case(self, analyzer, crawl):
        pages = [
            make_page("https://example.com/a", title="Shared Title For Two Different Pages"),
            make_page("https://example.com/b", title="shared title for two different pages "),
        ]
        issues = analyzer.analyze(pages, crawl)
        assert issue_texts(issues).count("Duplicate title tag") == 2

    def test_canonicalized_page_skips_duplicate_checks(self, analyzer, crawl):
        pages = [
            make_page("https://example.com/a", title="Shared Title For Two Different Pages"),
            make_page(
                "https://example.com/a?ref=1",
                title="Shared Title For Two Different Pages",
                canonical_url="https://example.com/a",
            ),
        ]
        issues = analyzer.analyze(pages, crawl)
        assert "Duplicate title tag" not in issue_texts(issues)

    def test_content_depth_tiers(self, analyzer, crawl):
        pages = [
            make_page("https://example.com/a", word_count=50),
            make_page("https://example.com/b", word_count=200),
            make_page("https://example.com/c", word_count=400),
        ]
        issues = analyzer.analyze(pages, crawl)
        assert "Very thin content (less than 100 words)" in issue_texts(issues, "https://example.com/a")
        assert "Thin content (under 300 words)" in issue_texts(issues, "https://example.com/b")
        assert "Short content (under 500 words)" in issue_texts(issues, "https://example.com/c")

    def test_readability_threshold_is_section_aware(self, analyzer, crawl):
        docs = make_page("https://example.com/docs/setup", section="/docs", readability_score=11.0)
        blog = make_page("https://example.com/blog/post", section="/blog", readability_score=11.0)
        issues = analyzer.analyze([docs, blog], crawl)
        assert not any("too complex" in t for t in issue_texts(issues, docs.url))
        assert "Content too complex (grade 11.0, aim for 6-8)" in issue_texts(issues, blog.url)

    def test_heading_structure(self, analyzer, crawl):
        page = make_page("https://example.com/a", h1_count=2, h2s=[], h3s=["Sub"])
        texts = issue_texts(analyzer.analyze([page], crawl))
        assert "Multiple H1 tags (2 found, should be 1)" in texts
        assert "Skipped heading level (H1 → H3, missing H2)" in texts
        assert "No H2 headings (poor structure)" in texts

    def test_url_hygiene(self, analyzer, crawl):
        page = make_page("https://example.com/My_Page?a=1&b=2&c=3")
        texts = issue_texts(analyzer.analyze([page], crawl))
        assert "URL contains underscores (use hyphens instead)" in texts
        assert "URL contains uppercase letters (use lowercase)" in texts
        assert "Too many URL parameters (3, recommended max 2)" in texts

    def test_missing_alt_text(self, analyzer, crawl):
        page = make_page("https://example.com/a", image_count=3, images_without_alt=2)
        assert "2 image(s) missing alt text" in issue_texts(analyzer.analyze([page], crawl))


class TestSiteIssues:

    def test_missing_robots_and_sitemap_attach_to_first_page(self, analyzer):
        pages = [make_page("https://example.com/"), make_page("https://example.com/b")]
        issues = analyzer.analyze(pages, CrawlResult())
        site = [i for i in issues if i.issue in ("Missing robots.txt file", "Missing XML sitemap")]
        assert {i.url for i in site} == {"https://example.com/"}
        assert {i.severity for i in site} == {Severity.LOW, Severity.MEDIUM}

    def test_redirect_chain_severity(self, analyzer):
        crawl = CrawlResult(
            has_robots_txt=True,
            has_sitemap=True,
            redirect_chains=[
                RedirectChain(original_url="https://example.com/a", final_url="https://example.com/d", hops=3,
                              chain=["https://example.com/a", "https://example.com/b",
                                     "https://example.com/c", "https://example.com/d"]),
                RedirectChain(original_url="https://example.com/v", final_url="https://example.com/z", hops=4,
                              chain=["https://example.com/v", "https://example.com/w", "https://example.com/x",
                                     "https://example.com/y", "https://example.com/z"]),
            ],
        )
        issues = analyzer.find_site_issues([], crawl)
        assert [i.severity for i in issues] == [Severity.MEDIUM, Severity.HIGH]
        assert issues[0].issue.startswith("Redirect chain with 3 hops")

    def test_broken_links_grouped_by_target(self, analyzer):
        crawl = CrawlResult(
            has_robots_txt=True,
            has_sitemap=True,
            broken_links=[
                BrokenLink(source_url="https://example.com/a", target_url="https://example.com/gone", status_code=404),
                BrokenLink(source_url="https://example.com/b", target_url="https://example.com/gone", status_code=404),
                BrokenLink(source_url="https://example.com/a", target_url="https://example.com/err", status_code=503),
            ],
        )
        issues = analyzer.find_site_issues([], crawl)
        assert issues[0].url == "https://example.com/a"
        assert issues[0].issue == "Broken link (404): https://example.com/gone (linked from 2 pages)"
        assert issues[0].severity == Severity.MEDIUM
        assert issues[1].severity == Severity.HIGH


class TestCanonical:

    def test_same_url_is_not_different(self):
        assert not has_different_canonical(make_page("https://Example.com/a", canonical_url="https://example.com/a"))

    def test_relative_canonical_is_ignored(self):
        assert not has_different_canonical(make_page("https://example.com/a", canonical_url="/b"))

    def test_other_url_is_different(self):
        assert has_different_canonical(make_page("https://example.com/a", canonical_url="https://example.com/b"))
