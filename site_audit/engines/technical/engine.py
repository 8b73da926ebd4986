"""
Technical SEO Analyzer

Analyzes, per page:
- Title, meta description and H1 presence, length and duplication
- Content depth tiers, image alt text, heading structure
- Canonical, structured data and viewport tags
- Readability grade against a section-aware threshold
- URL hygiene (length, underscores, case, query parameters)

And per site:
- robots.txt / sitemap presence
- Redirect chains and broken links found during the crawl
"""

from __future__ import annotations

from urllib.parse import parse_qsl, urlparse

import structlog

from site_audit.engines.base import AuditEngine, CrawledPage, CrawlResult, Severity, TechnicalIssue

logger = structlog.get_logger(__name__)


THRESHOLDS = {
    "readability": {"technical": 12, "general": 8},
    "title": {"warning": 60, "error": 70, "min": 30},
    "meta_desc": {"warning": 155, "error": 170},
    "h1": {"max": 70},
    "word_count": {"critical": 100, "thin": 300, "short": 500},
    "links": {"max": 100},
    "url": {"warning": 200, "max_params": 2},
}

# Developer documentation legitimately reads at a higher grade
TECHNICAL_SECTIONS = frozenset({
    "/docs",
    "/api",
    "/reference",
    "/sdk",
    "/developers",
    "/documentation",
})


def _normalized_href(url: str) -> str | None:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return None
    path = parsed.path or "/"
    query = f"?{parsed.query}" if parsed.query else ""
    fragment = f"#{parsed.fragment}" if parsed.fragment else ""
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}{path}{query}{fragment}"


def has_different_canonical(page: CrawledPage) -> bool:
    """True when the page declares an absolute canonical pointing somewhere else."""
    if not page.canonical_url:
        return False
    page_href = _normalized_href(page.url)
    canonical_href = _normalized_href(page.canonical_url)
    if page_href is None or canonical_href is None:
        return False
    return page_href != canonical_href


def _normalize(value: str) -> str:
    return value.lower().strip()


def _count(values: list[str]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for value in values:
        counts[value] = counts.get(value, 0) + 1
    return counts


class TechnicalAnalyzer(AuditEngine):
    """Rule checks over crawled pages plus site-level crawl findings."""

    ENGINE_NAME = "technical"

    def analyze(self, pages: list[CrawledPage], crawl: CrawlResult) -> list[TechnicalIssue]:
        issues = self.find_page_issues(pages)
        issues.extend(self.find_site_issues(pages, crawl))
        self.logger.info("Technical analysis complete", pages=len(pages), issue_count=len(issues))
        return issues

    @staticmethod
    def readability_threshold(page: CrawledPage) -> int:
        if page.section in TECHNICAL_SECTIONS or page.code_block_count > 0:
            return THRESHOLDS["readability"]["technical"]
        return THRESHOLDS["readability"]["general"]

    def find_page_issues(self, pages: list[CrawledPage]) -> list[TechnicalIssue]:
        issues: list[TechnicalIssue] = []

        def add(page: CrawledPage, issue: str, severity: Severity) -> None:
            issues.append(TechnicalIssue(url=page.url, issue=issue, severity=severity))

        # Duplicate detection only counts indexable pages
        indexable = [p for p in pages if not has_different_canonical(p)]
        title_counts = _count([_normalize(p.title) for p in indexable if p.title])
        meta_counts = _count([_normalize(p.meta_description) for p in indexable if p.meta_description])
        h1_counts = _count([_normalize(p.h1) for p in indexable if p.h1])

        title_t = THRESHOLDS["title"]
        meta_t = THRESHOLDS["meta_desc"]
        words_t = THRESHOLDS["word_count"]
        url_t = THRESHOLDS["url"]

        for page in pages:
            canonical_elsewhere = has_different_canonical(page)

            # ── Title ──────────────────────────────────────
            if page.title is None:
                add(page, "Missing title tag", Severity.HIGH)
            elif page.title.strip() == "":
                add(page, "Empty title tag", Severity.HIGH)
            elif not canonical_elsewhere:
                if len(page.title) > title_t["error"]:
                    add(page, f"Title too long (over {title_t['error']} characters)", Severity.MEDIUM)
                elif len(page.title) > title_t["warning"]:
                    add(
                        page,
                        f"Title may be truncated ({title_t['warning']}-{title_t['error']} characters)",
                        Severity.LOW,
                    )
                elif len(page.title) < title_t["min"]:
                    add(page, f"Title too short (under {title_t['min']} characters)", Severity.MEDIUM)
                if title_counts.get(_normalize(page.title), 0) > 1:
                    add(page, "Duplicate title tag", Severity.MEDIUM)

            # ── Meta description ───────────────────────────
            if not canonical_elsewhere:
                if not page.meta_description:
                    add(page, "Missing meta description", Severity.MEDIUM)
                elif len(page.meta_description) > meta_t["error"]:
                    add(page, f"Meta description too long (over {meta_t['error']} characters)", Severity.LOW)
                elif len(page.meta_description) > meta_t["warning"]:
                    add(
                        page,
                        f"Meta description may be truncated ({meta_t['warning']}-{meta_t['error']} characters)",
                        Severity.LOW,
                    )
                if page.meta_description and meta_counts.get(_normalize(page.meta_description), 0) > 1:
                    add(page, "Duplicate meta description", Severity.MEDIUM)

            # ── H1 ─────────────────────────────────────────
            if page.h1 is None:
                add(page, "Missing H1 heading", Severity.MEDIUM)
            elif page.h1.strip() == "":
                add(page, "Empty H1 heading", Severity.MEDIUM)
            elif not canonical_elsewhere:
                if len(page.h1) > THRESHOLDS["h1"]["max"]:
                    add(page, f"H1 too long (over {THRESHOLDS['h1']['max']} characters)", Severity.LOW)
                if h1_counts.get(_normalize(page.h1), 0) > 1:
                    add(page, "Duplicate H1 heading across pages", Severity.MEDIUM)
                if not page.h2s:
                    add(page, "No H2 headings (poor structure)", Severity.LOW)

            # ── Content depth ──────────────────────────────
            if page.word_count < words_t["critical"]:
                add(page, f"Very thin content (less than {words_t['critical']} words)", Severity.HIGH)
            elif page.word_count < words_t["thin"]:
                add(page, f"Thin content (under {words_t['thin']} words)", Severity.MEDIUM)
            elif page.word_count < words_t["short"]:
                add(page, f"Short content (under {words_t['short']} words)", Severity.LOW)

            if page.images_without_alt > 0:
                add(page, f"{page.images_without_alt} image(s) missing alt text", Severity.MEDIUM)

            if page.image_count == 0 and page.word_count > words_t["thin"]:
                add(page, "No images or diagrams", Severity.LOW)

            # ── Head tags ──────────────────────────────────
            if not page.canonical_url:
                add(page, "Missing canonical URL", Severity.MEDIUM)
            if not page.has_schema_org:
                add(page, "No structured data (Schema.org/JSON-LD)", Severity.LOW)
            if not page.has_viewport:
                add(page, "Missing viewport meta tag (mobile-friendliness)", Severity.MEDIUM)

            # ── Readability ────────────────────────────────
            threshold = self.readability_threshold(page)
            if page.readability_score and page.readability_score > threshold:
                target = "10-12" if threshold == THRESHOLDS["readability"]["technical"] else "6-8"
                add(
                    page,
                    f"Content too complex (grade {page.readability_score:.1f}, aim for {target})",
                    Severity.LOW,
                )

            # ── Heading structure ──────────────────────────
            if page.h1_count > 1:
                add(page, f"Multiple H1 tags ({page.h1_count} found, should be 1)", Severity.LOW)
            if page.h1 and page.h3s and not page.h2s:
                add(page, "Skipped heading level (H1 → H3, missing H2)", Severity.LOW)

            if len(page.outbound_links) > THRESHOLDS["links"]["max"]:
                add(
                    page,
                    f"Too many links on page ({len(page.outbound_links)}, "
                    f"recommended max {THRESHOLDS['links']['max']})",
                    Severity.LOW,
                )

            # ── URL hygiene ────────────────────────────────
            issues.extend(self._url_issues(page))

            # ── Breadcrumbs on deep pages ──────────────────
            if page.has_schema_org and page.schema_types:
                has_breadcrumb = any("breadcrumb" in t.lower() for t in page.schema_types)
                is_deep_page = len(page.url.split("/")) > 4
                if is_deep_page and not has_breadcrumb:
                    add(page, "Missing BreadcrumbList schema (recommended for deep pages)", Severity.LOW)

        return issues

    @staticmethod
    def _url_issues(page: CrawledPage) -> list[TechnicalIssue]:
        url_t = THRESHOLDS["url"]
        parsed = urlparse(page.url)
        path = parsed.path
        found: list[TechnicalIssue] = []

        if len(page.url) > url_t["warning"]:
            found.append(TechnicalIssue(
                url=page.url,
                issue=f"URL too long ({len(page.url)} characters, recommended max {url_t['warning']})",
                severity=Severity.LOW,
            ))
        if "_" in path:
            found.append(TechnicalIssue(
                url=page.url,
                issue="URL contains underscores (use hyphens instead)",
                severity=Severity.LOW,
            ))
        if path != path.lower():
            found.append(TechnicalIssue(
                url=page.url,
                issue="URL contains uppercase letters (use lowercase)",
                severity=Severity.LOW,
            ))
        param_count = len(parse_qsl(parsed.query, keep_blank_values=True))
        if param_count > url_t["max_params"]:
            found.append(TechnicalIssue(
                url=page.url,
                issue=f"Too many URL parameters ({param_count}, recommended max {url_t['max_params']})",
                severity=Severity.LOW,
            ))
        return found

    def find_site_issues(self, pages: list[CrawledPage], crawl: CrawlResult) -> list[TechnicalIssue]:
        issues: list[TechnicalIssue] = []

        # Site-level findings are attached to the first crawled page
        if pages:
            site_url = pages[0].url
            if not crawl.has_robots_txt:
                issues.append(TechnicalIssue(url=site_url, issue="Missing robots.txt file", severity=Severity.LOW))
            if not crawl.has_sitemap:
                issues.append(TechnicalIssue(url=site_url, issue="Missing XML sitemap", severity=Severity.MEDIUM))

        for chain in crawl.redirect_chains:
            issues.append(TechnicalIssue(
                url=chain.original_url,
                issue=f"Redirect chain with {chain.hops} hops ({' → '.join(chain.chain)})",
                severity=Severity.HIGH if chain.hops >= 4 else Severity.MEDIUM,
            ))

        # One issue per broken target, attributed to the first page linking to it
        by_target: dict[str, dict] = {}
        for link in crawl.broken_links:
            entry = by_target.get(link.target_url)
            if entry:
                entry["count"] += 1
            else:
                by_target[link.target_url] = {
                    "source_url": link.source_url,
                    "status_code": link.status_code,
                    "count": 1,
                }

        for target, entry in by_target.items():
            status_code = entry["status_code"]
            status_text = f" ({status_code})" if status_code else ""
            count_text = f" (linked from {entry['count']} pages)" if entry["count"] > 1 else ""
            issues.append(TechnicalIssue(
                url=entry["source_url"],
                issue=f"Broken link{status_text}: {target}{count_text}",
                severity=Severity.HIGH if status_code and status_code >= 500 else Severity.MEDIUM,
            ))

        return issues
