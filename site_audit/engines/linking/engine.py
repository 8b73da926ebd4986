"""
Internal Linking Analyzer

Builds the internal link graph over crawled pages and reports pages that
nothing links to (orphans) or that have too few inbound links (underlinked).
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel, Field

from site_audit.core.config import Settings, get_settings
from site_audit.engines.base import AuditEngine, CrawledPage, Severity, TechnicalIssue

logger = structlog.get_logger(__name__)

LinkGraph = dict[str, set[str]]


class UnderlinkedPage(BaseModel):
    url: str
    incoming_links: int


class InternalLinkingReport(BaseModel):
    orphan_pages: list[str] = Field(default_factory=list)
    underlinked_pages: list[UnderlinkedPage] = Field(default_factory=list)
    issues: list[TechnicalIssue] = Field(default_factory=list)


def link_key(url: str) -> str:
    """Matching form of a URL: one trailing slash stripped, like extracted links."""
    return url[:-1] if url.endswith("/") else url


def build_link_graph(pages: list[CrawledPage]) -> LinkGraph:
    """Outbound edges per page, restricted to URLs that were crawled.

    Crawled URLs keep their own form (sitemaps often end them in a slash) and
    are matched against outbound links by link_key.
    """
    crawled = {link_key(p.url): p.url for p in pages}
    return {
        page.url: {crawled[link_key(link)] for link in page.outbound_links if link_key(link) in crawled}
        for page in pages
    }


def inbound_links(graph: LinkGraph) -> dict[str, list[str]]:
    inbound: dict[str, list[str]] = {url: [] for url in graph}
    for source, targets in graph.items():
        for target in targets:
            if target in inbound:
                inbound[target].append(source)
    return inbound


def suggest_links(keyword: str, pages: list[CrawledPage], exclude: list[str] | None = None, limit: int = 5) -> list[str]:
    """Pages whose title or content mentions the keyword; candidates to link from."""
    keyword_lower = keyword.lower()
    excluded = set(exclude or [])
    suggestions: list[str] = []
    for page in pages:
        if page.url in excluded:
            continue
        if keyword_lower in (page.content or "").lower() or keyword_lower in (page.title or "").lower():
            suggestions.append(page.url)
            if len(suggestions) >= limit:
                break
    return suggestions


class InternalLinkAnalyzer(AuditEngine):
    ENGINE_NAME = "internal_linking"

    def __init__(self, settings: Settings | None = None):
        super().__init__()
        self.settings = settings or get_settings()

    def analyze(self, pages: list[CrawledPage]) -> InternalLinkingReport:
        threshold = self.settings.LINKING_UNDERLINKED_THRESHOLD
        inbound = inbound_links(build_link_graph(pages))

        orphans = [url for url, sources in inbound.items() if not sources]
        underlinked = sorted(
            (
                UnderlinkedPage(url=url, incoming_links=len(sources))
                for url, sources in inbound.items()
                if 0 < len(sources) < threshold
            ),
            key=lambda p: p.incoming_links,
        )

        issues = [
            TechnicalIssue(
                url=url,
                issue="Orphan page (no internal links pointing to it)",
                severity=Severity.MEDIUM,
            )
            for url in orphans
        ]
        for page in underlinked:
            noun = "link" if page.incoming_links == 1 else "links"
            issues.append(TechnicalIssue(
                url=page.url,
                issue=f"Underlinked page (only {page.incoming_links} internal {noun})",
                severity=Severity.LOW,
            ))

        self.logger.info("Internal linking analyzed", orphans=len(orphans), underlinked=len(underlinked))
        return InternalLinkingReport(orphan_pages=orphans, underlinked_pages=underlinked, issues=issues)
