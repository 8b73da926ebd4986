"""
Duplicate Content Detector

Two passes over page content:
1. Exact duplicates: SHA-256 of lowercased, whitespace-collapsed content
2. Near duplicates: Jaccard similarity of word sets on the remaining pages,
   with a hard cap on pairwise comparisons
"""

from __future__ import annotations

import hashlib
from typing import Literal

import structlog
from pydantic import BaseModel

from site_audit.core.config import Settings, get_settings
from site_audit.engines.base import AuditEngine, CrawledPage, Severity, TechnicalIssue

logger = structlog.get_logger(__name__)


class DuplicateGroup(BaseModel):
    urls: list[str]
    similarity: float
    type: Literal["exact", "near"]


class DuplicateContentReport(BaseModel):
    groups: list[DuplicateGroup]
    issues: list[TechnicalIssue]


def content_hash(content: str) -> str:
    normalized = " ".join(content.lower().split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _word_set(content: str) -> set[str]:
    return {w for w in content.lower().split() if len(w) > 3}


def jaccard_similarity(content_a: str, content_b: str) -> float:
    words_a = _word_set(content_a)
    words_b = _word_set(content_b)
    if not words_a or not words_b:
        return 0.0
    intersection = len(words_a & words_b)
    return intersection / (len(words_a) + len(words_b) - intersection)


class DuplicateContentDetector(AuditEngine):
    ENGINE_NAME = "duplicate_content"

    def __init__(self, settings: Settings | None = None):
        super().__init__()
        self.settings = settings or get_settings()

    def detect(self, pages: list[CrawledPage]) -> list[DuplicateGroup]:
        min_length = self.settings.DUPLICATE_MIN_CONTENT_LENGTH
        threshold = self.settings.DUPLICATE_SIMILARITY_THRESHOLD
        max_comparisons = self.settings.DUPLICATE_MAX_COMPARISONS

        candidates = [p for p in pages if p.content and len(p.content) >= min_length]
        groups: list[DuplicateGroup] = []
        processed: set[str] = set()

        # ── Exact pass ──────────────────────────────────
        by_hash: dict[str, list[str]] = {}
        for page in candidates:
            by_hash.setdefault(content_hash(page.content), []).append(page.url)

        for urls in by_hash.values():
            if len(urls) >= 2:
                groups.append(DuplicateGroup(urls=urls, similarity=1.0, type="exact"))
                processed.update(urls)

        # ── Near pass ───────────────────────────────────
        remaining = [p for p in candidates if p.url not in processed]
        comparisons = 0

        for i, first in enumerate(remaining):
            if comparisons >= max_comparisons:
                break
            if first.url in processed:
                continue

            similar = [first.url]
            best = 0.0
            for second in remaining[i + 1:]:
                if comparisons >= max_comparisons:
                    break
                if second.url in processed:
                    continue
                comparisons += 1
                similarity = jaccard_similarity(first.content, second.content)
                if similarity >= threshold:
                    similar.append(second.url)
                    best = max(best, similarity)
                    processed.add(second.url)

            if len(similar) >= 2:
                processed.add(first.url)
                groups.append(DuplicateGroup(urls=similar, similarity=best, type="near"))

        groups.sort(key=lambda g: len(g.urls), reverse=True)
        self.logger.info("Duplicate detection complete", groups=len(groups), comparisons=comparisons)
        return groups

    def analyze(self, pages: list[CrawledPage]) -> DuplicateContentReport:
        groups = self.detect(pages)
        issues: list[TechnicalIssue] = []
        for group in groups:
            primary, others = group.urls[0], group.urls[1:]
            label = "Exact" if group.type == "exact" else "Near"
            listed = ", ".join(others[:2]) + ("..." if len(others) > 2 else "")
            issues.append(TechnicalIssue(
                url=primary,
                issue=f"{label} duplicate content with {len(others)} other page(s): {listed}",
                severity=Severity.HIGH if group.type == "exact" else Severity.MEDIUM,
            ))
        return DuplicateContentReport(groups=groups, issues=issues)
