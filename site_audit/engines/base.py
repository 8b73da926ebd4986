"""
Base class and type contracts for crawl and analysis engines.

Design principles:
- Engines are stateless: all state comes from the pages they are handed
- Engines are independent: no engine imports another
- Local analyzers are pure and never raise on well-formed pages
"""

from __future__ import annotations

import math
from abc import ABC
from enum import Enum
from typing import Literal, Union

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class Severity(str, Enum):
    HIGH = "high"       # Significant impact - fix soon
    MEDIUM = "medium"   # Moderate impact - fix this sprint
    LOW = "low"         # Minor - fix when convenient


SEVERITY_WEIGHTS: dict[Severity, float] = {
    Severity.HIGH: 3.0,
    Severity.MEDIUM: 1.0,
    Severity.LOW: 0.5,
}


# ─────────────────────────────────────────────
# Crawl data types
# ─────────────────────────────────────────────

class CrawledPage(BaseModel):
    """Signals extracted from one fetched page. Superseded, never merged, on re-crawl."""
    url: str
    title: str | None = None
    h1: str | None = None
    h1_count: int = 0
    content: str | None = None
    word_count: int = 0
    section: str = ""
    outbound_links: list[str] = Field(default_factory=list)
    h2s: list[str] = Field(default_factory=list)
    h3s: list[str] = Field(default_factory=list)
    meta_description: str | None = None
    canonical_url: str | None = None
    og_title: str | None = None
    og_description: str | None = None
    og_image: str | None = None
    has_schema_org: bool = False
    schema_types: list[str] = Field(default_factory=list)
    has_viewport: bool = False
    readability_score: float | None = None
    code_block_count: int = 0
    code_blocks: list[str] = Field(default_factory=list)
    image_count: int = 0
    images_without_alt: int = 0

    class Config:
        frozen = True


class RedirectChain(BaseModel):
    original_url: str
    final_url: str
    hops: int
    chain: list[str]


class BrokenLink(BaseModel):
    source_url: str
    target_url: str
    status_code: int | None = None


class CrawlError(BaseModel):
    url: str
    error: str


class SectionInfo(BaseModel):
    path: str
    page_count: int
    content_score: int = 0


class CrawlResult(BaseModel):
    pages: list[CrawledPage] = Field(default_factory=list)
    sections: list[SectionInfo] = Field(default_factory=list)
    errors: list[CrawlError] = Field(default_factory=list)
    broken_links: list[BrokenLink] = Field(default_factory=list)
    redirect_chains: list[RedirectChain] = Field(default_factory=list)
    sitemap_url_count: int = 0
    has_robots_txt: bool = False
    has_sitemap: bool = False


# ─────────────────────────────────────────────
# Section discovery stream events
# ─────────────────────────────────────────────

class SitemapEvent(BaseModel):
    type: Literal["sitemap"] = "sitemap"
    total_urls: int


class SectionsEvent(BaseModel):
    type: Literal["sections"] = "sections"
    sections: list[SectionInfo]


class ScoredSectionEvent(BaseModel):
    type: Literal["scored"] = "scored"
    section: SectionInfo


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"


DiscoverEvent = Union[SitemapEvent, SectionsEvent, ScoredSectionEvent, DoneEvent]


# ─────────────────────────────────────────────
# Analysis output types
# ─────────────────────────────────────────────

class TechnicalIssue(BaseModel):
    url: str
    issue: str
    severity: Severity


# ─────────────────────────────────────────────
# Base Engine
# ─────────────────────────────────────────────

class AuditEngine(ABC):
    """
    Common base for engines. Provides a class-scoped structured logger and
    the grade scale shared by every score the platform reports.
    """

    ENGINE_NAME: str = "base"

    def __init__(self):
        self.logger = structlog.get_logger(self.__class__.__name__)

    @staticmethod
    def round_half_up(value: float) -> int:
        """Round .5 away from zero for positive values, unlike round()'s banker's rounding."""
        return int(math.floor(value + 0.5))

    @staticmethod
    def calculate_grade(score: float) -> str:
        """Convert a 0-100 score to a grade bucket."""
        if score >= 80:
            return "excellent"
        elif score >= 60:
            return "good"
        elif score >= 40:
            return "needs_work"
        return "poor"
