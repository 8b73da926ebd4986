"""
Component payloads and the per-job result accumulator.

Each component owns exactly one accumulator field and replaces it wholesale
when it completes. Views that span several components (all technical issues,
the merged opportunity list) are computed at read time, so the order in which
concurrent components finish never changes what a reader sees.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from site_audit.engines.base import CrawledPage, CrawlResult, Severity, TechnicalIssue
from site_audit.engines.duplicates.engine import DuplicateContentReport
from site_audit.engines.linking.engine import InternalLinkingReport
from site_audit.engines.scoring.engine import ScoringInput

MAX_FINAL_OPPORTUNITIES = 50
MIN_GAP_OPPORTUNITY_VOLUME = 50


# ─────────────────────────────────────────────
# Keyword data payloads
# ─────────────────────────────────────────────

class CurrentRanking(BaseModel):
    url: str
    keyword: str
    position: int
    search_volume: int
    estimated_traffic: int


class Opportunity(BaseModel):
    keyword: str
    search_volume: int
    difficulty: float
    impact_score: float
    reason: str
    source: Literal["content_extraction", "seed_expansion", "competitor_gap"] = "content_extraction"
    competitor_url: str | None = None
    competitor_position: int | None = None
    is_quick_win: bool | None = None
    estimated_traffic: int | None = None
    intent: str | None = None
    cluster: str | None = None


class KeywordOpportunitiesResult(BaseModel):
    opportunities: list[Opportunity] = Field(default_factory=list)
    seed_opportunities: list[Opportunity] = Field(default_factory=list)


class GapKeyword(BaseModel):
    keyword: str
    search_volume: int
    difficulty: float
    competitor_position: int
    competitor_url: str
    score: float = 0.0


class CommonKeyword(BaseModel):
    keyword: str
    your_position: int
    their_position: int


class CompetitorGap(BaseModel):
    competitor: str
    total_keywords: int
    gap_keywords: list[GapKeyword] = Field(default_factory=list)
    common_keywords: list[CommonKeyword] = Field(default_factory=list)


class DiscoveredCompetitor(BaseModel):
    domain: str
    intersections: int = 0
    avg_position: float = 0.0
    etv: float = 0.0


class CompetitorAnalysisResult(BaseModel):
    gaps: list[CompetitorGap] = Field(default_factory=list)
    # One candidate per gap keyword, in competitor order. Candidates matching an
    # existing opportunity enrich it; the rest become competitor_gap opportunities.
    gap_opportunities: list[Opportunity] = Field(default_factory=list)
    discovered_competitors: list[DiscoveredCompetitor] = Field(default_factory=list)


class CannibalizationPage(BaseModel):
    url: str
    position: int | None = None
    signals: list[Literal["title", "h1", "content"]] = Field(default_factory=list)


class CannibalizationIssue(BaseModel):
    keyword: str
    search_volume: int
    pages: list[CannibalizationPage]
    severity: Literal["high", "medium"] = "high"


class SnippetOpportunity(BaseModel):
    keyword: str
    search_volume: int
    snippet_type: Literal["paragraph", "list", "table", "video"]
    current_holder: str
    your_position: int | None = None
    difficulty: Literal["easy", "medium", "hard"]
    snippet_title: str = ""
    snippet_content: str = ""


# ─────────────────────────────────────────────
# AI-derived payloads
# ─────────────────────────────────────────────

class OpportunityCluster(BaseModel):
    topic: str
    opportunities: list[Opportunity]
    total_volume: int
    avg_difficulty: int
    suggested_action: Literal["create", "optimize", "expand"]
    existing_page: str | None = None


class InternalLinkSuggestion(BaseModel):
    from_page: str
    suggested_anchor: str


class QuickWinSuggestions(BaseModel):
    content_gaps: list[str] = Field(default_factory=list)
    questions_to_answer: list[str] = Field(default_factory=list)
    internal_links_to_add: list[InternalLinkSuggestion] = Field(default_factory=list)
    estimated_new_position: int | None = None


class QuickWin(BaseModel):
    url: str
    keyword: str
    current_position: int
    suggestions: list[str]
    ai_suggestions: QuickWinSuggestions | None = None


class BriefTopic(BaseModel):
    topic: str
    total_volume: int
    suggested_action: str
    keywords: list[str]
    internal_links: list[str] = Field(default_factory=list)


class BriefsSummary(BaseModel):
    available_clusters: int = 0
    max_briefs: int = 0
    recommended: list[BriefTopic] = Field(default_factory=list)


# ─────────────────────────────────────────────
# Aggregation payloads
# ─────────────────────────────────────────────

ActionType = Literal[
    "fix_technical",
    "add_internal_links",
    "optimize_existing",
    "create_content",
    "fix_cannibalization",
    "steal_snippet",
]


class EstimatedImpact(BaseModel):
    search_volume: int | None = None
    traffic_gain: int | None = None


class PrioritizedAction(BaseModel):
    id: str
    priority: int
    type: ActionType
    title: str
    description: str
    url: str | None = None
    keyword: str | None = None
    estimated_impact: EstimatedImpact = Field(default_factory=EstimatedImpact)
    effort: Literal["low", "medium", "high"]
    category: Literal["technical", "linking", "optimization", "content"]


# ─────────────────────────────────────────────
# Accumulator
# ─────────────────────────────────────────────

class ResultAccumulator(BaseModel):
    """Typed result state: one field per producing component, None until it completes."""

    crawl: CrawlResult | None = None
    technical_issues: list[TechnicalIssue] | None = None
    internal_linking: InternalLinkingReport | None = None
    duplicate_content: DuplicateContentReport | None = None
    current_rankings: list[CurrentRanking] | None = None
    keyword_opportunities: KeywordOpportunitiesResult | None = None
    competitor_analysis: CompetitorAnalysisResult | None = None
    cannibalization: list[CannibalizationIssue] | None = None
    snippet_opportunities: list[SnippetOpportunity] | None = None
    intents: dict[str, str] | None = None
    opportunity_clusters: list[OpportunityCluster] | None = None
    quick_wins: list[QuickWin] | None = None
    briefs: BriefsSummary | None = None
    action_plan: list[PrioritizedAction] | None = None

    # Written once by job completion
    final_opportunities: list[Opportunity] | None = None

    @property
    def pages(self) -> list[CrawledPage]:
        return self.crawl.pages if self.crawl else []

    @property
    def rankings(self) -> list[CurrentRanking]:
        return self.current_rankings or []

    @property
    def competitor_gaps(self) -> list[CompetitorGap]:
        return self.competitor_analysis.gaps if self.competitor_analysis else []

    @property
    def all_technical_issues(self) -> list[TechnicalIssue]:
        issues = list(self.technical_issues or [])
        if self.internal_linking:
            issues.extend(self.internal_linking.issues)
        if self.duplicate_content:
            issues.extend(self.duplicate_content.issues)
        return issues

    @property
    def opportunities(self) -> list[Opportunity]:
        """
        Merged opportunity view: extracted and seed opportunities enriched with
        competitor gap data, followed by competitor-only gap opportunities.
        Intents are applied when classification has completed.
        """
        own: list[Opportunity] = []
        if self.keyword_opportunities:
            own = [
                o.model_copy()
                for o in self.keyword_opportunities.opportunities + self.keyword_opportunities.seed_opportunities
            ]

        by_keyword: dict[str, Opportunity] = {}
        for opp in own:
            by_keyword.setdefault(opp.keyword.lower(), opp)

        gap_only: list[Opportunity] = []
        candidates = self.competitor_analysis.gap_opportunities if self.competitor_analysis else []
        for candidate in candidates:
            existing = by_keyword.get(candidate.keyword.lower())
            if existing is not None:
                existing.competitor_url = candidate.competitor_url
                existing.competitor_position = candidate.competitor_position
                existing.reason = candidate.reason
                existing.is_quick_win = candidate.is_quick_win
                existing.estimated_traffic = candidate.estimated_traffic
                existing.impact_score = candidate.impact_score
            elif candidate.search_volume > MIN_GAP_OPPORTUNITY_VOLUME:
                gap_only.append(candidate.model_copy())

        merged = own + gap_only
        if self.intents:
            for opp in merged:
                opp.intent = self.intents.get(opp.keyword.lower(), opp.intent)
        return merged

    def finalize_opportunities(self) -> list[Opportunity]:
        """Deduplicate by lowercase keyword (first wins), sort by impact, keep the top 50."""
        seen: set[str] = set()
        deduped: list[Opportunity] = []
        for opp in self.opportunities:
            key = opp.keyword.lower()
            if key in seen:
                continue
            seen.add(key)
            deduped.append(opp)
        deduped.sort(key=lambda o: o.impact_score, reverse=True)
        return deduped[:MAX_FINAL_OPPORTUNITIES]

    def scoring_input(self) -> ScoringInput:
        opportunities = self.final_opportunities if self.final_opportunities is not None else self.opportunities
        gaps = self.competitor_gaps
        return ScoringInput(
            technical_issues=self.all_technical_issues,
            orphan_pages=len(self.internal_linking.orphan_pages) if self.internal_linking else 0,
            underlinked_pages=len(self.internal_linking.underlinked_pages) if self.internal_linking else 0,
            ranking_urls=[r.url for r in self.rankings],
            ranking_positions=[r.position for r in self.rankings],
            competitors_analyzed=len(gaps),
            gap_keyword_volumes=[kw.search_volume for gap in gaps for kw in gap.gap_keywords],
            quick_win_count=len(self.quick_wins or []),
            opportunity_impacts=[o.impact_score for o in opportunities],
        )

    def high_severity_issues(self) -> list[TechnicalIssue]:
        return [i for i in self.all_technical_issues if i.severity == Severity.HIGH]
