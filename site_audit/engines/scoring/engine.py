"""
Health Score Aggregator

Six weighted sub-scores combined into a 0-100 health score:

    opportunityDiscovery   30   high-value competitor gap keywords
    rankingCoverage        20   share of crawled pages that rank
    positionQuality        15   average ranking position bucket
    technicalHealth        15   severity-weighted issue density
    internalLinking        10   share of orphan/underlinked pages
    contentOpportunity     10   quick wins and high-impact opportunities

Sub-scores that cannot be computed (restricted tier, new site without rankings)
are reported as placeholders and excluded from the denominator, so the overall
score is renormalized over what was actually measured.
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel, Field

from site_audit.engines.base import SEVERITY_WEIGHTS, AuditEngine, Severity, TechnicalIssue

logger = structlog.get_logger(__name__)


POINTS = {
    "opportunityDiscovery": 30,
    "rankingCoverage": 20,
    "positionQuality": 15,
    "technicalHealth": 15,
    "internalLinking": 10,
    "contentOpportunity": 10,
}

HIGH_VALUE_GAP_VOLUME = 100
HIGH_IMPACT_SCORE = 50
OPPORTUNITY_SCALE = 10

POSITION_SCORES = [
    (3, 15),
    (10, 12),
    (20, 8),
    (50, 4),
]

UPGRADE_DETAIL = "Upgrade for full analysis"


class SubScore(BaseModel):
    score: int
    max: int
    detail: str
    computed: bool = True


class HealthScore(BaseModel):
    score: int
    grade: str
    breakdown: dict[str, SubScore]


class ScoringInput(BaseModel):
    """Flattened view of the audit results the scorer reads."""
    technical_issues: list[TechnicalIssue] = Field(default_factory=list)
    orphan_pages: int = 0
    underlinked_pages: int = 0
    ranking_urls: list[str] = Field(default_factory=list)
    ranking_positions: list[float] = Field(default_factory=list)
    competitors_analyzed: int = 0
    gap_keyword_volumes: list[int] = Field(default_factory=list)
    quick_win_count: int = 0
    opportunity_impacts: list[float] = Field(default_factory=list)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'s' if count > 1 else ''}"


class HealthScorer(AuditEngine):
    ENGINE_NAME = "health_score"

    def score(
        self,
        data: ScoringInput,
        page_count: int,
        restricted: bool = False,
        is_new_site: bool = False,
    ) -> HealthScore:
        breakdown = {
            "opportunityDiscovery": self._opportunity_discovery(data),
            "rankingCoverage": self._ranking_coverage(data, page_count),
            "positionQuality": self._position_quality(data),
            "technicalHealth": self._technical_health(data, page_count),
            "internalLinking": self._internal_linking(data, page_count),
            "contentOpportunity": self._content_opportunity(data),
        }

        if restricted:
            for name in ("opportunityDiscovery", "rankingCoverage", "positionQuality", "contentOpportunity"):
                breakdown[name] = self._placeholder(name, UPGRADE_DETAIL)
        elif is_new_site:
            breakdown["rankingCoverage"] = self._placeholder("rankingCoverage", "Rankings build over time")
            breakdown["positionQuality"] = self._placeholder("positionQuality", "No rankings yet (expected)")

        computed = [s for s in breakdown.values() if s.computed]
        achievable = sum(s.max for s in computed)
        raw = sum(s.score for s in computed)
        total = self.round_half_up(raw / achievable * 100) if achievable else 0

        self.logger.info(
            "Health score calculated",
            score=total,
            raw=raw,
            achievable=achievable,
            restricted=restricted,
            is_new_site=is_new_site,
        )
        return HealthScore(score=total, grade=self.calculate_grade(total), breakdown=breakdown)

    @staticmethod
    def _placeholder(name: str, detail: str) -> SubScore:
        return SubScore(score=0, max=POINTS[name], detail=detail, computed=False)

    # ─────────────────────────────────────────────
    # Sub-scores
    # ─────────────────────────────────────────────

    def _opportunity_discovery(self, data: ScoringInput) -> SubScore:
        max_points = POINTS["opportunityDiscovery"]
        if data.competitors_analyzed == 0:
            return SubScore(score=0, max=max_points, detail="No competitors analyzed")

        total_gaps = len(data.gap_keyword_volumes)
        high_value = sum(1 for v in data.gap_keyword_volumes if v > HIGH_VALUE_GAP_VOLUME)
        score = min(max_points, self.round_half_up(high_value / 10 * max_points))
        detail = (
            f"{total_gaps} keyword gaps found ({high_value} high-value)"
            if total_gaps > 0
            else "No keyword gaps found"
        )
        return SubScore(score=score, max=max_points, detail=detail)

    def _ranking_coverage(self, data: ScoringInput, page_count: int) -> SubScore:
        max_points = POINTS["rankingCoverage"]
        if page_count == 0:
            return SubScore(score=0, max=max_points, detail="No pages crawled")

        ranking_pages = len(set(data.ranking_urls))
        ratio = ranking_pages / page_count
        return SubScore(
            score=self.round_half_up(ratio * max_points),
            max=max_points,
            detail=f"{ranking_pages} of {page_count} pages ranking ({self.round_half_up(ratio * 100)}%)",
        )

    def _position_quality(self, data: ScoringInput) -> SubScore:
        max_points = POINTS["positionQuality"]
        if not data.ranking_positions:
            return SubScore(score=0, max=max_points, detail="No rankings found")

        avg_position = sum(data.ranking_positions) / len(data.ranking_positions)
        score = next((points for limit, points in POSITION_SCORES if avg_position <= limit), 0)
        return SubScore(
            score=score,
            max=max_points,
            detail=f"Avg position: {self.round_half_up(avg_position)}",
        )

    def _technical_health(self, data: ScoringInput, page_count: int) -> SubScore:
        max_points = POINTS["technicalHealth"]
        if page_count == 0:
            return SubScore(score=0, max=max_points, detail="No pages crawled")

        issues = data.technical_issues
        weight = sum(SEVERITY_WEIGHTS[i.severity] for i in issues)
        health_ratio = max(0.0, 1 - weight / (page_count * 3))
        high = sum(1 for i in issues if i.severity == Severity.HIGH)
        medium = sum(1 for i in issues if i.severity == Severity.MEDIUM)

        if not issues:
            detail = "No issues"
        elif high and medium:
            detail = f"{high} critical, {medium} warnings"
        elif high:
            detail = f"{high} critical"
        elif medium:
            detail = _plural(medium, "warning")
        else:
            detail = f"{len(issues)} minor"

        return SubScore(score=self.round_half_up(health_ratio * max_points), max=max_points, detail=detail)

    def _internal_linking(self, data: ScoringInput, page_count: int) -> SubScore:
        max_points = POINTS["internalLinking"]
        if page_count == 0:
            return SubScore(score=0, max=max_points, detail="No pages crawled")

        orphans, underlinked = data.orphan_pages, data.underlinked_pages
        health_ratio = max(0.0, 1 - (orphans + underlinked) / page_count)

        if not orphans and not underlinked:
            detail = "Good internal linking"
        elif orphans and underlinked:
            detail = f"{orphans} orphan, {underlinked} underlinked"
        elif orphans:
            detail = _plural(orphans, "orphan page")
        else:
            detail = _plural(underlinked, "underlinked page")

        return SubScore(score=self.round_half_up(health_ratio * max_points), max=max_points, detail=detail)

    def _content_opportunity(self, data: ScoringInput) -> SubScore:
        max_points = POINTS["contentOpportunity"]
        high_impact = sum(1 for impact in data.opportunity_impacts if impact > HIGH_IMPACT_SCORE)

        if data.quick_win_count > 0 or high_impact >= 3:
            return SubScore(
                score=max_points,
                max=max_points,
                detail=f"{data.quick_win_count} quick wins, {high_impact} high-impact opps",
            )

        count = data.quick_win_count + len(data.opportunity_impacts)
        score = min(max_points, self.round_half_up(count / OPPORTUNITY_SCALE * max_points))
        detail = f"{count} opportunities identified" if count > 0 else "No opportunities found"
        return SubScore(score=score, max=max_points, detail=detail)
