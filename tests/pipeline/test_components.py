"""
Tests for pipeline components, their shared helpers and the merged result views.
"""

from unittest.mock import AsyncMock

import pytest

from site_audit.core.errors import CrawlFailedError
from site_audit.core.tiers import Tier, get_tier_config
from site_audit.engines.base import Severity, TechnicalIssue
from site_audit.engines.linking.engine import InternalLinkingReport
from site_audit.pipeline.components import (
    ALL_COMPONENTS,
    COMPONENT_DEPENDENCIES,
    ActionPlanComponent,
    CannibalizationComponent,
    CompetitorAnalysisComponent,
    ComponentContext,
    CrawlComponent,
    CurrentRankingsComponent,
    calculate_priority,
    ctr_for_position,
    extract_keyword_phrases,
    impact_score,
    normalize_competitor_input,
    snippet_difficulty,
)
from site_audit.pipeline.interfaces import RankedKeyword
from site_audit.pipeline.models import ComponentKey
from site_audit.pipeline.results import (
    CompetitorAnalysisResult,
    CurrentRanking,
    DiscoveredCompetitor,
    KeywordOpportunitiesResult,
    Opportunity,
    QuickWin,
    ResultAccumulator,
)
from tests.factories import make_page


def context(settings, tier=Tier.AUDIT, **fields) -> ComponentContext:
    fields.setdefault("crawler", AsyncMock())
    return ComponentContext(
        job_id="job-1",
        site_url="https://example.com",
        tier=get_tier_config(tier),
        settings=settings,
        **fields,
    )


def opp(keyword: str, volume: int = 500, impact: float = 40.0, **fields) -> Opportunity:
    fields.setdefault("reason", "No existing page targets this keyword")
    return Opportunity(keyword=keyword, search_volume=volume, difficulty=25, impact_score=impact, **fields)


def ranking(keyword: str, url: str, position: int, volume: int = 1000) -> CurrentRanking:
    return CurrentRanking(url=url, keyword=keyword, position=position, search_volume=volume, estimated_traffic=0)


# ─────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────

class TestScoringHelpers:

    def test_impact_score(self):
        assert impact_score(1000, 20) == 51.23
        # A competitor ranking in the top 10 boosts the raw value by 1.5x
        assert impact_score(1000, 20, competitor_position=5) == 56.42
        assert impact_score(10**12, 1) == 100.0

    def test_zero_difficulty_is_treated_as_one(self):
        assert impact_score(1000, 0) == impact_score(1000, 1)

    def test_ctr_curve(self):
        assert ctr_for_position(1) == 0.284
        assert ctr_for_position(20) == pytest.approx(0.0005)
        assert ctr_for_position(101) == 0.0

    def test_snippet_difficulty(self):
        assert [snippet_difficulty(p) for p in (1, 3, 4, 6, 7)] == ["easy", "easy", "medium", "medium", "hard"]

    def test_priority_weights(self):
        assert calculate_priority(50, 80, 80, 90) == 71
        assert calculate_priority(40, 60, 70, 80) == 59


class TestKeywordExtraction:

    def test_phrases_from_headings(self):
        page = make_page("https://example.com/", title="Best Widget Pricing Guide", h1=None, h2s=[])
        assert extract_keyword_phrases([page]) == [
            "best widget",
            "widget pricing",
            "pricing guide",
            "best widget pricing",
            "widget pricing guide",
            "best widget pricing guide",
        ]

    def test_short_words_are_dropped(self):
        page = make_page("https://example.com/", title="Go to an API guide", h1=None, h2s=[])
        assert extract_keyword_phrases([page]) == ["api guide"]

    def test_duplicates_across_pages_kept_once(self):
        pages = [
            make_page("https://example.com/a", title="Widget pricing", h1=None, h2s=[]),
            make_page("https://example.com/b", title="widget PRICING", h1=None, h2s=[]),
        ]
        assert extract_keyword_phrases(pages) == ["widget pricing"]


class TestCompetitorInput:

    @pytest.mark.parametrize("value, expected", [
        (" Rival.com ", "https://rival.com"),
        ("https://Rival.com/pricing", "https://rival.com/pricing"),
        ("http://rival.com", "http://rival.com"),
        ("rival", None),
        ("", None),
        ("   ", None),
    ])
    def test_normalize(self, value, expected):
        assert normalize_competitor_input(value) == expected


# ─────────────────────────────────────────────
# Graph
# ─────────────────────────────────────────────

class TestDependencyGraph:

    def test_every_component_is_registered(self):
        assert set(ALL_COMPONENTS) == {k.value for k in ComponentKey}

    def test_dependencies_are_known_and_acyclic(self):
        visited: dict[str, str] = {}

        def visit(key):
            assert visited.get(key) != "active", f"cycle through {key}"
            if visited.get(key) == "done":
                return
            visited[key] = "active"
            for dep in COMPONENT_DEPENDENCIES[key]:
                assert dep in COMPONENT_DEPENDENCIES
                visit(dep)
            visited[key] = "done"

        for key in COMPONENT_DEPENDENCIES:
            visit(key)

    def test_crawl_is_the_only_root(self):
        roots = [k for k, deps in COMPONENT_DEPENDENCIES.items() if not deps]
        assert roots == ["crawl"]


# ─────────────────────────────────────────────
# Execution wrapper
# ─────────────────────────────────────────────

class TestExecute:

    @pytest.mark.asyncio
    async def test_missing_provider_is_a_component_failure(self, settings):
        run = await CurrentRankingsComponent().execute(context(settings), ResultAccumulator())

        assert not run.ok
        assert run.key == "currentRankings"
        assert run.error == "currentRankings requires a keyword data provider"

    @pytest.mark.asyncio
    async def test_provider_errors_are_captured(self, settings):
        keyword_data = AsyncMock()
        keyword_data.get_ranked_keywords.side_effect = RuntimeError()

        run = await CurrentRankingsComponent().execute(
            context(settings, keyword_data=keyword_data), ResultAccumulator(),
        )

        assert not run.ok
        assert run.error == "RuntimeError"

    @pytest.mark.asyncio
    async def test_restricted_tier_skips_providers(self, settings):
        keyword_data = AsyncMock()

        run = await CurrentRankingsComponent().execute(
            context(settings, tier=Tier.FREE, keyword_data=keyword_data), ResultAccumulator(),
        )

        assert run.ok
        assert run.data == []
        keyword_data.get_ranked_keywords.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_job_fatal_errors_propagate(self, settings):
        crawler = AsyncMock()
        crawler.crawl.side_effect = CrawlFailedError("https://example.com")

        with pytest.raises(CrawlFailedError):
            await CrawlComponent().execute(context(settings, crawler=crawler), ResultAccumulator())

    @pytest.mark.asyncio
    async def test_rankings_estimate_traffic(self, settings):
        keyword_data = AsyncMock()
        keyword_data.get_ranked_keywords.return_value = [
            RankedKeyword(keyword="widgets", position=1, url="https://example.com/", search_volume=1000),
        ]
        component = CurrentRankingsComponent()
        ctx = context(settings, keyword_data=keyword_data)

        run = await component.execute(ctx, ResultAccumulator())

        assert run.data[0].estimated_traffic == 284
        keyword_data.get_ranked_keywords.assert_awaited_once_with(
            "example.com", limit=100, max_position=100, min_volume=10,
        )
        assert component.job_updates(ctx, run.data) == {"is_new_site": False}
        assert component.job_updates(ctx, []) == {"is_new_site": True}


# ─────────────────────────────────────────────
# Components
# ─────────────────────────────────────────────

class TestCompetitorAnalysis:

    @pytest.mark.asyncio
    async def test_tier_caps_competitor_count(self, settings):
        keyword_data = AsyncMock()
        keyword_data.get_ranked_keywords.return_value = []
        ctx = context(
            settings, tier=Tier.SCAN, keyword_data=keyword_data, competitors=["a.com", "b.com", "c.com"],
        )

        result = await CompetitorAnalysisComponent().run(ctx, ResultAccumulator())

        assert [g.competitor for g in result.gaps] == ["a.com"]
        keyword_data.discover_competitors.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_discovers_competitors_when_none_given(self, settings):
        keyword_data = AsyncMock()
        keyword_data.discover_competitors.return_value = [DiscoveredCompetitor(domain="rival.com")]
        keyword_data.get_ranked_keywords.return_value = [
            RankedKeyword(keyword="shared", position=4, url="https://rival.com/s", search_volume=900),
            RankedKeyword(keyword="gap", position=8, url="https://rival.com/g", search_volume=700, difficulty=20),
        ]
        results = ResultAccumulator(current_rankings=[ranking("Shared", "https://example.com/", 12)])

        result = await CompetitorAnalysisComponent().run(context(settings, keyword_data=keyword_data), results)

        keyword_data.discover_competitors.assert_awaited_once_with("example.com", limit=5)
        gap = result.gaps[0]
        assert gap.competitor == "rival.com"
        assert [k.keyword for k in gap.gap_keywords] == ["gap"]
        assert [(k.keyword, k.your_position, k.their_position) for k in gap.common_keywords] == [("shared", 12, 4)]
        assert result.gap_opportunities[0].reason == "rival.com ranks #8"
        assert result.discovered_competitors[0].domain == "rival.com"


class TestCannibalization:

    @pytest.mark.asyncio
    async def test_signals_per_competing_page(self, settings):
        a = make_page(
            "https://example.com/a",
            title="Widget Pricing Guide",
            content="widget pricing " * 5,
        )
        b = make_page("https://example.com/b", h1="Widget pricing tips")
        results = ResultAccumulator(
            crawl={"pages": [a, b]},
            current_rankings=[
                ranking("widget pricing", a.url, 4, volume=2400),
                ranking("Widget Pricing", b.url, 9, volume=2400),
                ranking("solo", a.url, 2),
            ],
        )

        run = await CannibalizationComponent().execute(context(settings), results)

        assert run.ok
        [issue] = run.data
        assert issue.keyword == "widget pricing"
        assert issue.search_volume == 2400
        assert [(p.url, p.position, p.signals) for p in issue.pages] == [
            (a.url, 4, ["title", "content"]),
            (b.url, 9, ["h1"]),
        ]

    @pytest.mark.asyncio
    async def test_restricted_tier_returns_nothing(self, settings):
        results = ResultAccumulator(current_rankings=[
            ranking("widgets", "https://example.com/a", 4),
            ranking("widgets", "https://example.com/b", 9),
        ])

        run = await CannibalizationComponent().execute(context(settings, tier=Tier.FREE), results)

        assert run.data == []


class TestActionPlan:

    def results(self) -> ResultAccumulator:
        return ResultAccumulator(
            technical_issues=[
                TechnicalIssue(url=f"https://example.com/{i}", issue="Missing title tag", severity=Severity.HIGH)
                for i in range(4)
            ] + [TechnicalIssue(url="https://example.com/x", issue="Missing meta", severity=Severity.MEDIUM)],
            internal_linking=InternalLinkingReport(orphan_pages=["https://example.com/o1", "https://example.com/o2"]),
            quick_wins=[QuickWin(url="https://example.com/q", keyword="widgets", current_position=12, suggestions=[])],
            keyword_opportunities=KeywordOpportunitiesResult(opportunities=[opp("widget guide", volume=5000)]),
        )

    @pytest.mark.asyncio
    async def test_restricted_tier_uses_local_findings_only(self, settings):
        plan = await ActionPlanComponent().run(context(settings, tier=Tier.FREE), self.results())

        assert [a.type for a in plan] == ["fix_technical"] * 3 + ["add_internal_links"]
        assert [a.id for a in plan[:3]] == ["fix_technical-0", "fix_technical-1", "fix_technical-2"]
        assert plan[0].priority == 71
        assert plan[3].title == "Fix 2 orphan pages"
        assert plan[3].effort == "low"

    @pytest.mark.asyncio
    async def test_paid_tier_includes_keyword_actions(self, settings):
        plan = await ActionPlanComponent().run(context(settings), self.results())

        by_type = {a.type: a for a in plan}
        assert by_type["optimize_existing"].description == "Position 12 - Improve content"
        assert by_type["create_content"].description == "5,000 monthly searches, 25% difficulty"
        assert by_type["create_content"].effort == "high"
        assert [a.priority for a in plan] == sorted((a.priority for a in plan), reverse=True)


# ─────────────────────────────────────────────
# Result views
# ─────────────────────────────────────────────

class TestOpportunityViews:

    def results(self) -> ResultAccumulator:
        return ResultAccumulator(
            keyword_opportunities=KeywordOpportunitiesResult(
                opportunities=[opp("Widget Guide", impact=40.0)],
                seed_opportunities=[opp("widget guide", impact=99.0, source="seed_expansion")],
            ),
            competitor_analysis=CompetitorAnalysisResult(gap_opportunities=[
                opp(
                    "widget guide",
                    impact=55.0,
                    reason="rival.com ranks #4",
                    source="competitor_gap",
                    competitor_url="https://rival.com/guide",
                    competitor_position=4,
                ),
                opp("widget reviews", volume=800, impact=50.0, source="competitor_gap"),
                opp("rare widget", volume=40, impact=80.0, source="competitor_gap"),
            ]),
            intents={"widget guide": "informational"},
        )

    def test_gap_data_enriches_existing_opportunity(self):
        results = self.results()
        merged = results.opportunities

        assert [o.keyword for o in merged] == ["Widget Guide", "widget guide", "widget reviews"]
        enriched = merged[0]
        assert enriched.source == "content_extraction"
        assert enriched.competitor_position == 4
        assert enriched.impact_score == 55.0
        assert enriched.reason == "rival.com ranks #4"
        assert enriched.intent == "informational"
        # Stored payloads are never mutated by the view
        assert results.keyword_opportunities.opportunities[0].competitor_position is None

    def test_finalize_dedupes_first_wins_and_sorts(self):
        final = self.results().finalize_opportunities()

        assert [(o.keyword, o.impact_score) for o in final] == [("Widget Guide", 55.0), ("widget reviews", 50.0)]

    def test_all_technical_issues_spans_local_analyzers(self):
        issue = TechnicalIssue(url="https://example.com/", issue="Missing title tag", severity=Severity.HIGH)
        orphan = TechnicalIssue(url="https://example.com/o", issue="Orphan page", severity=Severity.MEDIUM)
        results = ResultAccumulator(
            technical_issues=[issue],
            internal_linking=InternalLinkingReport(orphan_pages=["https://example.com/o"], issues=[orphan]),
        )

        assert results.all_technical_issues == [issue, orphan]
        assert results.high_severity_issues() == [issue]
        scoring = results.scoring_input()
        assert scoring.orphan_pages == 1
        assert scoring.technical_issues == [issue, orphan]


class TestTierLimits:

    def test_new_site_trades_seeds_for_briefs(self):
        config = get_tier_config(Tier.AUDIT, is_new_site=True)
        assert config.max_seeds == 0
        assert config.max_briefs == 8
        assert config.max_pages == 200

    def test_tiers_are_ordered(self):
        assert Tier.FREE < Tier.SCAN < Tier.AUDIT < Tier.DEEP_DIVE
        assert Tier("FREE").is_restricted
        assert not Tier.DEEP_DIVE.is_restricted
