"""
Pipeline components and the static dependency graph.

Every component:
1. Declares its key, its dependencies and the accumulator field it owns
2. Implements run(ctx, results) and returns the payload for that field
3. Is called through execute(), which adds timing, structured logging and
   turns any exception except JobFatalError into a failed ComponentRun

External and AI components return empty payloads on the restricted tier
without touching a provider.
"""

from __future__ import annotations

import asyncio
import math
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlparse

import structlog
from pydantic import BaseModel

from site_audit.core.config import Settings, get_settings
from site_audit.core.errors import JobFatalError, ProviderNotConfiguredError
from site_audit.core.tiers import TierConfig
from site_audit.engines.base import AuditEngine, CrawledPage, CrawlResult, Severity
from site_audit.engines.crawler.engine import CrawlerEngine
from site_audit.engines.duplicates.engine import DuplicateContentDetector
from site_audit.engines.linking.engine import InternalLinkAnalyzer, suggest_links
from site_audit.engines.technical.engine import TechnicalAnalyzer
from site_audit.pipeline.interfaces import AIProvider, KeywordDataProvider, QuickWinContext
from site_audit.pipeline.models import ComponentKey
from site_audit.pipeline.results import (
    BriefsSummary,
    BriefTopic,
    CannibalizationIssue,
    CannibalizationPage,
    CommonKeyword,
    CompetitorAnalysisResult,
    CompetitorGap,
    CurrentRanking,
    EstimatedImpact,
    GapKeyword,
    KeywordOpportunitiesResult,
    Opportunity,
    OpportunityCluster,
    PrioritizedAction,
    QuickWin,
    ResultAccumulator,
    SnippetOpportunity,
)

logger = structlog.get_logger(__name__)

round_half_up = AuditEngine.round_half_up


# ─────────────────────────────────────────────
# Limits and shared scoring helpers
# ─────────────────────────────────────────────

LIMITS = {
    "extracted_keywords": 50,
    "min_search_volume": 50,
    "max_opportunities": 50,
    "discover_competitors": 5,
    "gap_keywords_per_competitor": 50,
    "common_keywords_per_competitor": 10,
    "max_cannibalization_issues": 20,
    "max_top_rankings_for_snippets": 15,
    "max_gap_snippet_checks": 10,
    "realistic_difficulty": 45,
    "quick_win_max_difficulty": 30,
    "impact_score_scale": 30,
    "seed_min_volume": 300,
    "seed_max_position": 30,
    "cannibalization_min_content_mentions": 5,
    "quick_win_candidates": 10,
    "ai_quick_wins": 5,
    "top_competitors_for_ai": 3,
    "brief_link_suggestions": 5,
}

CTR_BY_POSITION = {
    1: 0.284,
    2: 0.157,
    3: 0.099,
    4: 0.075,
    5: 0.06,
    6: 0.048,
    7: 0.04,
    8: 0.035,
    9: 0.03,
    10: 0.026,
}

AVG_TOP_CTR = (CTR_BY_POSITION[1] + CTR_BY_POSITION[2] + CTR_BY_POSITION[3]) / 3

DEFAULT_QUICK_WIN_SUGGESTIONS = [
    "Add more comprehensive content",
    "Include related keywords",
    "Improve internal linking",
]


def ctr_for_position(position: int) -> float:
    if position > 100:
        return 0.0
    return CTR_BY_POSITION.get(position, 0.01 / position)


def position_bonus(competitor_position: int | None) -> float:
    if not competitor_position:
        return 1.0
    if competitor_position <= 10:
        return 1.5
    if competitor_position <= 20:
        return 1.2
    if competitor_position <= 30:
        return 1.1
    return 1.0


def impact_score(volume: int, difficulty: float, competitor_position: int | None = None) -> float:
    """Log-scaled value of a keyword: volume over difficulty, boosted when a competitor ranks well."""
    raw = volume * (1 / max(difficulty, 1)) * position_bonus(competitor_position)
    normalized = min(100.0, math.log10(raw + 1) * LIMITS["impact_score_scale"])
    return round_half_up(normalized * 100) / 100


def is_quick_win_opportunity(difficulty: float, competitor_position: int | None) -> bool:
    return difficulty <= LIMITS["quick_win_max_difficulty"] and (
        not competitor_position or competitor_position > 10
    )


def estimate_traffic_gain(volume: int) -> int:
    return round_half_up(volume * AVG_TOP_CTR)


def extract_keyword_phrases(pages: list[CrawledPage]) -> list[str]:
    """2-4 word phrases from titles, H1s and H2s, skipping words of two letters or fewer."""
    phrases: dict[str, None] = {}
    for page in pages:
        for text in [page.title, page.h1, *page.h2s]:
            if not text:
                continue
            words = [w for w in text.lower().split() if len(w) > 2]
            for length in range(2, 5):
                for i in range(len(words) - length + 1):
                    phrases.setdefault(" ".join(words[i:i + length]), None)
    return list(phrases)[:LIMITS["extracted_keywords"]]


def normalize_competitor_input(value: str) -> str | None:
    trimmed = value.strip().lower()
    if not trimmed:
        return None
    if trimmed.startswith(("http://", "https://")):
        return trimmed if urlparse(trimmed).hostname else None
    if "." in trimmed:
        candidate = f"https://{trimmed}"
        return candidate if urlparse(candidate).hostname else None
    return None


def count_whole_word_matches(text: str, keyword: str) -> int:
    return len(re.findall(rf"\b{re.escape(keyword)}\b", text, flags=re.IGNORECASE))


def snippet_difficulty(position: int) -> str:
    if position <= 3:
        return "easy"
    if position <= 6:
        return "medium"
    return "hard"


def normalize_score(value: float, max_value: float) -> float:
    return min(100.0, max(0.0, value / max_value * 100))


def calculate_priority(volume: float, position: float, difficulty: float, effort: float) -> int:
    return round_half_up(volume * 0.35 + position * 0.25 + difficulty * 0.25 + effort * 0.15)


# ─────────────────────────────────────────────
# Component plumbing
# ─────────────────────────────────────────────

class ComponentKind(str, Enum):
    CRAWL = "crawl"
    LOCAL = "local"
    EXTERNAL = "external"
    DERIVED = "derived"
    AI = "ai"
    AGGREGATION = "aggregation"


# Kinds that produce nothing on the restricted tier
GATED_KINDS = frozenset({ComponentKind.EXTERNAL, ComponentKind.DERIVED, ComponentKind.AI})


@dataclass
class ComponentContext:
    """Read-only inputs shared by every component in one scheduler wave."""
    job_id: str
    site_url: str
    tier: TierConfig
    crawler: CrawlerEngine
    settings: Settings = field(default_factory=get_settings)
    competitors: list[str] = field(default_factory=list)
    section_filter: list[str] | None = None
    product_description: str | None = None
    keyword_data: KeywordDataProvider | None = None
    ai: AIProvider | None = None

    @property
    def hostname(self) -> str:
        return urlparse(self.site_url).hostname or ""


class ComponentRun(BaseModel):
    key: str
    ok: bool
    data: Any = None
    error: str | None = None
    execution_time_ms: float = 0.0


class Component(ABC):
    key: ComponentKey
    dependencies: tuple[ComponentKey, ...] = ()
    result_field: str
    kind: ComponentKind = ComponentKind.LOCAL
    needs_keyword_data: bool = False
    needs_ai: bool = False

    def __init__(self):
        self.logger = structlog.get_logger(self.__class__.__name__)

    @abstractmethod
    async def run(self, ctx: ComponentContext, results: ResultAccumulator) -> Any:
        ...

    def empty(self) -> Any:
        """Payload used when the tier does not include this component."""
        return []

    def store(self, data: Any) -> dict[str, Any]:
        return {self.result_field: data}

    def job_updates(self, ctx: ComponentContext, data: Any) -> dict[str, Any]:
        """Job-level fields derived from this component's output."""
        return {}

    def _check_providers(self, ctx: ComponentContext) -> None:
        if self.needs_keyword_data and ctx.keyword_data is None:
            raise ProviderNotConfiguredError(f"{self.key.value} requires a keyword data provider")
        if self.needs_ai and ctx.ai is None:
            raise ProviderNotConfiguredError(f"{self.key.value} requires an AI provider")

    async def execute(self, ctx: ComponentContext, results: ResultAccumulator) -> ComponentRun:
        """
        Wrapper around run() that adds timing, logging and error capture.
        Call this instead of run() directly.
        """
        start = time.perf_counter()
        self.logger.info("Component starting", component=self.key.value, job_id=ctx.job_id)

        try:
            if ctx.tier.tier.is_restricted and self.kind in GATED_KINDS:
                data = self.empty()
            else:
                self._check_providers(ctx)
                data = await self.run(ctx, results)

        except JobFatalError as exc:
            elapsed = (time.perf_counter() - start) * 1000
            self.logger.error(
                "Component failed fatally",
                component=self.key.value,
                job_id=ctx.job_id,
                error=str(exc),
                elapsed_ms=round(elapsed, 2),
            )
            raise

        except Exception as exc:
            elapsed = (time.perf_counter() - start) * 1000
            self.logger.error(
                "Component failed",
                component=self.key.value,
                job_id=ctx.job_id,
                error=str(exc),
                elapsed_ms=round(elapsed, 2),
                exc_info=True,
            )
            return ComponentRun(
                key=self.key.value,
                ok=False,
                error=str(exc) or exc.__class__.__name__,
                execution_time_ms=elapsed,
            )

        elapsed = (time.perf_counter() - start) * 1000
        self.logger.info(
            "Component complete",
            component=self.key.value,
            job_id=ctx.job_id,
            elapsed_ms=round(elapsed, 2),
        )
        return ComponentRun(key=self.key.value, ok=True, data=data, execution_time_ms=elapsed)


# ─────────────────────────────────────────────
# Crawl and local analysis
# ─────────────────────────────────────────────

class CrawlComponent(Component):
    key = ComponentKey.CRAWL
    result_field = "crawl"
    kind = ComponentKind.CRAWL

    async def run(self, ctx: ComponentContext, results: ResultAccumulator) -> CrawlResult:
        return await ctx.crawler.crawl(ctx.site_url, ctx.tier.max_pages, ctx.section_filter)

    def empty(self) -> CrawlResult:
        return CrawlResult()

    def job_updates(self, ctx: ComponentContext, data: CrawlResult) -> dict[str, Any]:
        return {"pages_found": len(data.pages), "sitemap_url_count": data.sitemap_url_count}


class TechnicalIssuesComponent(Component):
    key = ComponentKey.TECHNICAL_ISSUES
    dependencies = (ComponentKey.CRAWL,)
    result_field = "technical_issues"

    async def run(self, ctx, results):
        return TechnicalAnalyzer().analyze(results.pages, results.crawl or CrawlResult())


class InternalLinkingComponent(Component):
    key = ComponentKey.INTERNAL_LINKING
    dependencies = (ComponentKey.CRAWL,)
    result_field = "internal_linking"

    async def run(self, ctx, results):
        return InternalLinkAnalyzer(ctx.settings).analyze(results.pages)


class DuplicateContentComponent(Component):
    key = ComponentKey.DUPLICATE_CONTENT
    dependencies = (ComponentKey.CRAWL,)
    result_field = "duplicate_content"

    async def run(self, ctx, results):
        return DuplicateContentDetector(ctx.settings).analyze(results.pages)


# ─────────────────────────────────────────────
# Keyword data components
# ─────────────────────────────────────────────

class CurrentRankingsComponent(Component):
    key = ComponentKey.CURRENT_RANKINGS
    dependencies = (ComponentKey.CRAWL,)
    result_field = "current_rankings"
    kind = ComponentKind.EXTERNAL
    needs_keyword_data = True

    async def run(self, ctx: ComponentContext, results: ResultAccumulator) -> list[CurrentRanking]:
        self.logger.info("Fetching domain rankings", hostname=ctx.hostname)
        ranked = await ctx.keyword_data.get_ranked_keywords(
            ctx.hostname, limit=100, max_position=100, min_volume=10,
        )
        self.logger.info("Found ranked keywords", count=len(ranked))
        return [
            CurrentRanking(
                url=r.url,
                keyword=r.keyword,
                position=r.position,
                search_volume=r.search_volume,
                estimated_traffic=round_half_up(r.search_volume * ctr_for_position(r.position)),
            )
            for r in ranked
        ]

    def job_updates(self, ctx: ComponentContext, data: list[CurrentRanking]) -> dict[str, Any]:
        return {"is_new_site": not ctx.tier.tier.is_restricted and not data}


class KeywordOpportunitiesComponent(Component):
    key = ComponentKey.KEYWORD_OPPORTUNITIES
    dependencies = (ComponentKey.CURRENT_RANKINGS,)
    result_field = "keyword_opportunities"
    kind = ComponentKind.EXTERNAL
    needs_keyword_data = True

    def empty(self) -> KeywordOpportunitiesResult:
        return KeywordOpportunitiesResult()

    async def run(self, ctx: ComponentContext, results: ResultAccumulator) -> KeywordOpportunitiesResult:
        rankings = results.rankings
        ranked_keywords = {r.keyword.lower() for r in rankings}

        phrases = extract_keyword_phrases(results.pages)
        self.logger.info("Extracted keywords", count=len(phrases))
        metrics = await ctx.keyword_data.get_keyword_metrics(phrases) if phrases else []

        opportunities = sorted(
            (
                Opportunity(
                    keyword=m.keyword,
                    search_volume=m.search_volume,
                    difficulty=m.difficulty,
                    impact_score=impact_score(m.search_volume, m.difficulty),
                    reason="No existing page targets this keyword",
                    source="content_extraction",
                )
                for m in metrics
                if m.keyword.lower() not in ranked_keywords and m.search_volume > LIMITS["min_search_volume"]
            ),
            key=lambda o: o.impact_score,
            reverse=True,
        )[:LIMITS["max_opportunities"]]

        seed_opportunities = await self._expand_seeds(ctx, rankings, ranked_keywords)
        return KeywordOpportunitiesResult(opportunities=opportunities, seed_opportunities=seed_opportunities)

    async def _expand_seeds(
        self,
        ctx: ComponentContext,
        rankings: list[CurrentRanking],
        ranked_keywords: set[str],
    ) -> list[Opportunity]:
        if ctx.tier.max_seeds <= 0:
            return []

        seeds = [
            r.keyword
            for r in sorted(
                (r for r in rankings
                 if r.search_volume > LIMITS["seed_min_volume"] and r.position < LIMITS["seed_max_position"]),
                key=lambda r: r.search_volume,
                reverse=True,
            )[:ctx.tier.max_seeds]
        ]
        if not seeds:
            return []

        self.logger.info("Expanding from seeds", seeds=seeds)

        async def expand(seed: str):
            try:
                return seed, await ctx.keyword_data.get_related_keywords(seed)
            except Exception as exc:
                self.logger.warning("Seed expansion failed", seed=seed, error=str(exc))
                return seed, []

        expansions = await asyncio.gather(*(expand(seed) for seed in seeds))

        seen: set[str] = set()
        found: list[Opportunity] = []
        for seed, related in expansions:
            for kw in related:
                key = kw.keyword.lower()
                if key in ranked_keywords or key in seen:
                    continue
                if kw.search_volume < LIMITS["min_search_volume"]:
                    continue
                seen.add(key)
                found.append(Opportunity(
                    keyword=kw.keyword,
                    search_volume=kw.search_volume,
                    difficulty=kw.difficulty,
                    impact_score=impact_score(kw.search_volume, kw.difficulty),
                    reason=f'Related to "{seed}" which you rank for',
                    source="seed_expansion",
                    is_quick_win=kw.difficulty <= LIMITS["quick_win_max_difficulty"],
                    estimated_traffic=estimate_traffic_gain(kw.search_volume),
                ))

        found.sort(key=lambda o: o.impact_score, reverse=True)
        self.logger.info("Seed expansion complete", count=len(found))
        return found


class CompetitorAnalysisComponent(Component):
    key = ComponentKey.COMPETITOR_ANALYSIS
    dependencies = (ComponentKey.CURRENT_RANKINGS,)
    result_field = "competitor_analysis"
    kind = ComponentKind.EXTERNAL
    needs_keyword_data = True

    def empty(self) -> CompetitorAnalysisResult:
        return CompetitorAnalysisResult()

    async def run(self, ctx: ComponentContext, results: ResultAccumulator) -> CompetitorAnalysisResult:
        if ctx.tier.max_competitors == 0:
            return self.empty()

        discovered = []
        competitor_urls = ctx.competitors[:ctx.tier.max_competitors]

        if not competitor_urls:
            self.logger.info("Auto-discovering competitors", hostname=ctx.hostname)
            discovered = await ctx.keyword_data.discover_competitors(
                ctx.hostname, limit=LIMITS["discover_competitors"],
            )
            competitor_urls = [f"https://{c.domain}" for c in discovered[:ctx.tier.max_competitors]]

        normalized = [u for u in (normalize_competitor_input(c) for c in competitor_urls) if u]
        if not normalized:
            return CompetitorAnalysisResult(discovered_competitors=discovered)

        self.logger.info("Analyzing competitors", competitors=normalized)

        async def fetch(url: str):
            domain = urlparse(url).hostname
            try:
                keywords = await ctx.keyword_data.get_ranked_keywords(
                    domain,
                    limit=200,
                    max_position=30,
                    min_volume=LIMITS["min_search_volume"],
                    max_difficulty=LIMITS["realistic_difficulty"],
                )
                return domain, keywords
            except Exception as exc:
                self.logger.warning("Failed to analyze competitor", competitor=url, error=str(exc))
                return None, []

        fetched = await asyncio.gather(*(fetch(url) for url in normalized))
        rankings_by_keyword = {r.keyword.lower(): r for r in results.rankings}

        gaps: list[CompetitorGap] = []
        gap_opportunities: list[Opportunity] = []

        for domain, keywords in fetched:
            if not domain:
                continue

            gap_keywords: list[GapKeyword] = []
            common_keywords: list[CommonKeyword] = []

            for kw in keywords:
                yours = rankings_by_keyword.get(kw.keyword.lower())
                if yours:
                    common_keywords.append(CommonKeyword(
                        keyword=kw.keyword, your_position=yours.position, their_position=kw.position,
                    ))
                    continue

                score = impact_score(kw.search_volume, kw.difficulty, kw.position)
                gap_keywords.append(GapKeyword(
                    keyword=kw.keyword,
                    search_volume=kw.search_volume,
                    difficulty=kw.difficulty,
                    competitor_position=kw.position,
                    competitor_url=kw.url,
                    score=score,
                ))
                gap_opportunities.append(Opportunity(
                    keyword=kw.keyword,
                    search_volume=kw.search_volume,
                    difficulty=kw.difficulty,
                    impact_score=score,
                    reason=f"{domain} ranks #{kw.position}",
                    source="competitor_gap",
                    competitor_url=kw.url,
                    competitor_position=kw.position,
                    is_quick_win=is_quick_win_opportunity(kw.difficulty, kw.position),
                    estimated_traffic=estimate_traffic_gain(kw.search_volume),
                ))

            gap_keywords.sort(key=lambda g: g.score, reverse=True)
            gaps.append(CompetitorGap(
                competitor=domain,
                total_keywords=len(keywords),
                gap_keywords=gap_keywords[:LIMITS["gap_keywords_per_competitor"]],
                common_keywords=common_keywords[:LIMITS["common_keywords_per_competitor"]],
            ))
            self.logger.info("Competitor analyzed", domain=domain, gaps=len(gap_keywords), common=len(common_keywords))

        return CompetitorAnalysisResult(
            gaps=gaps, gap_opportunities=gap_opportunities, discovered_competitors=discovered,
        )


class CannibalizationComponent(Component):
    key = ComponentKey.CANNIBALIZATION
    dependencies = (ComponentKey.CURRENT_RANKINGS,)
    result_field = "cannibalization"
    kind = ComponentKind.DERIVED

    async def run(self, ctx: ComponentContext, results: ResultAccumulator) -> list[CannibalizationIssue]:
        by_keyword: dict[str, list[CurrentRanking]] = {}
        for ranking in results.rankings:
            by_keyword.setdefault(ranking.keyword.lower(), []).append(ranking)

        pages_by_url = {p.url: p for p in results.pages}
        min_mentions = LIMITS["cannibalization_min_content_mentions"]
        issues: list[CannibalizationIssue] = []

        for keyword, rankings in by_keyword.items():
            urls = list(dict.fromkeys(r.url for r in rankings))
            if len(urls) < 2:
                continue

            pages_info = []
            for url in urls:
                ranking = next(r for r in rankings if r.url == url)
                page = pages_by_url.get(url)
                signals = []
                if page and page.title and count_whole_word_matches(page.title, keyword):
                    signals.append("title")
                if page and page.h1 and count_whole_word_matches(page.h1, keyword):
                    signals.append("h1")
                if page and page.content and count_whole_word_matches(page.content, keyword) >= min_mentions:
                    signals.append("content")
                pages_info.append(CannibalizationPage(url=url, position=ranking.position, signals=signals))

            issues.append(CannibalizationIssue(
                keyword=keyword,
                search_volume=rankings[0].search_volume,
                pages=pages_info,
                severity="high",
            ))

        issues.sort(key=lambda i: i.search_volume, reverse=True)
        return issues[:LIMITS["max_cannibalization_issues"]]


class SnippetOpportunitiesComponent(Component):
    key = ComponentKey.SNIPPET_OPPORTUNITIES
    dependencies = (ComponentKey.CURRENT_RANKINGS, ComponentKey.COMPETITOR_ANALYSIS)
    result_field = "snippet_opportunities"
    kind = ComponentKind.EXTERNAL
    needs_keyword_data = True

    async def _snippets(self, ctx: ComponentContext, keywords: list[str]) -> list:
        fetched = await asyncio.gather(
            *(ctx.keyword_data.get_featured_snippet(k) for k in keywords),
            return_exceptions=True,
        )
        for keyword, result in zip(keywords, fetched):
            if isinstance(result, Exception):
                self.logger.warning("Snippet lookup failed", keyword=keyword, error=str(result))
        return [None if isinstance(r, Exception) else r for r in fetched]

    async def run(self, ctx: ComponentContext, results: ResultAccumulator) -> list[SnippetOpportunity]:
        max_snippets = ctx.tier.max_snippets
        if max_snippets == 0:
            return []

        opportunities: list[SnippetOpportunity] = []

        # ── Keywords we already rank top 10 for ──────
        top_rankings = [r for r in results.rankings if r.position <= 10][
            :min(LIMITS["max_top_rankings_for_snippets"], max_snippets)
        ]
        self.logger.info("Checking snippet opportunities", count=len(top_rankings))

        snippets = await self._snippets(ctx, [r.keyword for r in top_rankings])
        for ranking, snippet in zip(top_rankings, snippets):
            if snippet is None:
                continue
            holder = urlparse(snippet.url).hostname
            if not holder or ctx.hostname in holder:
                continue
            opportunities.append(SnippetOpportunity(
                keyword=ranking.keyword,
                search_volume=ranking.search_volume,
                snippet_type=snippet.type,
                current_holder=snippet.url,
                your_position=ranking.position,
                difficulty=snippet_difficulty(ranking.position),
                snippet_title=snippet.title,
                snippet_content=snippet.content,
            ))

        # ── Competitor gap keywords ──────────────────
        remaining = max_snippets - len(opportunities)
        if remaining > 0:
            gap_keywords = sorted(
                (kw for gap in results.competitor_gaps for kw in gap.gap_keywords),
                key=lambda kw: kw.search_volume,
                reverse=True,
            )[:min(LIMITS["max_gap_snippet_checks"], remaining)]

            snippets = await self._snippets(ctx, [kw.keyword for kw in gap_keywords])
            for gap_kw, snippet in zip(gap_keywords, snippets):
                if snippet is None:
                    continue
                opportunities.append(SnippetOpportunity(
                    keyword=gap_kw.keyword,
                    search_volume=gap_kw.search_volume,
                    snippet_type=snippet.type,
                    current_holder=snippet.url,
                    your_position=None,
                    difficulty="hard",
                    snippet_title=snippet.title,
                    snippet_content=snippet.content,
                ))

        self.logger.info("Found snippet opportunities", count=len(opportunities))
        opportunities.sort(key=lambda s: s.search_volume, reverse=True)
        return opportunities[:max_snippets]


# ─────────────────────────────────────────────
# AI components
# ─────────────────────────────────────────────

class IntentClassificationComponent(Component):
    key = ComponentKey.INTENT_CLASSIFICATION
    dependencies = (ComponentKey.KEYWORD_OPPORTUNITIES, ComponentKey.COMPETITOR_ANALYSIS)
    result_field = "intents"
    kind = ComponentKind.AI
    needs_ai = True

    def empty(self) -> dict[str, str]:
        return {}

    async def run(self, ctx: ComponentContext, results: ResultAccumulator) -> dict[str, str]:
        opportunities = results.opportunities
        if not opportunities:
            return {}
        self.logger.info("Classifying intents for opportunities", count=len(opportunities))
        intents = await ctx.ai.classify_intents([o.keyword for o in opportunities])
        return {keyword.lower(): intent for keyword, intent in intents.items()}


def find_matching_page(keywords: list[str], pages: list[CrawledPage]) -> str | None:
    lowered = [k.lower() for k in keywords]
    for page in pages:
        title = (page.title or "").lower()
        h1 = (page.h1 or "").lower()
        if any(kw in title or kw in h1 for kw in lowered):
            return page.url
    return None


def suggested_action(existing_page: str | None, keywords: list[str], rankings: list[CurrentRanking]) -> str:
    if not existing_page:
        return "create"
    lowered = {k.lower() for k in keywords}
    positions = [r.position for r in rankings if r.keyword.lower() in lowered]
    if not positions:
        return "optimize"
    return "expand" if min(positions) <= 10 else "optimize"


class KeywordClusteringComponent(Component):
    key = ComponentKey.KEYWORD_CLUSTERING
    dependencies = (ComponentKey.INTENT_CLASSIFICATION,)
    result_field = "opportunity_clusters"
    kind = ComponentKind.AI
    needs_ai = True

    async def run(self, ctx: ComponentContext, results: ResultAccumulator) -> list[OpportunityCluster]:
        opportunities = results.opportunities
        if not opportunities:
            return []

        self.logger.info("Creating semantic clusters", count=len(opportunities))
        semantic = await ctx.ai.cluster_keywords([(o.keyword, o.search_volume) for o in opportunities])
        by_keyword = {o.keyword.lower(): o for o in opportunities}

        clusters: list[OpportunityCluster] = []
        for cluster in semantic:
            members = [
                by_keyword[kw.lower()].model_copy(update={"cluster": cluster.topic})
                for kw in cluster.keywords
                if kw.lower() in by_keyword
            ]
            if not members:
                continue

            existing_page = find_matching_page(cluster.keywords, results.pages)
            members.sort(key=lambda o: o.impact_score, reverse=True)
            clusters.append(OpportunityCluster(
                topic=cluster.topic,
                opportunities=members,
                total_volume=sum(o.search_volume for o in members),
                avg_difficulty=round_half_up(sum(o.difficulty for o in members) / len(members)),
                suggested_action=suggested_action(existing_page, cluster.keywords, results.rankings),
                existing_page=existing_page,
            ))

        clusters.sort(key=lambda c: c.total_volume, reverse=True)
        self.logger.info("Clustering complete", count=len(clusters))
        return clusters


class QuickWinsComponent(Component):
    key = ComponentKey.QUICK_WINS
    dependencies = (ComponentKey.CURRENT_RANKINGS,)
    result_field = "quick_wins"
    kind = ComponentKind.AI
    needs_keyword_data = True
    needs_ai = True

    async def _ai_suggestions(self, ctx: ComponentContext, candidate: CurrentRanking, page: CrawledPage, pages):
        try:
            serp = await ctx.keyword_data.get_serp_with_paa(candidate.keyword)
            return await ctx.ai.suggest_quick_win_improvements(QuickWinContext(
                page_url=candidate.url,
                page_title=page.title,
                page_content=page.content,
                keyword=candidate.keyword,
                current_position=candidate.position,
                top_competitors=[s for s in serp.serp if s.position < candidate.position][
                    :LIMITS["top_competitors_for_ai"]
                ],
                related_questions=serp.paa,
                existing_pages=[{"title": p.title, "url": p.url} for p in pages],
            ))
        except Exception as exc:
            self.logger.warning("AI suggestion failed", url=candidate.url, error=str(exc))
            return None

    async def run(self, ctx: ComponentContext, results: ResultAccumulator) -> list[QuickWin]:
        rankings = results.rankings
        if not rankings:
            return []

        pages = results.pages
        pages_by_url = {p.url: p for p in pages}
        candidates = sorted(
            (r for r in rankings if 10 <= r.position <= 30),
            key=lambda r: r.search_volume * AVG_TOP_CTR - r.estimated_traffic,
            reverse=True,
        )[:LIMITS["quick_win_candidates"]]

        ai_candidates = candidates[:LIMITS["ai_quick_wins"]]
        self.logger.info("Generating AI suggestions for quick wins", count=len(ai_candidates))

        async def suggest(candidate: CurrentRanking):
            page = pages_by_url.get(candidate.url)
            if page is None:
                return None
            return await self._ai_suggestions(ctx, candidate, page, pages)

        suggestions = await asyncio.gather(*(suggest(c) for c in ai_candidates))

        quick_wins = [
            QuickWin(
                url=candidate.url,
                keyword=candidate.keyword,
                current_position=candidate.position,
                suggestions=ai.content_gaps[:3] if ai else list(DEFAULT_QUICK_WIN_SUGGESTIONS),
                ai_suggestions=ai,
            )
            for candidate, ai in zip(ai_candidates, suggestions)
        ]
        quick_wins.extend(
            QuickWin(
                url=candidate.url,
                keyword=candidate.keyword,
                current_position=candidate.position,
                suggestions=list(DEFAULT_QUICK_WIN_SUGGESTIONS),
            )
            for candidate in candidates[LIMITS["ai_quick_wins"]:]
        )

        self.logger.info("Quick wins analysis complete", count=len(quick_wins))
        return quick_wins


class BriefsComponent(Component):
    """Marks clusters as ready for on-demand brief generation."""

    key = ComponentKey.BRIEFS
    dependencies = (ComponentKey.KEYWORD_CLUSTERING,)
    result_field = "briefs"
    kind = ComponentKind.AI

    def empty(self) -> BriefsSummary:
        return BriefsSummary()

    async def run(self, ctx: ComponentContext, results: ResultAccumulator) -> BriefsSummary:
        clusters = results.opportunity_clusters or []
        max_briefs = ctx.tier.max_briefs

        recommended = []
        for cluster in clusters[:max_briefs]:
            keywords = [o.keyword for o in cluster.opportunities]
            exclude = [cluster.existing_page] if cluster.existing_page else []
            recommended.append(BriefTopic(
                topic=cluster.topic,
                total_volume=cluster.total_volume,
                suggested_action=cluster.suggested_action,
                keywords=keywords,
                internal_links=suggest_links(
                    keywords[0], results.pages, exclude, limit=LIMITS["brief_link_suggestions"],
                ),
            ))

        self.logger.info(
            "Briefs ready for on-demand generation",
            job_id=ctx.job_id,
            available_clusters=len(clusters),
            max_briefs=max_briefs,
        )
        return BriefsSummary(available_clusters=len(clusters), max_briefs=max_briefs, recommended=recommended)


# ─────────────────────────────────────────────
# Aggregation
# ─────────────────────────────────────────────

ACTION_LIMITS = {
    "max_actions": 10,
    "technical": 3,
    "quick_wins": 3,
    "opportunities": 2,
    "cannibalization": 1,
    "snippets": 1,
}

EFFORT_SCORES = {
    "fix_technical": 90,
    "add_internal_links": 80,
    "optimize_existing": 60,
    "steal_snippet": 50,
    "fix_cannibalization": 40,
    "create_content": 30,
}

EFFORT_LABELS = {
    "fix_technical": "low",
    "add_internal_links": "low",
    "optimize_existing": "medium",
    "steal_snippet": "medium",
    "fix_cannibalization": "medium",
    "create_content": "high",
}


class ActionPlanComponent(Component):
    """Top actions across all findings, ranked by a weighted priority score."""

    key = ComponentKey.ACTION_PLAN
    dependencies = (
        ComponentKey.TECHNICAL_ISSUES,
        ComponentKey.INTERNAL_LINKING,
        ComponentKey.DUPLICATE_CONTENT,
        ComponentKey.QUICK_WINS,
        ComponentKey.KEYWORD_OPPORTUNITIES,
        ComponentKey.CANNIBALIZATION,
        ComponentKey.SNIPPET_OPPORTUNITIES,
    )
    result_field = "action_plan"
    kind = ComponentKind.AGGREGATION

    async def run(self, ctx: ComponentContext, results: ResultAccumulator) -> list[PrioritizedAction]:
        actions = self._technical(results) + self._linking(results)
        if not ctx.tier.tier.is_restricted:
            actions += (
                self._quick_wins(results)
                + self._opportunities(results)
                + self._cannibalization(results)
                + self._snippets(results)
            )

        actions.sort(key=lambda a: a.priority, reverse=True)
        plan = actions[:ACTION_LIMITS["max_actions"]]
        self.logger.info("Action plan generated", count=len(plan))
        return plan

    @staticmethod
    def _action(action_type: str, index: int, priority: int, category: str, **fields) -> PrioritizedAction:
        return PrioritizedAction(
            id=f"{action_type}-{index}",
            priority=priority,
            type=action_type,
            effort=EFFORT_LABELS[action_type],
            category=category,
            **fields,
        )

    def _technical(self, results: ResultAccumulator) -> list[PrioritizedAction]:
        high = [i for i in results.all_technical_issues if i.severity == Severity.HIGH]
        priority = calculate_priority(50, 80, 80, EFFORT_SCORES["fix_technical"])
        return [
            self._action(
                "fix_technical", idx, priority, "technical",
                title=f"Fix: {issue.issue}",
                description=f"High severity technical issue on {issue.url}",
                url=issue.url,
            )
            for idx, issue in enumerate(high[:ACTION_LIMITS["technical"]])
        ]

    def _linking(self, results: ResultAccumulator) -> list[PrioritizedAction]:
        orphans = results.internal_linking.orphan_pages if results.internal_linking else []
        if not orphans:
            return []
        return [self._action(
            "add_internal_links", 0, calculate_priority(40, 60, 70, EFFORT_SCORES["add_internal_links"]), "linking",
            title=f"Fix {len(orphans)} orphan pages",
            description="Add internal links to pages with no incoming links",
        )]

    def _quick_wins(self, results: ResultAccumulator) -> list[PrioritizedAction]:
        actions = []
        for idx, qw in enumerate((results.quick_wins or [])[:ACTION_LIMITS["quick_wins"]]):
            position_score = normalize_score(30 - qw.current_position, 20)
            first = qw.suggestions[0] if qw.suggestions else "Improve content"
            actions.append(self._action(
                "optimize_existing", idx,
                calculate_priority(60, position_score, 60, EFFORT_SCORES["optimize_existing"]),
                "optimization",
                title=f'Optimize "{qw.keyword}"',
                description=f"Position {qw.current_position} - {first}",
                url=qw.url,
                keyword=qw.keyword,
            ))
        return actions

    def _opportunities(self, results: ResultAccumulator) -> list[PrioritizedAction]:
        top = sorted(results.opportunities, key=lambda o: o.impact_score, reverse=True)
        actions = []
        for idx, opp in enumerate(top[:ACTION_LIMITS["opportunities"]]):
            actions.append(self._action(
                "create_content", idx,
                calculate_priority(
                    normalize_score(opp.search_volume, 10000), 50, 100 - opp.difficulty,
                    EFFORT_SCORES["create_content"],
                ),
                "content",
                title=f'Create content for "{opp.keyword}"',
                description=f"{opp.search_volume:,} monthly searches, {opp.difficulty:g}% difficulty",
                keyword=opp.keyword,
                estimated_impact=EstimatedImpact(
                    search_volume=opp.search_volume, traffic_gain=opp.estimated_traffic,
                ),
            ))
        return actions

    def _cannibalization(self, results: ResultAccumulator) -> list[PrioritizedAction]:
        high = [i for i in (results.cannibalization or []) if i.severity == "high"]
        return [
            self._action(
                "fix_cannibalization", idx,
                calculate_priority(
                    normalize_score(issue.search_volume, 5000), 70, 60, EFFORT_SCORES["fix_cannibalization"],
                ),
                "optimization",
                title=f'Fix cannibalization for "{issue.keyword}"',
                description=f"{len(issue.pages)} pages competing - consolidate or differentiate",
                keyword=issue.keyword,
                estimated_impact=EstimatedImpact(search_volume=issue.search_volume),
            )
            for idx, issue in enumerate(high[:ACTION_LIMITS["cannibalization"]])
        ]

    def _snippets(self, results: ResultAccumulator) -> list[PrioritizedAction]:
        easy = [s for s in (results.snippet_opportunities or []) if s.difficulty == "easy"]
        return [
            self._action(
                "steal_snippet", idx,
                calculate_priority(
                    normalize_score(snippet.search_volume, 5000), 80, 90, EFFORT_SCORES["steal_snippet"],
                ),
                "optimization",
                title=f'Capture "{snippet.keyword}" snippet',
                description=f"{snippet.snippet_type} snippet - {snippet.search_volume:,} searches",
                keyword=snippet.keyword,
                estimated_impact=EstimatedImpact(search_volume=snippet.search_volume),
            )
            for idx, snippet in enumerate(easy[:ACTION_LIMITS["snippets"]])
        ]


# ─────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────

def build_registry() -> dict[str, Component]:
    components = [
        CrawlComponent(),
        TechnicalIssuesComponent(),
        InternalLinkingComponent(),
        DuplicateContentComponent(),
        CurrentRankingsComponent(),
        KeywordOpportunitiesComponent(),
        CompetitorAnalysisComponent(),
        CannibalizationComponent(),
        SnippetOpportunitiesComponent(),
        IntentClassificationComponent(),
        KeywordClusteringComponent(),
        QuickWinsComponent(),
        BriefsComponent(),
        ActionPlanComponent(),
    ]
    return {c.key.value: c for c in components}


_REGISTRY = build_registry()

COMPONENT_DEPENDENCIES: dict[str, list[str]] = {
    key: [d.value for d in component.dependencies] for key, component in _REGISTRY.items()
}

# Accumulator field each component writes
RESULT_FIELDS: dict[str, str] = {key: component.result_field for key, component in _REGISTRY.items()}

ALL_COMPONENTS: list[str] = list(COMPONENT_DEPENDENCIES)

# Components that only need the crawl; stale recovery keeps those with stored output
LOCAL_COMPONENTS: list[str] = [
    ComponentKey.CRAWL.value,
    ComponentKey.TECHNICAL_ISSUES.value,
    ComponentKey.INTERNAL_LINKING.value,
    ComponentKey.DUPLICATE_CONTENT.value,
]
