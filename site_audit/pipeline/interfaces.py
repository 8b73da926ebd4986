"""
Collaborator interfaces for the pipeline.

The scheduler, runner and sweep only talk to these protocols. Concrete
adapters live in site_audit.store (persistence), site_audit.core.redis
(notifications) and site_audit.workers (Celery retry scheduling).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from site_audit.pipeline.models import AuditJob
from site_audit.pipeline.results import DiscoveredCompetitor, QuickWinSuggestions


# ─────────────────────────────────────────────
# Provider data types
# ─────────────────────────────────────────────

class RankedKeyword(BaseModel):
    keyword: str
    position: int
    url: str
    search_volume: int
    difficulty: float = 0.0


class KeywordMetrics(BaseModel):
    keyword: str
    search_volume: int
    difficulty: float
    cpc: float = 0.0
    competition: float = 0.0


class RelatedKeyword(BaseModel):
    keyword: str
    search_volume: int
    difficulty: float


class FeaturedSnippet(BaseModel):
    type: Literal["paragraph", "list", "table", "video"]
    url: str
    title: str = ""
    content: str = ""


class SerpResult(BaseModel):
    position: int
    url: str
    title: str = ""
    description: str = ""


class SerpWithPaa(BaseModel):
    serp: list[SerpResult] = Field(default_factory=list)
    paa: list[str] = Field(default_factory=list)


class SemanticCluster(BaseModel):
    topic: str
    keywords: list[str]


class QuickWinContext(BaseModel):
    """Everything the AI provider needs to suggest improvements for one ranking page."""
    page_url: str
    page_title: str | None = None
    page_content: str | None = None
    keyword: str
    current_position: int
    top_competitors: list[SerpResult] = Field(default_factory=list)
    related_questions: list[str] = Field(default_factory=list)
    existing_pages: list[dict[str, str | None]] = Field(default_factory=list)


# ─────────────────────────────────────────────
# Protocols
# ─────────────────────────────────────────────

@runtime_checkable
class JobStore(Protocol):
    async def create_job(self, job: AuditJob) -> AuditJob: ...

    async def load_job(self, job_id: str) -> AuditJob: ...

    async def save_job(self, job_id: str, patch: dict[str, Any]) -> AuditJob:
        """Apply a partial update atomically and return the stored job."""
        ...

    async def list_due_retries(self, now: datetime) -> list[AuditJob]: ...

    async def list_stale_jobs(self, before: datetime) -> list[AuditJob]: ...

    async def list_expired_jobs(self, before: datetime) -> list[AuditJob]: ...

    async def list_unnotified_completed(self, limit: int) -> list[AuditJob]: ...


class KeywordDataProvider(Protocol):
    async def get_ranked_keywords(
        self,
        domain: str,
        limit: int,
        max_position: int,
        min_volume: int,
        max_difficulty: float | None = None,
    ) -> list[RankedKeyword]: ...

    async def get_keyword_metrics(self, keywords: list[str]) -> list[KeywordMetrics]: ...

    async def get_related_keywords(self, seed: str) -> list[RelatedKeyword]: ...

    async def discover_competitors(self, domain: str, limit: int) -> list[DiscoveredCompetitor]: ...

    async def get_featured_snippet(self, keyword: str) -> FeaturedSnippet | None: ...

    async def get_serp_with_paa(self, keyword: str) -> SerpWithPaa: ...


class AIProvider(Protocol):
    async def classify_intents(self, keywords: list[str]) -> dict[str, str]:
        """Map lowercase keyword to search intent."""
        ...

    async def cluster_keywords(self, keywords: list[tuple[str, int]]) -> list[SemanticCluster]: ...

    async def suggest_quick_win_improvements(self, context: QuickWinContext) -> QuickWinSuggestions: ...


class NotificationKind(str, Enum):
    DELAY_NOTICE = "delay_notice"
    SUPPORT_ALERT = "support_alert"
    FAILURE = "failure"
    COMPLETED = "completed"


class Notifier(Protocol):
    async def notify(self, kind: NotificationKind, payload: dict[str, Any]) -> None: ...


class RetryScheduler(Protocol):
    async def schedule_retry(self, job_id: str, at: datetime) -> None: ...
