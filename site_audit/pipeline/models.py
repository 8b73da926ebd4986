"""
Pipeline state models: component progress, job status machine and the job record.

Progress and results are persisted with the job after every transition, so a
crash between "running" and "completed" is observed as a running component and
recovered by the stale sweep.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, Field

from site_audit.core.errors import InvalidTransitionError
from site_audit.core.tiers import Tier
from site_audit.engines.scoring.engine import HealthScore
from site_audit.pipeline.results import ResultAccumulator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def component_id(key: str | Enum) -> str:
    """Plain string key for a component, whether given as a ComponentKey or its value."""
    return key.value if isinstance(key, Enum) else key


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class ComponentKey(str, Enum):
    CRAWL = "crawl"
    TECHNICAL_ISSUES = "technicalIssues"
    INTERNAL_LINKING = "internalLinking"
    DUPLICATE_CONTENT = "duplicateContent"
    CURRENT_RANKINGS = "currentRankings"
    KEYWORD_OPPORTUNITIES = "keywordOpportunities"
    COMPETITOR_ANALYSIS = "competitorAnalysis"
    CANNIBALIZATION = "cannibalization"
    SNIPPET_OPPORTUNITIES = "snippetOpportunities"
    INTENT_CLASSIFICATION = "intentClassification"
    KEYWORD_CLUSTERING = "keywordClustering"
    QUICK_WINS = "quickWins"
    BRIEFS = "briefs"
    ACTION_PLAN = "actionPlan"


class ComponentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


# Statuses a component may be (re)started from
RUNNABLE_STATUSES = frozenset({ComponentStatus.PENDING, ComponentStatus.FAILED, ComponentStatus.RETRYING})


class JobStatus(str, Enum):
    CREATED = "created"
    CRAWLING = "crawling"
    ANALYZING = "analyzing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.CREATED: frozenset({JobStatus.CRAWLING}),
    JobStatus.CRAWLING: frozenset({JobStatus.ANALYZING, JobStatus.FAILED, JobStatus.RETRYING}),
    JobStatus.ANALYZING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.RETRYING}),
    JobStatus.RETRYING: frozenset({JobStatus.ANALYZING, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


def check_transition(current: JobStatus, target: JobStatus) -> JobStatus:
    """Return the target status, or raise if the state machine forbids the move."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)
    return target


# ─────────────────────────────────────────────
# Progress
# ─────────────────────────────────────────────

class ComponentProgress(BaseModel):
    status: ComponentStatus = ComponentStatus.PENDING
    retry_count: int = 0
    last_retry_at: datetime | None = None
    last_error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class Progress(BaseModel):
    components: dict[str, ComponentProgress] = Field(default_factory=dict)
    retry_count: int = 0
    last_retry_at: datetime | None = None

    @classmethod
    def seed(cls, keys: Iterable[str], completed: Iterable[str] = ()) -> Progress:
        done = {component_id(k) for k in completed}
        components = {}
        for k in keys:
            key = component_id(k)
            status = ComponentStatus.COMPLETED if key in done else ComponentStatus.PENDING
            components[key] = ComponentProgress(status=status)
        return cls(components=components)

    def get(self, key: str) -> ComponentProgress:
        return self.components.setdefault(component_id(key), ComponentProgress())

    def status_of(self, key: str) -> ComponentStatus:
        entry = self.components.get(component_id(key))
        return entry.status if entry else ComponentStatus.PENDING

    def all_completed(self, keys: Iterable[str]) -> bool:
        return all(self.status_of(k) == ComponentStatus.COMPLETED for k in keys)

    def failing(self) -> dict[str, str | None]:
        """Failed or retrying components with their last error."""
        return {
            key: entry.last_error
            for key, entry in self.components.items()
            if entry.status in (ComponentStatus.FAILED, ComponentStatus.RETRYING)
        }

    def mark_for_retry(self, now: datetime) -> list[str]:
        """Move failed components to retrying and bump the job-level retry counter."""
        marked = []
        for key, entry in self.components.items():
            if entry.status == ComponentStatus.FAILED:
                entry.status = ComponentStatus.RETRYING
                marked.append(key)
        self.retry_count += 1
        self.last_retry_at = now
        return marked


# ─────────────────────────────────────────────
# Job
# ─────────────────────────────────────────────

class AuditJob(BaseModel):
    id: str
    site_url: str
    tier: Tier = Tier.FREE
    status: JobStatus = JobStatus.CREATED
    progress: Progress | None = None
    results: ResultAccumulator = Field(default_factory=ResultAccumulator)

    competitors: list[str] = Field(default_factory=list)
    section_filter: list[str] | None = None
    product_description: str | None = None

    pages_found: int = 0
    sitemap_url_count: int = 0
    is_new_site: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    retry_after: datetime | None = None
    delay_notice_sent_at: datetime | None = None
    support_alert_sent_at: datetime | None = None
    completion_notified_at: datetime | None = None

    health_score: HealthScore | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AdvanceOutcome(BaseModel):
    ran: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    all_done: bool = False
