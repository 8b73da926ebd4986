"""
Component Dependency Scheduler

advance(job_id) runs every component whose dependencies are complete, in
waves, until nothing new becomes ready:

1. Stale sweep: running components older than the stale threshold are failed
2. Ready set: pending / failed / retrying components with all deps completed,
   excluding anything already attempted during this call
3. Each wave runs concurrently; state changes are serialized by one lock and
   persisted before they count

The scheduler is re-entrant: the initial run and every retry sweep call it on
the same persisted state, and completed components are never re-run.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Collection

import structlog

from site_audit.core.config import Settings, get_settings
from site_audit.core.errors import JobFatalError
from site_audit.core.tiers import get_tier_config
from site_audit.engines.crawler.engine import CrawlerEngine
from site_audit.pipeline.components import Component, ComponentContext, build_registry
from site_audit.pipeline.interfaces import AIProvider, JobStore, KeywordDataProvider
from site_audit.pipeline.models import (
    RUNNABLE_STATUSES,
    AdvanceOutcome,
    AuditJob,
    ComponentStatus,
    Progress,
    utcnow,
)

logger = structlog.get_logger(__name__)

STALE_ERROR = "Component timed out (stale)"


class PipelineScheduler:
    def __init__(
        self,
        store: JobStore,
        crawler: CrawlerEngine | None = None,
        keyword_data: KeywordDataProvider | None = None,
        ai: AIProvider | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        registry: dict[str, Component] | None = None,
        dependencies: dict[str, list[str]] | None = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.crawler = crawler or CrawlerEngine(self.settings)
        self.keyword_data = keyword_data
        self.ai = ai
        self.clock = clock
        self.registry = registry if registry is not None else build_registry()
        self.dependencies = dependencies if dependencies is not None else {
            key: [d.value for d in component.dependencies] for key, component in self.registry.items()
        }

    def context_for(self, job: AuditJob) -> ComponentContext:
        return ComponentContext(
            job_id=job.id,
            site_url=job.site_url,
            tier=get_tier_config(job.tier, job.is_new_site),
            crawler=self.crawler,
            settings=self.settings,
            competitors=list(job.competitors),
            section_filter=job.section_filter,
            product_description=job.product_description,
            keyword_data=self.keyword_data,
            ai=self.ai,
        )

    def ready_components(
        self,
        progress: Progress,
        attempted: set[str],
        only: Collection[str] | None = None,
    ) -> list[str]:
        return [
            key
            for key, deps in self.dependencies.items()
            if key not in attempted
            and (only is None or key in only)
            and progress.status_of(key) in RUNNABLE_STATUSES
            and progress.all_completed(deps)
        ]

    async def advance(self, job_id: str, only: Collection[str] | None = None) -> AdvanceOutcome:
        """
        Run ready components in waves until nothing new becomes ready.

        `only` restricts which components may start in this call; the initial
        run uses it to finish the crawl before the job moves to analyzing.
        """
        job = await self.store.load_job(job_id)
        log = logger.bind(job_id=job_id)

        progress = job.progress.model_copy(deep=True) if job.progress else Progress()
        for key in self.dependencies:
            progress.get(key)
        results = job.results.model_copy(deep=True)
        lock = asyncio.Lock()

        async def persist(extra: dict[str, Any] | None = None) -> None:
            patch: dict[str, Any] = {"progress": progress.model_copy(deep=True), "results": results}
            if extra:
                patch.update(extra)
            await self.store.save_job(job_id, patch)

        # ── Stale sweep ──────────────────────────────
        now = self.clock()
        threshold = timedelta(seconds=self.settings.COMPONENT_STALE_THRESHOLD_SECONDS)
        stale = [
            key
            for key, entry in progress.components.items()
            if entry.status == ComponentStatus.RUNNING
            and (entry.started_at is None or now - entry.started_at > threshold)
        ]
        for key in stale:
            entry = progress.get(key)
            entry.status = ComponentStatus.FAILED
            entry.last_error = STALE_ERROR
        if stale:
            log.warning("Stale components failed", components=stale)
        await persist()

        # ── Waves ────────────────────────────────────
        attempted: set[str] = set()
        ran: list[str] = []
        failed: list[str] = []

        async def run_component(key: str, ctx: ComponentContext) -> None:
            nonlocal job
            component = self.registry[key]

            async with lock:
                entry = progress.get(key)
                started = self.clock()
                if entry.status in (ComponentStatus.FAILED, ComponentStatus.RETRYING):
                    entry.retry_count += 1
                    entry.last_retry_at = started
                entry.status = ComponentStatus.RUNNING
                entry.started_at = started
                entry.completed_at = None
                await persist()

            try:
                run = await component.execute(ctx, results)
            except JobFatalError as exc:
                async with lock:
                    entry.status = ComponentStatus.FAILED
                    entry.last_error = str(exc)
                    failed.append(key)
                    await persist({"error": str(exc)})
                raise

            async with lock:
                ran.append(key)
                extra: dict[str, Any] = {}
                if run.ok:
                    for name, value in component.store(run.data).items():
                        setattr(results, name, value)
                    extra = component.job_updates(ctx, run.data)
                    if extra:
                        job = job.model_copy(update=extra)
                    entry.status = ComponentStatus.COMPLETED
                    entry.completed_at = self.clock()
                    entry.last_error = None
                else:
                    entry.status = ComponentStatus.FAILED
                    entry.last_error = run.error
                    failed.append(key)
                await persist(extra)

        while True:
            ready = self.ready_components(progress, attempted, only)
            if not ready:
                break
            attempted.update(ready)
            log.info("Running component wave", components=ready)

            ctx = self.context_for(job)
            outcomes = await asyncio.gather(
                *(run_component(key, ctx) for key in ready),
                return_exceptions=True,
            )
            errors = [o for o in outcomes if isinstance(o, BaseException)]
            fatal = next((e for e in errors if isinstance(e, JobFatalError)), None)
            if fatal is not None:
                raise fatal
            if errors:
                raise errors[0]

        outcome = AdvanceOutcome(
            ran=ran,
            failed=failed,
            all_done=progress.all_completed(self.dependencies),
        )
        log.info("Advance finished", ran=len(ran), failed=failed, all_done=outcome.all_done)
        return outcome