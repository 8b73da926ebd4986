"""
Audit runner: initial run of a job and the shared completion / failure paths.

Initial run:
    created → crawling → (crawl) → analyzing → (advance) → completed | retrying
A crawl that yields zero pages fails the job outright.

Notification failures are logged and never change the job outcome; the
corresponding *_sent_at / *_notified_at marker is only written on success.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable

import structlog

from site_audit.core.config import Settings, get_settings
from site_audit.core.errors import JobFatalError
from site_audit.engines.scoring.engine import HealthScorer
from site_audit.pipeline.components import ALL_COMPONENTS
from site_audit.pipeline.interfaces import JobStore, NotificationKind, Notifier, RetryScheduler
from site_audit.pipeline.models import (
    AuditJob,
    ComponentKey,
    ComponentStatus,
    JobStatus,
    Progress,
    check_transition,
    utcnow,
)
from site_audit.pipeline.scheduler import PipelineScheduler

logger = structlog.get_logger(__name__)

CRAWL_PHASE = frozenset({ComponentKey.CRAWL.value})


def job_payload(job: AuditJob, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "job_id": job.id,
        "site_url": job.site_url,
        "tier": job.tier.value,
        "status": job.status.value,
    }
    payload.update(extra)
    return payload


class AuditRunner:
    def __init__(
        self,
        store: JobStore,
        scheduler: PipelineScheduler,
        notifier: Notifier | None = None,
        retry_scheduler: RetryScheduler | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        scorer: HealthScorer | None = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.notifier = notifier
        self.retry_scheduler = retry_scheduler
        self.settings = settings or get_settings()
        self.clock = clock
        self.scorer = scorer or HealthScorer()

    async def transition(self, job: AuditJob, target: JobStatus, **fields: Any) -> AuditJob:
        check_transition(job.status, target)
        logger.info("Job status transition", job_id=job.id, current=job.status.value, target=target.value)
        return await self.store.save_job(job.id, {"status": target, **fields})

    async def safe_notify(self, kind: NotificationKind, payload: dict[str, Any]) -> bool:
        if self.notifier is None:
            logger.warning("No notifier configured", kind=kind.value, job_id=payload.get("job_id"))
            return False
        try:
            await self.notifier.notify(kind, payload)
            return True
        except Exception as exc:
            logger.error(
                "Notification failed",
                kind=kind.value,
                job_id=payload.get("job_id"),
                error=str(exc),
                exc_info=True,
            )
            return False

    # ─────────────────────────────────────────────
    # Initial run
    # ─────────────────────────────────────────────

    async def run(self, job_id: str) -> AuditJob:
        log = logger.bind(job_id=job_id)
        job = await self.store.load_job(job_id)
        log.info("Audit starting", site_url=job.site_url, tier=job.tier.value)

        job = await self.transition(job, JobStatus.CRAWLING, progress=Progress.seed(ALL_COMPONENTS))

        try:
            # Only the crawl runs while the job is crawling
            outcome = await self.scheduler.advance(job_id, only=CRAWL_PHASE)
            job = await self.store.load_job(job_id)

            if job.progress.status_of(ComponentKey.CRAWL.value) == ComponentStatus.COMPLETED:
                job = await self.transition(job, JobStatus.ANALYZING)
                outcome = await self.scheduler.advance(job_id)
        except JobFatalError as exc:
            log.error("Audit failed", error=str(exc))
            await self.fail(job_id, str(exc))
            raise

        if outcome.all_done:
            return await self.complete(job_id)
        return await self.schedule_retry(job_id)

    async def schedule_retry(self, job_id: str, progress: Progress | None = None) -> AuditJob:
        job = await self.store.load_job(job_id)
        retry_after = self.clock() + timedelta(seconds=self.settings.RETRY_INTERVAL_SECONDS)
        fields: dict[str, Any] = {"retry_after": retry_after}
        if progress is not None:
            fields["progress"] = progress
        job = await self.transition(job, JobStatus.RETRYING, **fields)

        failing = job.progress.failing() if job.progress else {}
        logger.info("Retry scheduled", job_id=job_id, retry_after=retry_after.isoformat(), failing=list(failing))

        if self.retry_scheduler is not None:
            try:
                await self.retry_scheduler.schedule_retry(job_id, retry_after)
            except Exception as exc:
                # The periodic sweep still picks the job up once retry_after passes
                logger.error("Failed to enqueue retry", job_id=job_id, error=str(exc))
        return job

    # ─────────────────────────────────────────────
    # Terminal paths
    # ─────────────────────────────────────────────

    async def complete(self, job_id: str) -> AuditJob:
        job = await self.store.load_job(job_id)
        now = self.clock()

        results = job.results.model_copy(update={"final_opportunities": job.results.finalize_opportunities()})
        health = self.scorer.score(
            results.scoring_input(),
            page_count=job.pages_found or len(results.pages),
            restricted=job.tier.is_restricted,
            is_new_site=job.is_new_site,
        )

        job = await self.transition(
            job,
            JobStatus.COMPLETED,
            results=results,
            health_score=health,
            completed_at=now,
            retry_after=None,
        )
        logger.info("Audit completed", job_id=job_id, score=health.score, grade=health.grade)

        if await self.safe_notify(
            NotificationKind.COMPLETED,
            job_payload(job, health_score=health.score, grade=health.grade),
        ):
            job = await self.store.save_job(job_id, {"completion_notified_at": self.clock()})
        return job

    async def fail(self, job_id: str, error: str) -> AuditJob:
        job = await self.store.load_job(job_id)
        job = await self.transition(job, JobStatus.FAILED, error=error, retry_after=None)
        await self.safe_notify(NotificationKind.FAILURE, job_payload(job, error=error))
        return job
