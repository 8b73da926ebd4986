"""
Retry sweep for audits with failed components.

Runs every RETRY_SWEEP_INTERVAL_SECONDS (Celery beat) and:
1. Recovers jobs stuck in crawling/analyzing (worker crash) into retrying
2. Processes every due retrying job, escalating in order:
   hard timeout → delay notice → support alert → advance
3. Clears retry markers left on expired terminal jobs
4. Re-sends completion notifications that never went out
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

import structlog
from pydantic import BaseModel

from site_audit.core.config import Settings, get_settings
from site_audit.core.errors import JobFatalError, JobTimeoutError
from site_audit.pipeline.components import ALL_COMPONENTS, LOCAL_COMPONENTS, RESULT_FIELDS
from site_audit.pipeline.interfaces import JobStore, NotificationKind
from site_audit.pipeline.models import AuditJob, JobStatus, Progress, utcnow
from site_audit.pipeline.runner import AuditRunner, job_payload

logger = structlog.get_logger(__name__)


class SweepSummary(BaseModel):
    recovered: int = 0
    processed: int = 0
    completed: int = 0
    failed: int = 0
    rescheduled: int = 0
    expired: int = 0
    notified: int = 0


class RetrySweeper:
    def __init__(
        self,
        store: JobStore,
        runner: AuditRunner,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.runner = runner
        self.scheduler = runner.scheduler
        self.settings = settings or get_settings()
        self.clock = clock

    async def sweep(self) -> SweepSummary:
        summary = SweepSummary()
        summary.recovered = await self.recover_stale_jobs()

        for job in await self.store.list_due_retries(self.clock()):
            summary.processed += 1
            try:
                status = await self.process(job)
            except Exception as exc:
                logger.error("Retry processing failed", job_id=job.id, error=str(exc), exc_info=True)
                continue
            if status == JobStatus.COMPLETED:
                summary.completed += 1
            elif status == JobStatus.FAILED:
                summary.failed += 1
            else:
                summary.rescheduled += 1

        summary.expired = await self.handle_expired_jobs()
        summary.notified = await self.resend_completion_notifications()

        logger.info("Retry sweep finished", **summary.model_dump())
        return summary

    # ─────────────────────────────────────────────
    # Stale job recovery
    # ─────────────────────────────────────────────

    async def recover_stale_jobs(self) -> int:
        now = self.clock()
        before = now - timedelta(seconds=self.settings.JOB_STALE_THRESHOLD_SECONDS)
        recovered = 0

        for job in await self.store.list_stale_jobs(before):
            fields: dict = {"retry_after": now}
            if job.progress is None:
                fields["progress"] = Progress.seed(ALL_COMPONENTS, self.recovered_components(job))

            logger.warning(
                "Recovering stale job",
                job_id=job.id,
                status=job.status.value,
                updated_at=job.updated_at.isoformat(),
            )
            await self.runner.transition(job, JobStatus.RETRYING, **fields)
            recovered += 1

        return recovered

    def recovered_components(self, job: AuditJob) -> list[str]:
        """Local components whose output is already in the accumulator.

        Nothing counts as done without crawled pages, so an empty accumulator
        re-runs the crawl instead of completing an audit of zero pages.
        """
        if job.status != JobStatus.ANALYZING or not job.results.pages:
            return []
        return [
            key
            for key in LOCAL_COMPONENTS
            if getattr(job.results, RESULT_FIELDS[key]) is not None
        ]

    # ─────────────────────────────────────────────
    # Due retries
    # ─────────────────────────────────────────────

    async def process(self, job: AuditJob) -> JobStatus:
        now = self.clock()
        log = logger.bind(job_id=job.id)
        age = now - job.created_at
        max_window = timedelta(seconds=self.settings.RETRY_MAX_WINDOW_SECONDS)

        # ── Hard timeout ─────────────────────────────
        if age > max_window:
            error = str(JobTimeoutError(
                f"Audit did not complete within {self.settings.RETRY_MAX_WINDOW_SECONDS // 3600}h of retries"
            ))
            log.warning("Audit timed out", age_seconds=int(age.total_seconds()))
            await self.runner.safe_notify(
                NotificationKind.FAILURE,
                job_payload(job, error=error, failing_components=self._failing(job)),
            )
            await self.runner.transition(job, JobStatus.FAILED, error=error, retry_after=None)
            return JobStatus.FAILED

        # ── Delay notice ─────────────────────────────
        delay_after = timedelta(seconds=self.settings.RETRY_DELAY_NOTICE_AFTER_SECONDS)
        if age > delay_after and job.delay_notice_sent_at is None:
            if await self.runner.safe_notify(NotificationKind.DELAY_NOTICE, job_payload(job)):
                job = await self.store.save_job(job.id, {"delay_notice_sent_at": self.clock()})

        # ── Support alert ────────────────────────────
        retry_count = job.progress.retry_count if job.progress else 0
        if retry_count >= self.settings.RETRY_SUPPORT_ALERT_AFTER and job.support_alert_sent_at is None:
            sent = await self.runner.safe_notify(
                NotificationKind.SUPPORT_ALERT,
                job_payload(job, retry_count=retry_count, failing_components=self._failing(job)),
            )
            if sent:
                job = await self.store.save_job(job.id, {"support_alert_sent_at": self.clock()})

        # ── Advance ──────────────────────────────────
        job = await self.runner.transition(job, JobStatus.ANALYZING)
        try:
            outcome = await self.scheduler.advance(job.id)
        except JobFatalError as exc:
            log.error("Audit failed during retry", error=str(exc))
            await self.runner.fail(job.id, str(exc))
            return JobStatus.FAILED

        if outcome.all_done:
            await self.runner.complete(job.id)
            return JobStatus.COMPLETED

        job = await self.store.load_job(job.id)
        progress = job.progress.model_copy(deep=True) if job.progress else Progress.seed(ALL_COMPONENTS)
        marked = progress.mark_for_retry(self.clock())
        log.info("Components still failing", components=marked, retry_count=progress.retry_count)
        await self.runner.schedule_retry(job.id, progress=progress)
        return JobStatus.RETRYING

    @staticmethod
    def _failing(job: AuditJob) -> dict[str, str | None]:
        return job.progress.failing() if job.progress else {}

    # ─────────────────────────────────────────────
    # Housekeeping
    # ─────────────────────────────────────────────

    async def handle_expired_jobs(self) -> int:
        before = self.clock() - timedelta(seconds=self.settings.RETRY_MAX_WINDOW_SECONDS)
        expired = await self.store.list_expired_jobs(before)
        for job in expired:
            await self.store.save_job(job.id, {"retry_after": None})
        if expired:
            logger.info("Cleared retry markers on expired audits", count=len(expired))
        return len(expired)

    async def resend_completion_notifications(self) -> int:
        sent = 0
        for job in await self.store.list_unnotified_completed(self.settings.RETRY_NOTIFY_BATCH):
            payload = job_payload(
                job,
                health_score=job.health_score.score if job.health_score else None,
                grade=job.health_score.grade if job.health_score else None,
            )
            if await self.runner.safe_notify(NotificationKind.COMPLETED, payload):
                await self.store.save_job(job.id, {"completion_notified_at": self.clock()})
                sent += 1
        return sent
