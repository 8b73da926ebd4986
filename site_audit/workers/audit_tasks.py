"""
Audit Tasks - Celery task definitions driving the audit pipeline.

Flow:
1. run_audit()       → crawl + first advance; completes or schedules a retry
2. retry_audit()     → fired at retry_after for a single job (eta task)
3. sweep_retries()   → beat task; stale recovery, due retries, housekeeping

Error handling:
- Component failures never fail a task; they are retried by the sweep
- Job-fatal errors are persisted on the job before the task returns
- A lost retry_audit message is harmless: the sweep picks the job up anyway
"""

from __future__ import annotations

import asyncio
import importlib
from datetime import datetime
from typing import Any

import structlog

from site_audit.core.config import Settings, get_settings
from site_audit.core.database import get_engine
from site_audit.core.errors import JobFatalError
from site_audit.core.logging import job_log_context
from site_audit.core.redis import RedisNotifier, close_redis_pool
from site_audit.engines.crawler.engine import CrawlerEngine
from site_audit.pipeline.models import JobStatus
from site_audit.pipeline.retry import RetrySweeper
from site_audit.pipeline.runner import AuditRunner
from site_audit.pipeline.scheduler import PipelineScheduler
from site_audit.store.sql import SqlAlchemyJobStore
from site_audit.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)
settings = get_settings()


def run_async(coro):
    """Run an async coroutine in a Celery (sync) task context."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _release_connections() -> None:
    # Pooled connections belong to the loop run_async is about to close
    await get_engine().dispose()
    await close_redis_pool()


# ─────────────────────────────────────────────
# Providers
# ─────────────────────────────────────────────

def load_provider(path: str) -> Any | None:
    """
    Build an external provider from a "package.module:attribute" path.
    The attribute is called if it is callable (class or factory function).
    An empty path means the provider is not configured.
    """
    if not path:
        return None
    module_name, _, attribute = path.partition(":")
    if not attribute:
        raise ValueError(f"Provider path must look like 'package.module:attribute', got {path!r}")
    target = getattr(importlib.import_module(module_name), attribute)
    return target() if callable(target) else target


class CeleryRetryScheduler:
    """Enqueues retry_audit to fire when a job becomes due."""

    async def schedule_retry(self, job_id: str, at: datetime) -> None:
        retry_audit.apply_async(args=[job_id], eta=at)


def build_pipeline(settings: Settings | None = None) -> tuple[AuditRunner, RetrySweeper]:
    settings = settings or get_settings()
    store = SqlAlchemyJobStore()
    scheduler = PipelineScheduler(
        store,
        crawler=CrawlerEngine(settings),
        keyword_data=load_provider(settings.KEYWORD_DATA_PROVIDER),
        ai=load_provider(settings.AI_PROVIDER),
        settings=settings,
    )
    runner = AuditRunner(
        store,
        scheduler,
        notifier=RedisNotifier(settings=settings),
        retry_scheduler=CeleryRetryScheduler(),
        settings=settings,
    )
    return runner, RetrySweeper(store, runner, settings=settings)


# ─────────────────────────────────────────────
# Task: Run Audit
# ─────────────────────────────────────────────

async def _run_audit(job_id: str) -> dict:
    runner, _ = build_pipeline()
    try:
        job = await runner.run(job_id)
        return {"job_id": job_id, "status": job.status.value}
    except JobFatalError as exc:
        # Already persisted as failed by the runner
        return {"job_id": job_id, "status": JobStatus.FAILED.value, "error": str(exc)}
    finally:
        await _release_connections()


@celery_app.task(
    name="site_audit.workers.audit_tasks.run_audit",
    bind=True,
    queue="audit_queue",
    soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    time_limit=settings.CELERY_TASK_TIME_LIMIT,
    acks_late=True,
)
def run_audit(self, job_id: str) -> dict:
    """Crawl the site and run every component whose inputs are ready."""
    with job_log_context(job_id, task="run_audit", attempt=self.request.retries):
        logger.info("Starting audit task")
        result = run_async(_run_audit(job_id))
        logger.info("Audit task finished", status=result["status"])
    return result


# ─────────────────────────────────────────────
# Task: Retry a single job
# ─────────────────────────────────────────────

async def _retry_audit(job_id: str) -> dict:
    runner, sweeper = build_pipeline()
    try:
        job = await runner.store.load_job(job_id)
        if job.status != JobStatus.RETRYING:
            # Handled by the sweep or an earlier retry message
            return {"job_id": job_id, "status": job.status.value, "skipped": True}
        status = await sweeper.process(job)
        return {"job_id": job_id, "status": status.value}
    finally:
        await _release_connections()


@celery_app.task(
    name="site_audit.workers.audit_tasks.retry_audit",
    bind=True,
    queue="retry_queue",
    soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    time_limit=settings.CELERY_TASK_TIME_LIMIT,
    acks_late=True,
)
def retry_audit(self, job_id: str) -> dict:
    with job_log_context(job_id, task="retry_audit"):
        logger.info("Starting retry task")
        return run_async(_retry_audit(job_id))


# ─────────────────────────────────────────────
# Task: Periodic sweep
# ─────────────────────────────────────────────

async def _sweep_retries() -> dict:
    _, sweeper = build_pipeline()
    try:
        summary = await sweeper.sweep()
        return summary.model_dump()
    finally:
        await _release_connections()


@celery_app.task(
    name="site_audit.workers.audit_tasks.sweep_retries",
    queue="retry_queue",
)
def sweep_retries() -> dict:
    """Beat-driven sweep over stale, due and expired audits."""
    return run_async(_sweep_retries())
