"""
In-memory JobStore for tests and embedded use.

Jobs are copied on the way in and out so callers never share mutable state
with the store.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Any, Callable

from site_audit.core.errors import JobNotFoundError
from site_audit.pipeline.models import AuditJob, JobStatus, TERMINAL_STATUSES, utcnow


class InMemoryJobStore:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._jobs: dict[str, AuditJob] = {}
        self._lock = asyncio.Lock()
        self.saves: list[dict[str, Any]] = []

    async def create_job(self, job: AuditJob) -> AuditJob:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
        return job.model_copy(deep=True)

    async def load_job(self, job_id: str) -> AuditJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job.model_copy(deep=True)

    async def save_job(self, job_id: str, patch: dict[str, Any]) -> AuditJob:
        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            # model_copy does not copy update values, and callers keep mutating theirs
            patch = copy.deepcopy(patch)
            updated = current.model_copy(update={"updated_at": self.clock(), **patch}, deep=True)
            self._jobs[job_id] = updated
            self.saves.append(patch)
        return updated.model_copy(deep=True)

    async def list_due_retries(self, now: datetime) -> list[AuditJob]:
        return [
            job.model_copy(deep=True)
            for job in self._jobs.values()
            if job.status == JobStatus.RETRYING and job.retry_after is not None and job.retry_after <= now
        ]

    async def list_stale_jobs(self, before: datetime) -> list[AuditJob]:
        return [
            job.model_copy(deep=True)
            for job in self._jobs.values()
            if job.status in (JobStatus.CRAWLING, JobStatus.ANALYZING) and job.updated_at < before
        ]

    async def list_expired_jobs(self, before: datetime) -> list[AuditJob]:
        return [
            job.model_copy(deep=True)
            for job in self._jobs.values()
            if job.status in TERMINAL_STATUSES and job.retry_after is not None and job.created_at < before
        ]

    async def list_unnotified_completed(self, limit: int) -> list[AuditJob]:
        pending = [
            job for job in self._jobs.values()
            if job.status == JobStatus.COMPLETED and job.completion_notified_at is None
        ]
        pending.sort(key=lambda j: j.completed_at or j.updated_at)
        return [job.model_copy(deep=True) for job in pending[:limit]]
