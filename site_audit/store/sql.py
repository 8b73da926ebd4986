"""
PostgreSQL-backed JobStore.

Each save runs in its own transaction with a row lock, so concurrent saves
from one advance() call and from the retry sweep apply one at a time.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from site_audit.core.database import get_session_factory, session_scope
from site_audit.core.errors import JobNotFoundError
from site_audit.models.models import AuditJobRecord
from site_audit.pipeline.models import AuditJob, JobStatus, TERMINAL_STATUSES, utcnow

logger = structlog.get_logger(__name__)

JSON_FIELDS = ("competitors", "section_filter", "progress", "results", "health_score")
SCALAR_FIELDS = (
    "site_url",
    "tier",
    "status",
    "product_description",
    "pages_found",
    "sitemap_url_count",
    "is_new_site",
    "error",
    "created_at",
    "updated_at",
    "completed_at",
    "retry_after",
    "delay_notice_sent_at",
    "support_alert_sent_at",
    "completion_notified_at",
)


def record_to_job(record: AuditJobRecord) -> AuditJob:
    data: dict[str, Any] = {"id": record.id}
    for name in SCALAR_FIELDS + JSON_FIELDS:
        data[name] = getattr(record, name)
    if data["results"] is None:
        data["results"] = {}
    return AuditJob.model_validate(data)


def apply_job(record: AuditJobRecord, job: AuditJob) -> AuditJobRecord:
    documents = job.model_dump(mode="json", include=set(JSON_FIELDS))
    for name in JSON_FIELDS:
        setattr(record, name, documents[name])
    for name in SCALAR_FIELDS:
        value = getattr(job, name)
        setattr(record, name, value.value if hasattr(value, "value") else value)
    return record


class SqlAlchemyJobStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock

    async def create_job(self, job: AuditJob) -> AuditJob:
        async with session_scope(self.session_factory) as session:
            session.add(apply_job(AuditJobRecord(id=job.id), job))
        logger.info("Audit job created", job_id=job.id, site_url=job.site_url, tier=job.tier.value)
        return job

    async def load_job(self, job_id: str) -> AuditJob:
        async with session_scope(self.session_factory) as session:
            record = await session.get(AuditJobRecord, job_id)
            if record is None:
                raise JobNotFoundError(job_id)
            return record_to_job(record)

    async def save_job(self, job_id: str, patch: dict[str, Any]) -> AuditJob:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(AuditJobRecord).where(AuditJobRecord.id == job_id).with_for_update()
            )
            record = result.scalar_one_or_none()
            if record is None:
                raise JobNotFoundError(job_id)

            current = record_to_job(record)
            updated = AuditJob.model_validate({
                **current.model_dump(),
                **patch,
                "updated_at": self.clock(),
            })
            apply_job(record, updated)
            return updated

    async def _list(self, *conditions, limit: int | None = None, order_by=None) -> list[AuditJob]:
        query = select(AuditJobRecord).where(*conditions)
        if order_by is not None:
            query = query.order_by(order_by)
        if limit is not None:
            query = query.limit(limit)
        async with session_scope(self.session_factory) as session:
            result = await session.execute(query)
            return [record_to_job(r) for r in result.scalars().all()]

    async def list_due_retries(self, now: datetime) -> list[AuditJob]:
        return await self._list(
            AuditJobRecord.status == JobStatus.RETRYING.value,
            AuditJobRecord.retry_after.is_not(None),
            AuditJobRecord.retry_after <= now,
            order_by=AuditJobRecord.retry_after,
        )

    async def list_stale_jobs(self, before: datetime) -> list[AuditJob]:
        return await self._list(
            AuditJobRecord.status.in_([JobStatus.CRAWLING.value, JobStatus.ANALYZING.value]),
            AuditJobRecord.updated_at < before,
        )

    async def list_expired_jobs(self, before: datetime) -> list[AuditJob]:
        return await self._list(
            AuditJobRecord.status.in_([s.value for s in TERMINAL_STATUSES]),
            AuditJobRecord.retry_after.is_not(None),
            AuditJobRecord.created_at < before,
        )

    async def list_unnotified_completed(self, limit: int) -> list[AuditJob]:
        return await self._list(
            AuditJobRecord.status == JobStatus.COMPLETED.value,
            AuditJobRecord.completion_notified_at.is_(None),
            limit=limit,
            order_by=AuditJobRecord.completed_at,
        )
