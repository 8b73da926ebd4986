"""
Database Models - persisted audit jobs.

Design decisions:
- One row per audit job; progress and the result accumulator are JSONB
  documents so component payloads can evolve without migrations
- Scalar columns for everything the retry sweep filters on
- Full audit trail with created_at/updated_at
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from site_audit.core.database import Base


# ─────────────────────────────────────────────
# Mixins
# ─────────────────────────────────────────────

class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


# ─────────────────────────────────────────────
# Audit Jobs
# ─────────────────────────────────────────────

class AuditJobRecord(Base, TimestampMixin):
    """A single audit run and its accumulated component results."""
    __tablename__ = "audit_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    site_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    tier: Mapped[str] = mapped_column(String(20), nullable=False, default="FREE")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="created")

    # Inputs
    competitors: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)
    section_filter: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    product_description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Crawl facts
    pages_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sitemap_url_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_new_site: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Pipeline state
    progress: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    results: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)
    health_score: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Retry / notification markers
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delay_notice_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    support_alert_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_audit_jobs_status_retry_after", "status", "retry_after"),
        Index("ix_audit_jobs_status_updated_at", "status", "updated_at"),
    )
