"""
Tests for the retry sweep.
The scheduler is mocked so each test controls whether a retry finishes the job;
stale recovery also runs once against the real scheduler.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from site_audit.core.errors import CrawlFailedError
from site_audit.core.tiers import Tier
from site_audit.engines.base import CrawlResult
from site_audit.engines.scoring.engine import HealthScore
from site_audit.pipeline.components import ALL_COMPONENTS
from site_audit.pipeline.interfaces import NotificationKind
from site_audit.pipeline.models import AdvanceOutcome, AuditJob, ComponentKey, ComponentStatus, JobStatus, Progress
from site_audit.pipeline.results import ResultAccumulator
from site_audit.pipeline.retry import RetrySweeper
from site_audit.pipeline.runner import AuditRunner
from site_audit.pipeline.scheduler import PipelineScheduler
from site_audit.store.memory import InMemoryJobStore
from tests.factories import make_page


def failing_progress(retry_count: int = 0) -> Progress:
    progress = Progress.seed(["crawl", "currentRankings"], completed=["crawl"])
    entry = progress.get("currentRankings")
    entry.status = ComponentStatus.RETRYING
    entry.last_error = "provider timeout"
    progress.retry_count = retry_count
    return progress


def notification_kinds(notifier: AsyncMock) -> list[NotificationKind]:
    return [c.args[0] for c in notifier.notify.await_args_list]


@pytest.fixture
def store(clock):
    return InMemoryJobStore(clock)


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def scheduler():
    scheduler = MagicMock()
    scheduler.advance = AsyncMock(return_value=AdvanceOutcome(failed=["currentRankings"], all_done=False))
    return scheduler


@pytest.fixture
def sweeper(store, scheduler, notifier, settings, clock):
    runner = AuditRunner(store, scheduler, notifier=notifier, settings=settings, clock=clock)
    return RetrySweeper(store, runner, settings=settings, clock=clock)


async def retrying_job(store, clock, job_id="job-1", age=timedelta(minutes=20), **fields) -> AuditJob:
    fields.setdefault("progress", failing_progress())
    fields.setdefault("retry_after", clock())
    job = AuditJob(
        id=job_id,
        site_url="https://example.com",
        tier=Tier.AUDIT,
        status=JobStatus.RETRYING,
        created_at=clock() - age,
        updated_at=clock(),
        **fields,
    )
    return await store.create_job(job)


# ─────────────────────────────────────────────
# Due retries
# ─────────────────────────────────────────────

class TestProcessDueRetries:

    @pytest.mark.asyncio
    async def test_retry_that_finishes_completes_the_job(self, sweeper, store, scheduler, notifier, clock):
        await retrying_job(store, clock)
        scheduler.advance.return_value = AdvanceOutcome(ran=["currentRankings"], all_done=True)

        summary = await sweeper.sweep()

        assert summary.processed == 1
        assert summary.completed == 1
        job = await store.load_job("job-1")
        assert job.status == JobStatus.COMPLETED
        assert job.retry_after is None
        assert job.completion_notified_at == clock()
        assert notification_kinds(notifier) == [NotificationKind.COMPLETED]

    @pytest.mark.asyncio
    async def test_still_failing_is_rescheduled(self, sweeper, store, scheduler, settings, clock):
        await retrying_job(store, clock)
        scheduler.advance.return_value = AdvanceOutcome(failed=["currentRankings"], all_done=False)

        summary = await sweeper.sweep()

        assert summary.rescheduled == 1
        job = await store.load_job("job-1")
        assert job.status == JobStatus.RETRYING
        assert job.retry_after == clock() + timedelta(seconds=settings.RETRY_INTERVAL_SECONDS)
        assert job.progress.retry_count == 1
        assert job.progress.last_retry_at == clock()
        scheduler.advance.assert_awaited_once_with("job-1")

    @pytest.mark.asyncio
    async def test_failed_components_are_marked_retrying(self, sweeper, store, clock):
        progress = failing_progress()
        progress.get("currentRankings").status = ComponentStatus.FAILED
        await retrying_job(store, clock, progress=progress)

        await sweeper.sweep()

        job = await store.load_job("job-1")
        assert job.progress.status_of("currentRankings") == ComponentStatus.RETRYING
        assert job.progress.status_of("crawl") == ComponentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_job_not_yet_due_is_skipped(self, sweeper, store, scheduler, clock):
        await retrying_job(store, clock, retry_after=clock() + timedelta(minutes=5))

        summary = await sweeper.sweep()

        assert summary.processed == 0
        scheduler.advance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fatal_error_during_retry_fails_the_job(self, sweeper, store, scheduler, notifier, clock):
        await retrying_job(store, clock)
        scheduler.advance.side_effect = CrawlFailedError("https://example.com", 4)

        summary = await sweeper.sweep()

        assert summary.failed == 1
        job = await store.load_job("job-1")
        assert job.status == JobStatus.FAILED
        assert job.error == "No pages could be crawled from https://example.com (4 errors)"
        assert notification_kinds(notifier) == [NotificationKind.FAILURE]

    @pytest.mark.asyncio
    async def test_one_broken_job_does_not_stop_the_sweep(self, sweeper, store, scheduler, clock):
        await retrying_job(store, clock, job_id="job-1")
        await retrying_job(store, clock, job_id="job-2")
        scheduler.advance.side_effect = [
            RuntimeError("database hiccup"),
            AdvanceOutcome(all_done=True),
        ]

        summary = await sweeper.sweep()

        assert summary.processed == 2
        assert summary.completed == 1
        assert scheduler.advance.await_count == 2


# ─────────────────────────────────────────────
# Escalation
# ─────────────────────────────────────────────

class TestEscalation:

    @pytest.mark.asyncio
    async def test_hard_timeout_notifies_then_fails(self, sweeper, store, scheduler, notifier, clock):
        await retrying_job(store, clock, age=timedelta(hours=25))

        summary = await sweeper.sweep()

        assert summary.failed == 1
        scheduler.advance.assert_not_awaited()
        job = await store.load_job("job-1")
        assert job.status == JobStatus.FAILED
        assert job.error == "Audit did not complete within 24h of retries"
        assert job.retry_after is None

        assert notification_kinds(notifier) == [NotificationKind.FAILURE]
        payload = notifier.notify.await_args.args[1]
        # Sent before the job left the retrying state
        assert payload["status"] == "retrying"
        assert payload["failing_components"] == {"currentRankings": "provider timeout"}

    @pytest.mark.asyncio
    async def test_delay_notice_is_sent_once(self, sweeper, store, notifier, settings, clock):
        await retrying_job(store, clock, age=timedelta(hours=2))

        await sweeper.sweep()
        clock.advance(seconds=settings.RETRY_INTERVAL_SECONDS)
        await sweeper.sweep()

        assert notification_kinds(notifier) == [NotificationKind.DELAY_NOTICE]
        job = await store.load_job("job-1")
        assert job.delay_notice_sent_at is not None
        assert job.progress.retry_count == 2

    @pytest.mark.asyncio
    async def test_no_delay_notice_for_young_jobs(self, sweeper, store, notifier, clock):
        await retrying_job(store, clock, age=timedelta(minutes=30))

        await sweeper.sweep()

        notifier.notify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_delay_notice_is_retried_next_sweep(self, sweeper, store, notifier, settings, clock):
        await retrying_job(store, clock, age=timedelta(hours=2))
        notifier.notify.side_effect = [RuntimeError("redis down"), None]

        await sweeper.sweep()
        job = await store.load_job("job-1")
        assert job.delay_notice_sent_at is None
        assert job.status == JobStatus.RETRYING

        clock.advance(seconds=settings.RETRY_INTERVAL_SECONDS)
        await sweeper.sweep()

        assert notification_kinds(notifier) == [NotificationKind.DELAY_NOTICE, NotificationKind.DELAY_NOTICE]
        assert (await store.load_job("job-1")).delay_notice_sent_at == clock()

    @pytest.mark.asyncio
    async def test_support_alert_after_repeated_retries(self, sweeper, store, notifier, settings, clock):
        await retrying_job(store, clock, progress=failing_progress(retry_count=settings.RETRY_SUPPORT_ALERT_AFTER))

        await sweeper.sweep()
        clock.advance(seconds=settings.RETRY_INTERVAL_SECONDS)
        await sweeper.sweep()

        assert notification_kinds(notifier) == [NotificationKind.SUPPORT_ALERT]
        payload = notifier.notify.await_args.args[1]
        assert payload["retry_count"] == settings.RETRY_SUPPORT_ALERT_AFTER
        assert payload["failing_components"] == {"currentRankings": "provider timeout"}
        assert (await store.load_job("job-1")).support_alert_sent_at is not None

    @pytest.mark.asyncio
    async def test_escalation_order(self, sweeper, store, notifier, settings, clock):
        await retrying_job(
            store, clock,
            age=timedelta(hours=3),
            progress=failing_progress(retry_count=settings.RETRY_SUPPORT_ALERT_AFTER + 1),
        )

        await sweeper.sweep()

        assert notification_kinds(notifier) == [NotificationKind.DELAY_NOTICE, NotificationKind.SUPPORT_ALERT]
        assert (await store.load_job("job-1")).status == JobStatus.RETRYING


# ─────────────────────────────────────────────
# Stale jobs
# ─────────────────────────────────────────────

class TestStaleJobRecovery:

    @pytest.mark.asyncio
    async def test_stuck_analyzing_job_keeps_stored_local_output(self, sweeper, store, settings, clock):
        stale_at = clock() - timedelta(seconds=settings.JOB_STALE_THRESHOLD_SECONDS + 60)
        await store.create_job(AuditJob(
            id="job-1",
            site_url="https://example.com",
            status=JobStatus.ANALYZING,
            results=ResultAccumulator(
                crawl=CrawlResult(pages=[make_page("https://example.com/")]),
                technical_issues=[],
            ),
            created_at=stale_at,
            updated_at=stale_at,
        ))

        recovered = await sweeper.recover_stale_jobs()

        assert recovered == 1
        job = await store.load_job("job-1")
        assert job.status == JobStatus.RETRYING
        assert job.retry_after == clock()
        assert set(job.progress.components) == set(ALL_COMPONENTS)
        completed = {k for k in ALL_COMPONENTS if job.progress.status_of(k) == ComponentStatus.COMPLETED}
        assert completed == {ComponentKey.CRAWL.value, ComponentKey.TECHNICAL_ISSUES.value}

    @pytest.mark.asyncio
    async def test_stuck_analyzing_job_without_pages_recrawls(self, sweeper, store, settings, clock):
        stale_at = clock() - timedelta(seconds=settings.JOB_STALE_THRESHOLD_SECONDS + 60)
        await store.create_job(AuditJob(
            id="job-1",
            site_url="https://example.com",
            status=JobStatus.ANALYZING,
            created_at=stale_at,
            updated_at=stale_at,
        ))

        await sweeper.recover_stale_jobs()

        job = await store.load_job("job-1")
        assert job.status == JobStatus.RETRYING
        assert all(job.progress.status_of(k) == ComponentStatus.PENDING for k in ALL_COMPONENTS)

    @pytest.mark.asyncio
    async def test_sweep_recrawls_stale_job_with_empty_results(self, store, settings, clock):
        stale_at = clock() - timedelta(seconds=settings.JOB_STALE_THRESHOLD_SECONDS + 60)
        await store.create_job(AuditJob(
            id="job-1",
            site_url="https://example.com",
            tier=Tier.FREE,
            status=JobStatus.ANALYZING,
            created_at=stale_at,
            updated_at=stale_at,
        ))
        crawler = AsyncMock()
        crawler.crawl.return_value = CrawlResult(
            pages=[make_page("https://example.com/"), make_page("https://example.com/guide")],
            has_robots_txt=True,
            has_sitemap=True,
        )
        scheduler = PipelineScheduler(store, crawler=crawler, settings=settings, clock=clock)
        runner = AuditRunner(store, scheduler, settings=settings, clock=clock)
        sweeper = RetrySweeper(store, runner, settings=settings, clock=clock)

        summary = await sweeper.sweep()

        assert summary.recovered == 1
        assert summary.completed == 1
        crawler.crawl.assert_awaited_once()
        job = await store.load_job("job-1")
        assert job.status == JobStatus.COMPLETED
        assert len(job.results.pages) == 2
        assert job.results.technical_issues is not None

    @pytest.mark.asyncio
    async def test_stuck_crawling_job_restarts_from_scratch(self, sweeper, store, settings, clock):
        stale_at = clock() - timedelta(seconds=settings.JOB_STALE_THRESHOLD_SECONDS + 60)
        await store.create_job(AuditJob(
            id="job-1",
            site_url="https://example.com",
            status=JobStatus.CRAWLING,
            created_at=stale_at,
            updated_at=stale_at,
        ))

        await sweeper.recover_stale_jobs()

        job = await store.load_job("job-1")
        assert all(job.progress.status_of(k) == ComponentStatus.PENDING for k in ALL_COMPONENTS)

    @pytest.mark.asyncio
    async def test_existing_progress_is_kept(self, sweeper, store, settings, clock):
        stale_at = clock() - timedelta(seconds=settings.JOB_STALE_THRESHOLD_SECONDS + 60)
        await store.create_job(AuditJob(
            id="job-1",
            site_url="https://example.com",
            status=JobStatus.ANALYZING,
            progress=failing_progress(retry_count=2),
            created_at=stale_at,
            updated_at=stale_at,
        ))

        await sweeper.recover_stale_jobs()

        job = await store.load_job("job-1")
        assert job.progress.retry_count == 2
        assert set(job.progress.components) == {"crawl", "currentRankings"}

    @pytest.mark.asyncio
    async def test_active_job_is_left_alone(self, sweeper, store, clock):
        await store.create_job(AuditJob(
            id="job-1",
            site_url="https://example.com",
            status=JobStatus.ANALYZING,
            created_at=clock() - timedelta(minutes=5),
            updated_at=clock() - timedelta(minutes=5),
        ))

        assert await sweeper.recover_stale_jobs() == 0
        assert (await store.load_job("job-1")).status == JobStatus.ANALYZING


# ─────────────────────────────────────────────
# Housekeeping
# ─────────────────────────────────────────────

class TestHousekeeping:

    @pytest.mark.asyncio
    async def test_expired_terminal_jobs_lose_retry_marker(self, sweeper, store, clock):
        await store.create_job(AuditJob(
            id="job-1",
            site_url="https://example.com",
            status=JobStatus.FAILED,
            created_at=clock() - timedelta(days=2),
            retry_after=clock() - timedelta(days=1),
        ))

        assert await sweeper.handle_expired_jobs() == 1
        assert (await store.load_job("job-1")).retry_after is None
        assert await sweeper.handle_expired_jobs() == 0

    @pytest.mark.asyncio
    async def test_completion_notifications_are_resent(self, sweeper, store, notifier, clock):
        await store.create_job(AuditJob(
            id="job-1",
            site_url="https://example.com",
            status=JobStatus.COMPLETED,
            completed_at=clock() - timedelta(minutes=10),
            health_score=HealthScore(score=72, grade="good", breakdown={}),
        ))

        assert await sweeper.resend_completion_notifications() == 1

        assert notification_kinds(notifier) == [NotificationKind.COMPLETED]
        payload = notifier.notify.await_args.args[1]
        assert (payload["health_score"], payload["grade"]) == (72, "good")
        assert (await store.load_job("job-1")).completion_notified_at == clock()

    @pytest.mark.asyncio
    async def test_failed_resend_keeps_job_pending(self, sweeper, store, notifier, clock):
        await store.create_job(AuditJob(
            id="job-1",
            site_url="https://example.com",
            status=JobStatus.COMPLETED,
            completed_at=clock(),
        ))
        notifier.notify.side_effect = RuntimeError("redis down")

        assert await sweeper.resend_completion_notifications() == 0
        assert (await store.load_job("job-1")).completion_notified_at is None

    @pytest.mark.asyncio
    async def test_sweep_reports_every_stage(self, sweeper, store, clock):
        await retrying_job(store, clock)
        await store.create_job(AuditJob(
            id="job-2",
            site_url="https://example.com",
            status=JobStatus.COMPLETED,
            created_at=clock() - timedelta(days=2),
            completed_at=clock() - timedelta(days=2),
            retry_after=clock() - timedelta(days=2),
        ))

        summary = await sweeper.sweep()

        assert summary.model_dump() == {
            "recovered": 0,
            "processed": 1,
            "completed": 0,
            "failed": 0,
            "rescheduled": 1,
            "expired": 1,
            "notified": 1,
        }
