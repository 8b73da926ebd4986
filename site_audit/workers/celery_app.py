"""
Celery Application Configuration

Queue Architecture:
- audit_queue:  Initial audit runs (crawl + analysis in one task)
- retry_queue:  Per-job retries and the periodic retry sweep
- default:      General tasks

Beat:
- sweep-audit-retries every RETRY_SWEEP_INTERVAL_SECONDS
"""

from celery import Celery
from celery.signals import after_setup_logger, worker_ready
from kombu import Exchange, Queue

from site_audit.core.config import get_settings

settings = get_settings()

# ─────────────────────────────────────────────
# Celery App
# ─────────────────────────────────────────────

celery_app = Celery(
    "site_audit",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["site_audit.workers.audit_tasks"],
)

# ─────────────────────────────────────────────
# Queue Definitions
# ─────────────────────────────────────────────

default_exchange = Exchange("default", type="direct")
audit_exchange = Exchange("audit", type="direct")
retry_exchange = Exchange("retry", type="direct")

celery_app.conf.task_queues = (
    Queue("default", default_exchange, routing_key="default"),
    Queue("audit_queue", audit_exchange, routing_key="audit"),
    Queue("retry_queue", retry_exchange, routing_key="retry"),
)

celery_app.conf.task_default_queue = "default"
celery_app.conf.task_default_exchange = "default"
celery_app.conf.task_default_routing_key = "default"

# ─────────────────────────────────────────────
# Task Routing
# ─────────────────────────────────────────────

celery_app.conf.task_routes = {
    "site_audit.workers.audit_tasks.run_audit": {"queue": "audit_queue"},
    "site_audit.workers.audit_tasks.retry_audit": {"queue": "retry_queue"},
    "site_audit.workers.audit_tasks.sweep_retries": {"queue": "retry_queue"},
}

# ─────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Reliability
    task_acks_late=True,                    # Ack after completion, not on receive
    task_reject_on_worker_lost=True,        # Re-queue if worker dies
    worker_prefetch_multiplier=1,           # Don't prefetch - process one at a time

    # Timeouts
    task_soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,

    # Results
    result_expires=86400 * 7,              # Keep results 7 days

    # Monitoring
    worker_send_task_events=True,
    task_send_sent_event=True,

    # Beat schedule (periodic tasks)
    beat_schedule={
        "sweep-audit-retries": {
            "task": "site_audit.workers.audit_tasks.sweep_retries",
            "schedule": float(settings.RETRY_SWEEP_INTERVAL_SECONDS),
        },
    },
)


# ─────────────────────────────────────────────
# Signals
# ─────────────────────────────────────────────

@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    import structlog
    logger = structlog.get_logger("celery.worker")
    logger.info("Celery worker ready", hostname=sender.hostname)


@after_setup_logger.connect
def setup_celery_logging(logger, *args, **kwargs):
    from site_audit.core.logging import configure_logging
    configure_logging()
