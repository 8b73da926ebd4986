"""
Structured logging using structlog.

JSON lines in production, a console renderer in development. Task entry points
wrap each audit in job_log_context(), so every line written while that job is
processed (crawler, components, store) carries its job_id.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.types import EventDict, Processor

from site_audit.core.config import Settings, get_settings

SEVERITY_BY_METHOD = {
    "debug": "DEBUG",
    "info": "INFO",
    "warning": "WARNING",
    "warn": "WARNING",
    "error": "ERROR",
    "exception": "ERROR",
    "critical": "CRITICAL",
}

# Log every request or statement at INFO
NOISY_LOGGERS = ("asyncio", "sqlalchemy.engine", "httpx", "httpcore", "celery.app.trace")


def add_severity(logger: Any, method: str, event_dict: EventDict) -> EventDict:
    """Severity field for aggregators (GCP, Datadog) that ignore `level`."""
    event_dict["severity"] = SEVERITY_BY_METHOD.get(method, "INFO")
    return event_dict


def build_processors(settings: Settings) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_severity,
    ]
    if settings.LOG_FORMAT == "json":
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # Celery and SQLAlchemy log through stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level, force=True)

    if settings.ENV == "production":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def job_log_context(job_id: str, **fields: Any) -> Iterator[None]:
    """Bind job_id and extra fields to every log line written inside the block."""
    with structlog.contextvars.bound_contextvars(job_id=job_id, **fields):
        yield
