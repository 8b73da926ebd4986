"""
Exception hierarchy for the audit pipeline.

Component code raises freely; the component wrapper turns anything that is
not a JobFatalError into a failed component status. Only job-fatal errors
reach the runner or the retry sweep.
"""

from __future__ import annotations


class SiteAuditError(Exception):
    """Base class for all site_audit errors."""


class UnsafeURLError(SiteAuditError):
    """URL rejected by the network safety gate (scheme or private host)."""


class FetchError(SiteAuditError):
    """A single page could not be fetched (HTTP status, redirect problems)."""


class JobFatalError(SiteAuditError):
    """Error that ends the whole job instead of a single component."""


class CrawlFailedError(JobFatalError):
    """The crawl produced zero pages."""

    def __init__(self, site_url: str, errors: int = 0):
        self.site_url = site_url
        self.errors = errors
        super().__init__(f"No pages could be crawled from {site_url} ({errors} errors)")


class JobTimeoutError(JobFatalError):
    """A retrying job exceeded the maximum retry window."""


class InvalidTransitionError(SiteAuditError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid job status transition: {current} -> {target}")


class JobNotFoundError(SiteAuditError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Audit job not found: {job_id}")


class ProviderNotConfiguredError(SiteAuditError):
    """A paid-tier component needs an external provider that was not supplied."""
