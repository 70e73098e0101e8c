"""Exceptions for the report pipeline."""

from typing import Optional


class ReportError(Exception):
    """Base error for report pipeline failures."""


class NotFoundError(ReportError):
    """Report record does not exist for the given user."""

    def __init__(self, user_id, report_id):
        self.user_id = user_id
        self.report_id = report_id
        super().__init__(f"report {report_id} not found for user {user_id}")


class TransientIOError(ReportError):
    """Network or storage failure while fetching, writing or signing."""


class ReportTimeoutError(TransientIOError):
    """Per-job deadline exceeded."""


class ReportInProgressError(ReportError):
    """Another worker holds a live build claim for the report."""


class UnsupportedReportType(ReportError):
    """Content provider has no data for the requested report type."""


class InvalidReportRequest(ReportError):
    """Rejected enqueue request."""


class MalformedJobError(ReportError):
    """Job descriptor body could not be decoded."""

    def __init__(self, message: str, body: Optional[str] = None):
        self.body = body
        super().__init__(message)


class FatalQueueError(ReportError):
    """Queue endpoint could not be resolved at startup."""
