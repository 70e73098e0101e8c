import logging
from datetime import datetime
from typing import Callable

from asyncreports.report_store import Report, ReportStore, utcnow
from asyncreports.settings import WorkerSettings
from asyncreports.storage_client import StorageClient

logger = logging.getLogger(__name__)


class DownloadLinkIssuer:
    """Keeps a usable signed download URL on completed reports."""

    def __init__(
        self,
        settings: WorkerSettings,
        report_store: ReportStore,
        storage_client: StorageClient,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.report_store = report_store
        self.storage_client = storage_client
        self.ttl_seconds = settings.download_url_ttl_seconds
        self._now = now_fn

    def needs_refresh(self, report: Report) -> bool:
        if report.download_url is None or report.download_url_expires_at is None:
            return True
        return report.download_url_expires_at <= self._now()

    def ensure_fresh(self, report: Report) -> Report:
        """
        Return the report with a download URL that has not expired yet.

        Reports that are not completed are returned unchanged. A cached URL is
        reused until its recorded expiry; otherwise a new one is signed and
        persisted. Signing failures propagate as TransientIOError.
        """
        if report.completed_at is None or not report.output_file_path:
            return report
        if not self.needs_refresh(report):
            return report

        url, expires_at = self.storage_client.presign_get(report.output_file_path, self.ttl_seconds)
        report.download_url = url
        report.download_url_expires_at = expires_at
        report = self.report_store.update(report)
        logger.info(
            "download_url_issued user=%s report=%s expires_at=%s",
            report.user_id, report.id, expires_at.isoformat(),
        )
        return report
