import logging
import uuid
from typing import Optional

from asyncreports.download_links import DownloadLinkIssuer
from asyncreports.errors import InvalidReportRequest
from asyncreports.queue_handler import JobDescriptor
from asyncreports.report_store import Report, ReportStore
from asyncreports.settings import WorkerSettings

logger = logging.getLogger(__name__)


class ReportService:
    """Enqueue and read path used by the API layer and the CLI."""

    def __init__(
        self,
        settings: WorkerSettings,
        report_store: ReportStore,
        job_queue,
        link_issuer: DownloadLinkIssuer,
    ):
        self.queue_name = settings.queue_name
        self.report_store = report_store
        self.job_queue = job_queue
        self.link_issuer = link_issuer
        self._queue_url: Optional[str] = None

    def _resolve_queue_url(self) -> str:
        if self._queue_url is None:
            self._queue_url = self.job_queue.get_queue_url(self.queue_name)
        return self._queue_url

    def enqueue_report(self, user_id: uuid.UUID, report_type: str) -> Report:
        """Create a pending report and publish its job descriptor."""
        report_type = (report_type or "").strip()
        if not report_type:
            raise InvalidReportRequest("report_type is required")

        report = self.report_store.create(user_id, report_type)
        descriptor = JobDescriptor(user_id=report.user_id, report_id=report.id)
        message_id = self.job_queue.send(self._resolve_queue_url(), descriptor.to_json())
        logger.info(
            "report_enqueued user=%s report=%s type=%s message=%s",
            user_id, report.id, report_type, message_id,
        )
        return report

    def get_report(self, user_id: uuid.UUID, report_id: uuid.UUID) -> Report:
        """Read a report, refreshing its download URL when it is completed."""
        report = self.report_store.by_primary_key(user_id, report_id)
        return self.link_issuer.ensure_fresh(report)
