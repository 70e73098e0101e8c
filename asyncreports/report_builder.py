import csv
import gzip
import io
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional

from asyncreports.content_client import CompendiumClient
from asyncreports.errors import ReportInProgressError, ReportTimeoutError
from asyncreports.report_store import Report, ReportStore, utcnow
from asyncreports.settings import WorkerSettings
from asyncreports.storage_client import StorageClient

logger = logging.getLogger(__name__)

CSV_COLUMNS = ["name", "id", "category", "description", "image", "common_locations", "drops", "dlc"]


def report_object_key(user_id: uuid.UUID, report_id: uuid.UUID) -> str:
    return f"users/{user_id}/reports/{report_id}.csv"


def _csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "; ".join(str(v) for v in value)
    return str(value)


def serialize_report(entries: Iterable[Dict[str, Any]]) -> bytes:
    """Render entries as a gzip-compressed CSV with a fixed header row."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(CSV_COLUMNS)
    for entry in entries:
        writer.writerow([_csv_value(entry.get(column)) for column in CSV_COLUMNS])
    return gzip.compress(buf.getvalue().encode("utf-8"))


class ReportBuilder:
    """Turns a job descriptor into a completed or failed report."""

    def __init__(
        self,
        settings: WorkerSettings,
        report_store: ReportStore,
        content_client: CompendiumClient,
        storage_client: StorageClient,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.report_store = report_store
        self.content_client = content_client
        self.storage_client = storage_client
        self.claim_timeout = timedelta(seconds=settings.job_timeout_seconds)
        self._now = now_fn

    def build(self, user_id: uuid.UUID, report_id: uuid.UUID,
              deadline: Optional[float] = None) -> Report:
        """
        Build the report identified by (user_id, report_id).

        Args:
            deadline: time.monotonic() value after which the build fails with
                ReportTimeoutError

        Returns:
            The completed report, or the stored record unchanged when it is
            already completed or failed.

        Raises:
            NotFoundError: no such report for this user
            ReportInProgressError: another worker is building the report
            ReportError: the build failed; the failure is recorded on the report
        """
        report = self.report_store.by_primary_key(user_id, report_id)
        if report.is_terminal:
            logger.info(
                "report_build_skipped user=%s report=%s status=%s",
                user_id, report_id, report.status,
            )
            return report

        report = self._claim(report)
        if report.is_terminal:
            return report

        logger.info(
            "report_build_start user=%s report=%s type=%s",
            user_id, report_id, report.report_type,
        )
        start_ts = time.perf_counter()
        try:
            self._check_deadline(deadline, "fetching content")
            entries = self.content_client.fetch_content(
                report.report_type, timeout=self._remaining(deadline)
            )
            payload = serialize_report(entries)
            self._check_deadline(deadline, "uploading report")
            key = report_object_key(user_id, report_id)
            self.storage_client.put(key, payload, content_type="text/csv", content_encoding="gzip")
            self._check_deadline(deadline, "recording completion")
        except Exception as exc:
            self._mark_failed(report, exc)
            raise

        completed = self.report_store.mark_completed(user_id, report_id, key, self._now())
        if completed is None:
            current = self.report_store.by_primary_key(user_id, report_id)
            logger.warning(
                "report_build_superseded user=%s report=%s status=%s",
                user_id, report_id, current.status,
            )
            return current
        logger.info(
            "report_build_done user=%s report=%s entries=%d bytes=%d duration=%.2fs",
            user_id, report_id, len(entries), len(payload), time.perf_counter() - start_ts,
        )
        return completed

    def _claim(self, report: Report) -> Report:
        """Claim the build; concurrent duplicate deliveries lose the claim."""
        if report.started_at is None:
            claimed = self.report_store.mark_started(report.user_id, report.id, self._now())
            if claimed is not None:
                return claimed
            return self._lost_claim(report)

        claimed_at = report.claimed_at or report.started_at
        claim_age = self._now() - claimed_at
        if claim_age < self.claim_timeout:
            raise ReportInProgressError(
                f"report {report.id} was claimed {claim_age.total_seconds():.1f}s ago"
            )
        # Earlier attempt crashed or outlived its deadline; started_at stays as recorded.
        resumed = self.report_store.mark_resumed(
            report.user_id, report.id, report.claimed_at, self._now()
        )
        if resumed is None:
            return self._lost_claim(report)
        logger.warning(
            "report_build_resume user=%s report=%s claim_age=%.1fs",
            report.user_id, report.id, claim_age.total_seconds(),
        )
        return resumed

    def _lost_claim(self, report: Report) -> Report:
        current = self.report_store.by_primary_key(report.user_id, report.id)
        if current.is_terminal:
            return current
        raise ReportInProgressError(f"report {report.id} is being built by another worker")

    def _mark_failed(self, report: Report, exc: Exception) -> None:
        error_message = str(exc) or exc.__class__.__name__
        logger.error(
            "report_build_failed user=%s report=%s error=%s",
            report.user_id, report.id, error_message,
        )
        try:
            failed = self.report_store.mark_failed(report.user_id, report.id, error_message, self._now())
        except Exception as persist_exc:
            logger.error(
                "report_mark_failed_error user=%s report=%s: %s",
                report.user_id, report.id, persist_exc,
            )
            return
        if failed is None:
            logger.warning(
                "report_mark_failed_skipped user=%s report=%s: already terminal",
                report.user_id, report.id,
            )

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return deadline - time.monotonic()

    @staticmethod
    def _check_deadline(deadline: Optional[float], stage: str) -> None:
        if deadline is not None and time.monotonic() >= deadline:
            raise ReportTimeoutError(f"report build deadline exceeded before {stage}")
