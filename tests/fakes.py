"""In-memory stand-ins for the store, queue, storage and content provider."""

import copy
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from asyncreports.errors import FatalQueueError, NotFoundError, TransientIOError
from asyncreports.queue_handler import QueueMessage
from asyncreports.report_store import Report
from asyncreports.settings import WorkerSettings


def make_settings(**overrides) -> WorkerSettings:
    values = dict(
        worker_concurrency=2,
        job_timeout_seconds=10.0,
        poll_backoff_initial_s=0.01,
        poll_backoff_max_s=0.05,
        watchdog_interval_s=1,
        download_url_ttl_seconds=10,
        content_mock_fallback=False,
    )
    values.update(overrides)
    return WorkerSettings(_env_file=None, **values)


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class InMemoryReportStore:
    def __init__(self, now_fn=None):
        self._reports: Dict[tuple, Report] = {}
        self._lock = threading.Lock()
        self._now = now_fn or (lambda: datetime.now(timezone.utc))
        self.update_calls = 0

    def create(self, user_id, report_type):
        report = Report(user_id=user_id, id=uuid.uuid4(), report_type=report_type, created_at=self._now())
        with self._lock:
            self._reports[(user_id, report.id)] = report
        return copy.deepcopy(report)

    def update(self, report):
        with self._lock:
            key = (report.user_id, report.id)
            stored = self._reports.get(key)
            if stored is None:
                raise NotFoundError(report.user_id, report.id)
            updated = copy.deepcopy(report)
            updated.report_type = stored.report_type
            updated.created_at = stored.created_at
            updated.claimed_at = stored.claimed_at
            for field in ("started_at", "completed_at", "failed_at"):
                if getattr(stored, field) is not None:
                    setattr(updated, field, getattr(stored, field))
            self._reports[key] = updated
            self.update_calls += 1
        return copy.deepcopy(updated)

    def by_primary_key(self, user_id, report_id):
        with self._lock:
            report = self._reports.get((user_id, report_id))
        if report is None:
            raise NotFoundError(user_id, report_id)
        return copy.deepcopy(report)

    def mark_started(self, user_id, report_id, started_at):
        with self._lock:
            report = self._reports.get((user_id, report_id))
            if report is None or report.started_at is not None or report.is_terminal:
                return None
            report.started_at = started_at
            report.claimed_at = started_at
            return copy.deepcopy(report)

    def mark_resumed(self, user_id, report_id, observed_claimed_at, claimed_at):
        with self._lock:
            report = self._reports.get((user_id, report_id))
            if report is None or report.claimed_at != observed_claimed_at or report.is_terminal:
                return None
            report.claimed_at = claimed_at
            return copy.deepcopy(report)

    def mark_completed(self, user_id, report_id, output_file_path, completed_at):
        with self._lock:
            report = self._reports.get((user_id, report_id))
            if report is None or report.is_terminal:
                return None
            report.output_file_path = output_file_path
            report.completed_at = completed_at
            return copy.deepcopy(report)

    def mark_failed(self, user_id, report_id, error_message, failed_at):
        with self._lock:
            report = self._reports.get((user_id, report_id))
            if report is None or report.is_terminal:
                return None
            report.error_message = error_message
            report.failed_at = failed_at
            return copy.deepcopy(report)

    def is_healthy(self):
        return True


class FakeStorage:
    def __init__(self, now_fn=None, fail_put: bool = False, fail_presign: bool = False):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.presign_calls: List[tuple] = []
        self.fail_put = fail_put
        self.fail_presign = fail_presign
        self._now = now_fn or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def put(self, s3_key, data, content_type="text/csv", content_encoding=None):
        if self.fail_put:
            raise TransientIOError(f"failed to upload {s3_key}")
        with self._lock:
            self.objects[s3_key] = {
                "data": data,
                "content_type": content_type,
                "content_encoding": content_encoding,
            }

    def presign_get(self, s3_key, ttl_seconds):
        if self.fail_presign:
            raise TransientIOError(f"failed to sign url for {s3_key}")
        with self._lock:
            self.presign_calls.append((s3_key, ttl_seconds))
            n = len(self.presign_calls)
        return f"https://storage.test/{s3_key}?signature={n}", self._now() + timedelta(seconds=ttl_seconds)

    def is_healthy(self):
        return True


class FakeContentClient:
    def __init__(self, entries=None, error: Optional[Exception] = None):
        self.entries = entries if entries is not None else [
            {
                "name": "Bokoblin",
                "id": 1,
                "category": "monsters",
                "description": "Common monster.",
                "image": "https://example.test/bokoblin.png",
                "common_locations": ["Hyrule Field"],
                "drops": ["Bokoblin Horn", "Bokoblin Fang"],
                "dlc": False,
            },
        ]
        self.error = error
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def fetch_content(self, report_type, timeout=None):
        with self._lock:
            self.calls.append((report_type, timeout))
        if self.error is not None:
            raise self.error
        return [dict(e) for e in self.entries]


class FakeJobQueue:
    max_receive = 10

    def __init__(self, fail_url: bool = False):
        self.fail_url = fail_url
        self.pending: List[QueueMessage] = []
        self.deleted: List[str] = []
        self.sent: List[str] = []
        self.receive_calls = 0
        self.reclaim_calls = 0
        self._lock = threading.Lock()
        self._counter = 0

    def get_queue_url(self, queue_name):
        if self.fail_url:
            raise FatalQueueError(f"failed to get url for queue {queue_name}")
        return f"https://queue.test/{queue_name}"

    def push(self, body) -> QueueMessage:
        with self._lock:
            self._counter += 1
            message = QueueMessage(
                message_id=f"msg-{self._counter}",
                body=body,
                receipt_handle=f"receipt-{self._counter}",
            )
            self.pending.append(message)
        return message

    def send(self, queue_url, body):
        self.sent.append(body)
        return self.push(body).message_id

    def receive(self, queue_url, max_messages):
        with self._lock:
            self.receive_calls += 1
            batch = self.pending[:max_messages]
            self.pending = self.pending[max_messages:]
        return batch

    def delete(self, queue_url, receipt_handle):
        with self._lock:
            self.deleted.append(receipt_handle)

    def reclaim_expired(self, queue_url):
        self.reclaim_calls += 1
        return 0

    def is_healthy(self, queue_name):
        return not self.fail_url
