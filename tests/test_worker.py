import json
import threading
import time
import unittest
import uuid
from datetime import datetime, timezone
from unittest.mock import patch

from asyncreports.errors import FatalQueueError, NotFoundError, TransientIOError
from asyncreports.queue_handler import JobDescriptor
from asyncreports.report_store import Report
from asyncreports.worker import ReportWorker
from tests.fakes import FakeJobQueue, make_settings


class CountingBuilder:
    """Builder stub that records how many builds run at once."""

    def __init__(self, delay: float = 0.02, fail_ids=(), missing_ids=()):
        self.delay = delay
        self.fail_ids = set(fail_ids)
        self.missing_ids = set(missing_ids)
        self.active = 0
        self.max_active = 0
        self.calls = []
        self.deadlines = []
        self._lock = threading.Lock()

    def build(self, user_id, report_id, deadline=None):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls.append(report_id)
            self.deadlines.append(deadline)
        try:
            time.sleep(self.delay)
            if report_id in self.missing_ids:
                raise NotFoundError(user_id, report_id)
            if report_id in self.fail_ids:
                raise TransientIOError("compendium unavailable")
            now = datetime.now(timezone.utc)
            return Report(user_id=user_id, id=report_id, report_type="monsters",
                          created_at=now, started_at=now, completed_at=now)
        finally:
            with self._lock:
                self.active -= 1


def _descriptor_body(report_id=None) -> str:
    return JobDescriptor(user_id=uuid.uuid4(), report_id=report_id or uuid.uuid4()).to_json()


class ReportWorkerTests(unittest.TestCase):
    def setUp(self):
        self.queue = FakeJobQueue()
        self.stop = threading.Event()
        self.thread = None

    def tearDown(self):
        self.stop.set()
        if self.thread is not None:
            self.thread.join(timeout=15)

    def _start(self, builder, **settings):
        worker = ReportWorker(make_settings(**settings), self.queue, builder)
        self.thread = threading.Thread(target=worker.start, kwargs={"stop_event": self.stop}, daemon=True)
        self.thread.start()
        return worker

    @staticmethod
    def _wait_for(predicate, timeout: float = 10.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return False

    def test_never_exceeds_concurrency_under_load(self):
        concurrency = 3
        total = 10 * concurrency
        for _ in range(total):
            self.queue.push(_descriptor_body())
        builder = CountingBuilder(delay=0.05)

        self._start(builder, worker_concurrency=concurrency)

        self.assertTrue(self._wait_for(lambda: len(self.queue.deleted) == total))
        self.assertEqual(len(builder.calls), total)
        self.assertLessEqual(builder.max_active, concurrency)
        self.assertGreater(builder.max_active, 1)

    def test_each_build_gets_a_deadline(self):
        self.queue.push(_descriptor_body())
        builder = CountingBuilder(delay=0)
        before = time.monotonic()

        self._start(builder, job_timeout_seconds=10.0)

        self.assertTrue(self._wait_for(lambda: len(self.queue.deleted) == 1))
        self.assertGreaterEqual(builder.deadlines[0], before + 10.0)
        self.assertLessEqual(builder.deadlines[0], time.monotonic() + 10.0)

    def test_malformed_messages_are_skipped_without_blocking(self):
        bodies = [
            "",
            "not json",
            json.dumps({"UserId": str(uuid.uuid4()), "ReportId": ""}),
            json.dumps(["not", "an", "object"]),
        ]
        malformed = [self.queue.push(body) for body in bodies]
        valid = self.queue.push(_descriptor_body())
        builder = CountingBuilder(delay=0)

        worker = self._start(builder, worker_concurrency=1)

        self.assertTrue(self._wait_for(
            lambda: not self.queue.pending and worker._buffer.unfinished_tasks == 0
            and self.queue.deleted == [valid.receipt_handle]
        ))
        self.assertEqual(len(builder.calls), 1)
        for message in malformed:
            self.assertNotIn(message.receipt_handle, self.queue.deleted)

    def test_failed_builds_are_left_for_redelivery(self):
        failing_id = uuid.uuid4()
        missing_id = uuid.uuid4()
        failing = self.queue.push(_descriptor_body(failing_id))
        missing = self.queue.push(_descriptor_body(missing_id))
        ok = self.queue.push(_descriptor_body())
        builder = CountingBuilder(delay=0, fail_ids=[failing_id], missing_ids=[missing_id])

        worker = self._start(builder)

        self.assertTrue(self._wait_for(
            lambda: len(builder.calls) == 3 and worker._buffer.unfinished_tasks == 0
        ))
        self.assertEqual(self.queue.deleted, [ok.receipt_handle])
        self.assertNotIn(failing.receipt_handle, self.queue.deleted)
        self.assertNotIn(missing.receipt_handle, self.queue.deleted)

    def test_empty_queue_backs_off_instead_of_spinning(self):
        builder = CountingBuilder()
        self._start(builder, poll_backoff_initial_s=0.05, poll_backoff_max_s=0.2)
        time.sleep(0.5)
        # Without backoff this would be thousands of calls.
        self.assertLess(self.queue.receive_calls, 20)
        self.assertGreater(self.queue.receive_calls, 0)

    def test_backoff_keeps_a_floor_when_jitter_is_zero(self):
        builder = CountingBuilder()
        with patch("asyncreports.worker.random.uniform", return_value=0.0):
            self._start(builder, poll_backoff_initial_s=0.1, poll_backoff_max_s=0.2)
            time.sleep(0.5)
            # Waits of 0.05, 0.1, 0.1, ... seconds between empty receives.
            self.assertLessEqual(self.queue.receive_calls, 8)
            self.assertGreaterEqual(self.queue.receive_calls, 2)

    def test_stop_event_ends_worker(self):
        builder = CountingBuilder(delay=0)
        self._start(builder)
        self.assertTrue(self._wait_for(lambda: self.queue.receive_calls > 0))

        self.stop.set()
        self.thread.join(timeout=15)

        self.assertFalse(self.thread.is_alive())

    def test_stopped_worker_takes_no_jobs(self):
        self.queue.push(_descriptor_body())
        builder = CountingBuilder(delay=0)
        self.stop.set()

        worker = ReportWorker(make_settings(), self.queue, builder)
        worker.start(stop_event=self.stop)

        self.assertEqual(builder.calls, [])
        self.assertEqual(self.queue.deleted, [])

    def test_unresolvable_queue_is_fatal(self):
        worker = ReportWorker(make_settings(), FakeJobQueue(fail_url=True), CountingBuilder())
        with self.assertRaises(FatalQueueError):
            worker.start(stop_event=self.stop)


class ReportWorkerHealthTests(unittest.TestCase):
    def test_all_checks_healthy(self):
        class Healthy:
            def is_healthy(self):
                return True

        worker = ReportWorker(make_settings(), FakeJobQueue(), CountingBuilder(),
                              report_store=Healthy(), storage_client=Healthy())
        status = worker.check_health()
        self.assertTrue(status["healthy"])
        self.assertEqual(set(status["checks"]), {"queue", "storage", "database"})

    def test_failing_checks_are_reported(self):
        class Broken:
            def is_healthy(self):
                raise RuntimeError("connection refused")

        worker = ReportWorker(make_settings(), FakeJobQueue(fail_url=True), CountingBuilder(),
                              report_store=Broken())
        status = worker.check_health()
        self.assertFalse(status["healthy"])
        self.assertFalse(status["checks"]["queue"]["healthy"])
        self.assertEqual(status["checks"]["database"]["error"], "connection refused")
        self.assertTrue(status["checks"]["storage"]["healthy"])


if __name__ == "__main__":
    unittest.main()
