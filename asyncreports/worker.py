import logging
import queue
import random
import signal
import threading
import time
from typing import Any, Dict, List, Optional

from asyncreports.errors import MalformedJobError, NotFoundError, ReportInProgressError
from asyncreports.queue_handler import JobDescriptor, QueueMessage
from asyncreports.report_builder import ReportBuilder
from asyncreports.settings import WorkerSettings

logger = logging.getLogger(__name__)

# How often blocked puts/gets wake up to re-check the stop event.
_STOP_CHECK_INTERVAL_S = 0.5


class ReportWorker:
    """
    Report worker: drains the job queue into a fixed pool of build slots.

    The calling thread runs the receive loop and feeds a bounded buffer of
    capacity `concurrency`; `concurrency` slot threads each take one message
    at a time, build the report and delete the message only on success.
    """

    def __init__(
        self,
        settings: WorkerSettings,
        job_queue,
        builder: ReportBuilder,
        report_store=None,
        storage_client=None,
    ):
        self.settings = settings
        self.job_queue = job_queue
        self.builder = builder
        self.report_store = report_store
        self.storage_client = storage_client
        self.queue_name = settings.queue_name
        self.concurrency = max(1, settings.worker_concurrency)
        self.job_timeout_s = settings.job_timeout_seconds
        self.stop_event = threading.Event()
        self._buffer: "queue.Queue[QueueMessage]" = queue.Queue(maxsize=self.concurrency)
        self._slots: List[threading.Thread] = []
        self._watchdog_thread: Optional[threading.Thread] = None
        self._queue_url: Optional[str] = None

    def start(self, stop_event: Optional[threading.Event] = None,
              install_signal_handlers: bool = False) -> None:
        """
        Run until the stop event is set.

        Raises:
            FatalQueueError: the queue endpoint cannot be resolved
        """
        if stop_event is not None:
            self.stop_event = stop_event

        self._queue_url = self.job_queue.get_queue_url(self.queue_name)
        logger.info(
            "starting worker queue=%s queue_url=%s concurrency=%d job_timeout_s=%.1f",
            self.queue_name, self._queue_url, self.concurrency, self.job_timeout_s,
        )

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

        for slot_id in range(self.concurrency):
            thread = threading.Thread(
                target=self._slot_loop,
                args=(slot_id,),
                name=f"report-slot-{slot_id}",
                daemon=True,
            )
            thread.start()
            self._slots.append(thread)

        self._start_watchdog()

        try:
            self._receive_loop()
        finally:
            # In-flight builds finish or hit their deadline; buffered messages are redelivered.
            for thread in self._slots:
                thread.join(timeout=self.job_timeout_s + _STOP_CHECK_INTERVAL_S)
            logger.info("Worker stopped")

    def stop(self) -> None:
        logger.info("Stopping worker...")
        self.stop_event.set()

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.stop()

    def _start_watchdog(self) -> None:
        """Start the background thread that returns expired leases to the queue."""
        self._watchdog_thread = threading.Thread(
            target=self._watchdog_loop,
            name="report-queue-watchdog",
            daemon=True,
        )
        self._watchdog_thread.start()
        logger.info("queue_watchdog_started interval_s=%d", self.settings.watchdog_interval_s)

    def _watchdog_loop(self) -> None:
        while not self.stop_event.wait(self.settings.watchdog_interval_s):
            try:
                reclaimed = self.job_queue.reclaim_expired(self._queue_url)
                if reclaimed:
                    logger.info("queue_watchdog_tick_done reclaimed=%d", reclaimed)
            except Exception as exc:
                logger.error("queue_watchdog_tick_error: %s", exc)

    def _receive_loop(self) -> None:
        max_messages = min(self.concurrency + 1, getattr(self.job_queue, "max_receive", self.concurrency + 1))
        initial_backoff = self.settings.poll_backoff_initial_s
        backoff = initial_backoff

        while not self.stop_event.is_set():
            try:
                messages = self.job_queue.receive(self._queue_url, max_messages)
            except Exception as e:
                logger.error("failed to receive messages: %s", e)
                messages = []

            if not messages:
                # Equal jitter: wait between half and all of the current backoff.
                self.stop_event.wait(backoff / 2 + random.uniform(0, backoff / 2))
                backoff = min(backoff * 2, self.settings.poll_backoff_max_s)
                continue

            backoff = initial_backoff
            for message in messages:
                if not self._dispatch(message):
                    break

    def _dispatch(self, message: QueueMessage) -> bool:
        """Block until the buffer accepts the message or the worker stops."""
        while not self.stop_event.is_set():
            try:
                self._buffer.put(message, timeout=_STOP_CHECK_INTERVAL_S)
                return True
            except queue.Full:
                continue
        logger.info("worker stopping, message left for redelivery message_id=%s", message.message_id)
        return False

    def _slot_loop(self, slot_id: int) -> None:
        logger.info("starting slot #%d", slot_id)
        while not self.stop_event.is_set():
            try:
                message = self._buffer.get(timeout=_STOP_CHECK_INTERVAL_S)
            except queue.Empty:
                continue
            try:
                if self.stop_event.is_set():
                    logger.info("worker stopping, message left for redelivery message_id=%s", message.message_id)
                    break
                self._process_message(message, slot_id)
            except Exception as e:
                logger.error("slot_unexpected_error slot=%d message_id=%s: %s", slot_id, message.message_id, e)
            finally:
                self._buffer.task_done()
        logger.info("slot stopped slot=%d", slot_id)

    def _process_message(self, message: QueueMessage, slot_id: int) -> bool:
        """Build the report named by the message; delete the message only on success."""
        logger.info("processing message message_id=%s slot=%d", message.message_id, slot_id)

        try:
            job = JobDescriptor.from_json(message.body)
        except MalformedJobError as e:
            # Left in place for the queue's own expiry / dead-letter policy.
            logger.warning(
                "message body is invalid message_id=%s error=%s body=%r",
                message.message_id, e, message.body,
            )
            return False

        deadline = time.monotonic() + self.job_timeout_s
        try:
            report = self.builder.build(job.user_id, job.report_id, deadline=deadline)
        except NotFoundError as e:
            logger.warning("report_not_found message_id=%s: %s", message.message_id, e)
            return False
        except ReportInProgressError as e:
            logger.info("report_in_progress message_id=%s: %s", message.message_id, e)
            return False
        except Exception as e:
            logger.error(
                "failed to build report message_id=%s user=%s report=%s slot=%d error=%s",
                message.message_id, job.user_id, job.report_id, slot_id, e,
            )
            return False

        try:
            self.job_queue.delete(self._queue_url, message.receipt_handle)
        except Exception as e:
            logger.error("failed to delete message message_id=%s slot=%d error=%s", message.message_id, slot_id, e)
            return False

        logger.info(
            "job_succeeded message_id=%s report=%s status=%s slot=%d",
            message.message_id, job.report_id, report.status, slot_id,
        )
        return True

    def check_health(self) -> Dict[str, Any]:
        """Perform health check."""
        health_status: Dict[str, Any] = {
            "healthy": True,
            "checks": {}
        }

        checks = {
            "queue": lambda: self.job_queue.is_healthy(self.queue_name),
            "storage": lambda: self.storage_client is None or self.storage_client.is_healthy(),
            "database": lambda: self.report_store is None or self.report_store.is_healthy(),
        }
        for name, check in checks.items():
            try:
                healthy = bool(check())
                health_status["checks"][name] = {"healthy": healthy}
            except Exception as e:
                healthy = False
                health_status["checks"][name] = {"healthy": False, "error": str(e)}
            if not healthy:
                health_status["healthy"] = False

        return health_status
