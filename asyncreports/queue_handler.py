import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import List, Optional

import boto3
import redis
from botocore.exceptions import BotoCoreError, ClientError
from redis.exceptions import RedisError

from asyncreports.errors import FatalQueueError, MalformedJobError, TransientIOError
from asyncreports.settings import WorkerSettings

logger = logging.getLogger(__name__)

# SQS caps a single ReceiveMessage call at 10 messages.
SQS_MAX_MESSAGES = 10

_NIL_UUID = uuid.UUID(int=0)


@dataclass
class QueueMessage:
    message_id: str
    body: Optional[str]
    receipt_handle: str


@dataclass(frozen=True)
class JobDescriptor:
    """Wire message naming the report a worker should build."""

    user_id: uuid.UUID
    report_id: uuid.UUID

    def to_json(self) -> str:
        return json.dumps({"UserId": str(self.user_id), "ReportId": str(self.report_id)})

    @classmethod
    def from_json(cls, body: Optional[str]) -> "JobDescriptor":
        """
        Decode a {"UserId": ..., "ReportId": ...} message body.

        Raises:
            MalformedJobError: empty body, invalid JSON, or missing/invalid ids
        """
        if not body or not body.strip():
            raise MalformedJobError("message body is empty", body)
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise MalformedJobError(f"message body is not valid JSON: {e}", body) from e
        if not isinstance(data, dict):
            raise MalformedJobError("message body is not a JSON object", body)

        ids = []
        for field in ("UserId", "ReportId"):
            raw = data.get(field)
            if not raw:
                raise MalformedJobError(f"message body has empty {field}", body)
            try:
                value = uuid.UUID(str(raw))
            except ValueError as e:
                raise MalformedJobError(f"message body has invalid {field}: {raw!r}", body) from e
            if value == _NIL_UUID:
                raise MalformedJobError(f"message body has empty {field}", body)
            ids.append(value)
        return cls(user_id=ids[0], report_id=ids[1])


class SqsJobQueue:
    """SQS-backed job queue; visibility timeout and DLQ are managed by SQS."""

    max_receive = SQS_MAX_MESSAGES

    def __init__(self, settings: WorkerSettings, sqs_client=None):
        self.wait_time_seconds = settings.worker_poll_timeout
        self.sqs_client = sqs_client or boto3.client(
            "sqs",
            endpoint_url=settings.sqs_endpoint_url,
            region_name=settings.aws_region,
        )

    def get_queue_url(self, queue_name: str) -> str:
        try:
            response = self.sqs_client.get_queue_url(QueueName=queue_name)
        except (ClientError, BotoCoreError) as e:
            raise FatalQueueError(f"failed to get url for queue {queue_name}: {e}") from e
        return response["QueueUrl"]

    def receive(self, queue_url: str, max_messages: int) -> List[QueueMessage]:
        try:
            response = self.sqs_client.receive_message(
                QueueUrl=queue_url,
                MaxNumberOfMessages=max(1, min(max_messages, SQS_MAX_MESSAGES)),
                WaitTimeSeconds=self.wait_time_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"failed to receive messages: {e}") from e
        return [
            QueueMessage(
                message_id=m.get("MessageId", ""),
                body=m.get("Body"),
                receipt_handle=m["ReceiptHandle"],
            )
            for m in response.get("Messages", [])
        ]

    def delete(self, queue_url: str, receipt_handle: str) -> None:
        try:
            self.sqs_client.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"failed to delete message: {e}") from e

    def send(self, queue_url: str, body: str) -> str:
        try:
            response = self.sqs_client.send_message(QueueUrl=queue_url, MessageBody=body)
        except (ClientError, BotoCoreError) as e:
            raise TransientIOError(f"failed to send message: {e}") from e
        return response.get("MessageId", "")

    def reclaim_expired(self, queue_url: str) -> int:
        # SQS redelivers on its own once the visibility timeout elapses.
        return 0

    def is_healthy(self, queue_name: str) -> bool:
        try:
            self.get_queue_url(queue_name)
            return True
        except FatalQueueError:
            return False


class RedisJobQueue:
    """
    Redis list queue with at-least-once delivery.

    Received messages are moved atomically to `<queue>:processing` and leased
    in the `<queue>:leases` sorted set. delete() acknowledges a message;
    reclaim_expired() returns messages whose lease outlived the visibility
    timeout to the queue, or to `<queue>:dlq` after too many reclaims.
    """

    max_receive = 100

    def __init__(self, settings: WorkerSettings, redis_client=None):
        self.redis_client = redis_client or redis.from_url(settings.redis_url, decode_responses=True)
        self.poll_timeout = settings.worker_poll_timeout
        self.visibility_timeout_s = settings.queue_visibility_timeout_s
        self.max_reclaims = settings.watchdog_max_reclaims
        self.lock_ttl_s = settings.watchdog_interval_s * 2

    @staticmethod
    def _processing_list(queue_name: str) -> str:
        return queue_name + ":processing"

    @staticmethod
    def _leases(queue_name: str) -> str:
        return queue_name + ":leases"

    @staticmethod
    def _reclaims(queue_name: str) -> str:
        return queue_name + ":reclaims"

    @staticmethod
    def _dlq(queue_name: str) -> str:
        return queue_name + ":dlq"

    def get_queue_url(self, queue_name: str) -> str:
        try:
            self.redis_client.ping()
        except RedisError as e:
            raise FatalQueueError(f"failed to reach redis for queue {queue_name}: {e}") from e
        return queue_name

    def send(self, queue_name: str, body: str) -> str:
        message_id = uuid.uuid4().hex
        envelope = json.dumps({"id": message_id, "body": body})
        try:
            self.redis_client.lpush(queue_name, envelope)
        except RedisError as e:
            raise TransientIOError(f"failed to enqueue message: {e}") from e
        logger.info("enqueue_message queue=%s message=%s", queue_name, message_id)
        return message_id

    def receive(self, queue_name: str, max_messages: int) -> List[QueueMessage]:
        processing_list = self._processing_list(queue_name)
        raw_items: List[str] = []
        try:
            if self.poll_timeout > 0:
                first = self.redis_client.brpoplpush(queue_name, processing_list, self.poll_timeout)
            else:
                first = self.redis_client.rpoplpush(queue_name, processing_list)
            if first is None:
                return []
            raw_items.append(first)
            while len(raw_items) < max_messages:
                raw = self.redis_client.rpoplpush(queue_name, processing_list)
                if raw is None:
                    break
                raw_items.append(raw)

            now = time.time()
            self.redis_client.zadd(self._leases(queue_name), {raw: now for raw in raw_items})
        except RedisError as e:
            raise TransientIOError(f"failed to receive messages: {e}") from e

        return [self._decode(raw) for raw in raw_items]

    @staticmethod
    def _decode(raw: str) -> QueueMessage:
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError:
            envelope = None
        if isinstance(envelope, dict) and "id" in envelope and "body" in envelope:
            return QueueMessage(message_id=str(envelope["id"]), body=envelope["body"], receipt_handle=raw)
        # Pushed by something other than send(); deliver the raw payload as the body.
        digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]
        return QueueMessage(message_id=digest, body=raw, receipt_handle=raw)

    def delete(self, queue_name: str, receipt_handle: str) -> None:
        try:
            pipe = self.redis_client.pipeline()
            pipe.lrem(self._processing_list(queue_name), 1, receipt_handle)
            pipe.zrem(self._leases(queue_name), receipt_handle)
            pipe.hdel(self._reclaims(queue_name), receipt_handle)
            pipe.execute()
        except RedisError as e:
            raise TransientIOError(f"failed to delete message: {e}") from e
        logger.debug("ack_message queue=%s", queue_name)

    def reclaim_expired(self, queue_name: str) -> int:
        """
        Return stale leased messages to the queue.

        A distributed lock (SET NX EX) makes sure only one worker instance runs
        the reclaim at a time. Messages reclaimed more than max_reclaims times
        are pushed to the dead-letter list instead.
        """
        processing_list = self._processing_list(queue_name)
        leases = self._leases(queue_name)
        lock_key = f"{processing_list}:watchdog"
        now = time.time()

        try:
            acquired = self.redis_client.set(lock_key, "1", nx=True, ex=self.lock_ttl_s)
        except RedisError as e:
            logger.warning("watchdog_lock_failed queue=%s: %s", queue_name, e)
            return 0
        if not acquired:
            logger.debug("watchdog_lock_held queue=%s, skipping", queue_name)
            return 0

        reclaimed = 0
        try:
            for item in self.redis_client.lrange(processing_list, 0, -1):
                leased_at = self.redis_client.zscore(leases, item)
                if leased_at is None:
                    # Popped but never leased (receiver died in between); start the clock now.
                    self.redis_client.zadd(leases, {item: now})
                    continue
                age_s = now - float(leased_at)
                if age_s <= self.visibility_timeout_s:
                    continue

                removed = self.redis_client.lrem(processing_list, 1, item)
                self.redis_client.zrem(leases, item)
                if removed == 0:
                    continue

                reclaim_count = self.redis_client.hincrby(self._reclaims(queue_name), item, 1)
                if reclaim_count > self.max_reclaims:
                    self.redis_client.lpush(self._dlq(queue_name), item)
                    self.redis_client.hdel(self._reclaims(queue_name), item)
                    logger.error(
                        "queue_watchdog_dlq queue=%s reclaim_count=%d age_s=%d",
                        queue_name, reclaim_count, age_s,
                    )
                else:
                    self.redis_client.lpush(queue_name, item)
                    logger.warning(
                        "queue_watchdog_reclaimed queue=%s age_s=%d reclaim_count=%d",
                        queue_name, age_s, reclaim_count,
                    )
                    reclaimed += 1
        except RedisError as e:
            logger.error("queue_watchdog_failed queue=%s: %s", queue_name, e)
        finally:
            try:
                self.redis_client.delete(lock_key)
            except RedisError:
                pass  # TTL will expire naturally

        if reclaimed > 0:
            logger.info("queue_watchdog_done queue=%s reclaimed=%d", queue_name, reclaimed)
        return reclaimed

    def is_healthy(self, queue_name: str) -> bool:
        try:
            self.redis_client.ping()
            return True
        except RedisError:
            return False


def build_job_queue(settings: WorkerSettings):
    """Create the queue backend selected by QUEUE_BACKEND."""
    if settings.queue_backend == "redis":
        return RedisJobQueue(settings)
    return SqsJobQueue(settings)
