"""
Durable job queue for transcoding jobs, built on Redis Streams.

One stream carries job messages and one consumer group is shared by all
workers, so each message is delivered to a single worker at a time.
Messages that stay pending longer than REDIS_PENDING_TIMEOUT_MS (a worker
crashed mid-job) are reclaimed by the next worker that asks for work.

Keys (all under REDIS_KEY_PREFIX):
- {prefix}:jobs                   job stream
- {prefix}:jobs:dead-letter       failed jobs
- {prefix}:jobs:payload:{id}      latest submitted payload for a job_id
- {prefix}:jobs:inflight:{id}     set while a stream message is outstanding
- {prefix}:jobs:resubmitted:{id}  set when a job is resubmitted while claimed
- {prefix}:jobs:lock:{id}         owner of a job's output tree and status entry
- {prefix}:queue:paused           set while workers must not claim new jobs
- {prefix}:workers:{worker_id}    worker heartbeat, expires when heartbeats stop
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from redis.exceptions import ResponseError

from api.enums import AckOutcome
from api.errors import truncate_error
from api.models import TranscodingJob
from api.redis_client import RedisClient, RedisUnavailableError
from api.status_store import StatusStore
from config import (
    DEAD_LETTER_MAX_LEN,
    QUEUE_CLEAN_COMPLETED_HOURS,
    QUEUE_CLEAN_FAILED_HOURS,
    REDIS_CONSUMER_BLOCK_MS,
    REDIS_CONSUMER_GROUP,
    REDIS_KEY_PREFIX,
    REDIS_PENDING_TIMEOUT_MS,
    REDIS_STREAM_MAX_LEN,
)

logger = logging.getLogger(__name__)


def parse_stream_id(message_id: str) -> Tuple[int, int]:
    """Split a stream ID ("<ms>-<seq>") into a sortable tuple."""
    ms, _, seq = message_id.partition("-")
    return int(ms), int(seq or 0)


def stream_id_at(hours_ago: float) -> str:
    """Smallest stream ID that could have been added `hours_ago` hours ago."""
    now_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"{max(0, now_ms - int(hours_ago * 3600 * 1000))}-0"


@dataclass
class JobDelivery:
    """A job handed to a worker, with what is needed to acknowledge it."""

    job: TranscodingJob
    message_id: str
    delivery_count: int = 1
    recovered: bool = False
    claimed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def job_id(self) -> str:
        return self.job.job_id


class JobQueue:
    """Job queue over a Redis stream and consumer group."""

    def __init__(
        self,
        redis: RedisClient,
        status_store: StatusStore,
        consumer_name: str = "api-publisher",
        prefix: str = REDIS_KEY_PREFIX,
        group: str = REDIS_CONSUMER_GROUP,
        pending_timeout_ms: int = REDIS_PENDING_TIMEOUT_MS,
        block_ms: int = REDIS_CONSUMER_BLOCK_MS,
    ) -> None:
        self._redis = redis
        self._status_store = status_store
        self.consumer_name = consumer_name
        self.prefix = prefix
        self.group = group
        self.pending_timeout_ms = pending_timeout_ms
        self.block_ms = block_ms
        self._initialized = False

    @property
    def stream_name(self) -> str:
        return f"{self.prefix}:jobs"

    @property
    def dead_letter_stream(self) -> str:
        return f"{self.prefix}:jobs:dead-letter"

    @property
    def paused_key(self) -> str:
        return f"{self.prefix}:queue:paused"

    def payload_key(self, job_id: str) -> str:
        return f"{self.prefix}:jobs:payload:{job_id}"

    def inflight_key(self, job_id: str) -> str:
        return f"{self.prefix}:jobs:inflight:{job_id}"

    def resubmitted_key(self, job_id: str) -> str:
        return f"{self.prefix}:jobs:resubmitted:{job_id}"

    def lock_key(self, job_id: str) -> str:
        return f"{self.prefix}:jobs:lock:{job_id}"

    async def initialize(self) -> None:
        """Create the stream and consumer group if they don't exist."""

        async def _create(redis: Any) -> None:
            try:
                await redis.xgroup_create(self.stream_name, self.group, id="0", mkstream=True)
                logger.info(f"Created consumer group {self.group} on {self.stream_name}")
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise
                # Group already exists, that's fine

        await self._redis.execute(_create)
        self._initialized = True
        logger.info(f"Job queue initialized (consumer: {self.consumer_name})")

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def enqueue(self, job: TranscodingJob) -> bool:
        """
        Submit a job.

        The payload and the QUEUED status entry are always (re)written. A
        stream message is only added when none is outstanding for this
        job_id, so resubmitting a queued job does not create a second
        delivery; the worker picks up the latest payload. Resubmitting a
        job a worker is already running flags it, and the worker delivers
        the latest payload again when it releases the job.

        Args:
            job: Job to submit

        Returns:
            True if a new stream message was created, False if one was already pending

        Raises:
            RedisUnavailableError: If Redis is down
        """
        await self._ensure_initialized()

        await self._redis.execute(lambda redis: redis.set(self.payload_key(job.job_id), job.to_json()))
        await self._status_store.mark_queued(job.job_id)

        async def _publish(redis: Any) -> bool:
            if await redis.set(self.inflight_key(job.job_id), "1", nx=True):
                await self._add_message(redis, job)
                return True
            await redis.set(self.resubmitted_key(job.job_id), "1")
            # The outstanding message may have been released since the first check
            if await redis.set(self.inflight_key(job.job_id), "1", nx=True):
                await redis.delete(self.resubmitted_key(job.job_id))
                await self._add_message(redis, job)
                return True
            return False

        published = await self._redis.execute(_publish)
        if published:
            logger.info(f"Enqueued job {job.job_id} ({len(job.qualities)} qualities)")
        else:
            logger.info(f"Job {job.job_id} already pending, payload and status refreshed")
        return published

    async def _add_message(self, redis: Any, job: TranscodingJob) -> None:
        try:
            await redis.xadd(self.stream_name, job.to_stream_dict(), maxlen=REDIS_STREAM_MAX_LEN)
        except Exception:
            # Don't leave a marker behind for a message that was never written
            await redis.delete(self.inflight_key(job.job_id))
            raise

    async def get_job(self, job_id: str) -> Optional[TranscodingJob]:
        """Latest submitted payload for a job, or None if unknown."""
        raw = await self._redis.execute(lambda redis: redis.get(self.payload_key(job_id)))
        if raw is None:
            return None
        return TranscodingJob.from_json(raw)

    async def claim_job(self) -> Optional[JobDelivery]:
        """
        Claim the next job for this consumer.

        Recovers abandoned messages from crashed workers first, then blocks
        up to block_ms for a new message. Nothing is claimed while the queue
        is paused. A message whose job is locked by another live worker is
        left pending and retried after the stall timeout.

        Returns:
            JobDelivery if a job was claimed, None if no jobs available or Redis is down
        """
        try:
            await self._ensure_initialized()
            if await self.is_paused():
                return None
            delivery = await self._recover_abandoned_message()
            if delivery is None:
                delivery = await self._read_new_message()
            if delivery is None:
                return None
            if not await self._take_ownership(delivery):
                return None
        except RedisUnavailableError as e:
            # RedisClient handles recovery via circuit breaker
            logger.warning(f"Redis claim failed: {e}")
            return None
        return delivery

    async def _take_ownership(self, delivery: JobDelivery) -> bool:
        """Take the job lock and load the latest payload into the delivery."""
        job_id = delivery.job_id
        lock_key = self.lock_key(job_id)

        async def _own(redis: Any) -> bool:
            acquired = await redis.set(lock_key, self.consumer_name, px=self.pending_timeout_ms, nx=True)
            if not acquired:
                owner = await redis.get(lock_key)
                if owner != self.consumer_name:
                    logger.warning(
                        f"Job {job_id} is locked by {owner}, leaving message {delivery.message_id} pending"
                    )
                    return False
                await redis.pexpire(lock_key, self.pending_timeout_ms)
            # Resubmissions before this point are in the payload read below
            await redis.delete(self.resubmitted_key(job_id))
            latest = await redis.get(self.payload_key(job_id))
            if latest is not None:
                delivery.job = TranscodingJob.from_json(latest)
            return True

        return await self._redis.execute(_own)

    async def _recover_abandoned_message(self) -> Optional[JobDelivery]:
        """Reclaim a message idle longer than the pending timeout."""

        async def _recover(redis: Any) -> Optional[JobDelivery]:
            pending = await redis.xpending_range(self.stream_name, self.group, min="-", max="+", count=10)
            for msg in pending:
                idle_time = msg.get("time_since_delivered", 0)
                if idle_time <= self.pending_timeout_ms:
                    continue
                claimed = await redis.xclaim(
                    self.stream_name,
                    self.group,
                    self.consumer_name,
                    self.pending_timeout_ms,
                    [msg["message_id"]],
                )
                if not claimed:
                    # Another worker got there first
                    continue
                message_id, data = claimed[0]
                logger.info(
                    f"Recovered abandoned job {data.get('job_id')} from {msg.get('consumer')} (idle {idle_time}ms)"
                )
                return JobDelivery(
                    job=TranscodingJob.from_stream_dict(data),
                    message_id=message_id,
                    delivery_count=int(msg.get("times_delivered", 1)) + 1,
                    recovered=True,
                )
            return None

        return await self._redis.execute(_recover)

    async def _read_new_message(self) -> Optional[JobDelivery]:
        async def _read(redis: Any) -> Optional[JobDelivery]:
            messages = await redis.xreadgroup(
                self.group,
                self.consumer_name,
                {self.stream_name: ">"},
                count=1,
                block=self.block_ms,
            )
            if not messages:
                return None
            # messages format: [[stream_name, [(message_id, data), ...]]]
            _stream, msg_list = messages[0]
            if not msg_list:
                return None
            message_id, data = msg_list[0]
            return JobDelivery(job=TranscodingJob.from_stream_dict(data), message_id=message_id)

        return await self._redis.execute(_read)

    async def touch_job(self, delivery: JobDelivery) -> bool:
        """
        Reset the idle time of an in-flight message and extend the job lock.

        Returns:
            True if the job is still owned by this consumer, False if the
            claim was lost to another worker

        Raises:
            RedisUnavailableError: If Redis is down
        """
        lock_key = self.lock_key(delivery.job_id)

        async def _touch(redis: Any) -> bool:
            owner = await redis.get(lock_key)
            if owner is not None and owner != self.consumer_name:
                return False
            claimed = await redis.xclaim(
                self.stream_name,
                self.group,
                self.consumer_name,
                0,
                [delivery.message_id],
                justid=True,
            )
            if not claimed:
                return False
            await redis.set(lock_key, self.consumer_name, px=self.pending_timeout_ms)
            return True

        owned = await self._redis.execute(_touch)
        if not owned:
            logger.warning(f"Lost claim on job {delivery.job_id} (message {delivery.message_id})")
        return owned

    async def acknowledge_job(self, delivery: JobDelivery) -> AckOutcome:
        """
        Acknowledge a job's message and release its in-flight marker and lock.

        Nothing is released when another worker owns the job. If the job
        was resubmitted while it ran, its latest payload is added to the
        stream again and the in-flight marker is kept.
        """
        job_id = delivery.job_id
        lock_key = self.lock_key(job_id)

        async def _ack(redis: Any) -> AckOutcome:
            owner = await redis.get(lock_key)
            if owner is not None and owner != self.consumer_name:
                return AckOutcome.LOST
            resubmitted = await redis.delete(self.resubmitted_key(job_id))
            await redis.xack(self.stream_name, self.group, delivery.message_id)
            if not resubmitted:
                await redis.delete(self.inflight_key(job_id), lock_key)
                return AckOutcome.ACKED

            await redis.delete(lock_key)
            latest = await redis.get(self.payload_key(job_id))
            job = TranscodingJob.from_json(latest) if latest is not None else delivery.job
            await redis.xadd(self.stream_name, job.to_stream_dict(), maxlen=REDIS_STREAM_MAX_LEN)
            return AckOutcome.REQUEUED

        try:
            outcome = await self._redis.execute(_ack)
        except RedisUnavailableError as e:
            logger.warning(f"Failed to acknowledge job {job_id}: {e}")
            return AckOutcome.UNAVAILABLE

        if outcome == AckOutcome.LOST:
            logger.warning(f"Not acknowledging job {job_id}: owned by another worker")
        elif outcome == AckOutcome.REQUEUED:
            logger.info(f"Job {job_id} was resubmitted while running, delivering latest payload")
        else:
            logger.debug(f"Acknowledged job {job_id}")
        return outcome

    async def reject_job(self, delivery: JobDelivery, error: str) -> AckOutcome:
        """
        Reject a job and move it to dead letter stream.

        Args:
            delivery: The failed job
            error: Error message

        Returns:
            Outcome of the acknowledgment, UNAVAILABLE if the DLQ write failed
        """
        dlq_data = delivery.job.to_stream_dict()
        dlq_data["error"] = truncate_error(error)
        dlq_data["failed_at"] = datetime.now(timezone.utc).isoformat()
        dlq_data["original_message_id"] = delivery.message_id
        dlq_data["delivery_count"] = str(delivery.delivery_count)

        try:
            await self._redis.execute(
                lambda redis: redis.xadd(self.dead_letter_stream, dlq_data, maxlen=DEAD_LETTER_MAX_LEN)
            )
        except RedisUnavailableError as e:
            logger.warning(f"Failed to move job {delivery.job_id} to DLQ: {e}")
            return AckOutcome.UNAVAILABLE

        logger.info(f"Job {delivery.job_id} moved to dead letter queue: {error[:100]}")
        return await self.acknowledge_job(delivery)

    # Queue control

    async def pause(self) -> None:
        """
        Stop workers from claiming jobs. Jobs already running finish.

        Raises:
            RedisUnavailableError: If Redis is down
        """
        paused_at = datetime.now(timezone.utc).isoformat()
        await self._redis.execute(lambda redis: redis.set(self.paused_key, paused_at))
        logger.info("Job queue paused")

    async def resume(self) -> None:
        """
        Let workers claim jobs again.

        Raises:
            RedisUnavailableError: If Redis is down
        """
        await self._redis.execute(lambda redis: redis.delete(self.paused_key))
        logger.info("Job queue resumed")

    async def is_paused(self) -> bool:
        return await self._redis.execute(lambda redis: redis.get(self.paused_key)) is not None

    async def _group_info(self, redis: Any) -> Optional[dict]:
        try:
            groups = await redis.xinfo_groups(self.stream_name)
        except ResponseError:
            # Stream not created yet
            return None
        return next((g for g in groups if g.get("name") == self.group), None)

    async def _pending_summary(self, redis: Any) -> dict:
        try:
            return await redis.xpending(self.stream_name, self.group) or {}
        except ResponseError:
            # Group not created yet
            return {}

    async def clean(
        self,
        completed_hours: float = QUEUE_CLEAN_COMPLETED_HOURS,
        failed_hours: float = QUEUE_CLEAN_FAILED_HOURS,
    ) -> dict:
        """
        Trim old entries from the job and dead letter streams.

        Job messages are only removed once older than `completed_hours` and
        already delivered and acknowledged; pending and undelivered messages
        are never touched. Dead letters older than `failed_hours` are removed.

        Returns:
            Dict with the number of "completed" and "failed" entries removed

        Raises:
            RedisUnavailableError: If Redis is down
        """
        await self._ensure_initialized()

        async def _clean(redis: Any) -> dict:
            bounds = [stream_id_at(completed_hours)]
            group = await self._group_info(redis)
            bounds.append(group.get("last-delivered-id", "0-0") if group else "0-0")
            pending = await self._pending_summary(redis)
            if pending.get("pending") and pending.get("min"):
                bounds.append(pending["min"])
            min_id = min(bounds, key=parse_stream_id)

            completed = await redis.xtrim(self.stream_name, minid=min_id, approximate=False)
            failed = await redis.xtrim(self.dead_letter_stream, minid=stream_id_at(failed_hours), approximate=False)
            return {"completed": completed, "failed": failed}

        removed = await self._redis.execute(_clean)
        logger.info(f"Queue cleaned: {removed['completed']} completed, {removed['failed']} dead letters removed")
        return removed

    async def get_queue_stats(self) -> dict:
        """
        Get queue statistics.

        Returns:
            Dict with stream length, waiting (undelivered, None if Redis
            cannot tell), pending (claimed, not acknowledged), dead letter
            length and whether the queue is paused

        Raises:
            RedisUnavailableError: If Redis is down
        """

        async def _stats(redis: Any) -> dict:
            length = await redis.xlen(self.stream_name)
            pending = await self._pending_summary(redis)
            group = await self._group_info(redis)
            dlq_length = await redis.xlen(self.dead_letter_stream)
            paused = await redis.get(self.paused_key)
            return {
                "stream": self.stream_name,
                "length": length,
                "waiting": group.get("lag") if group else None,
                "pending": pending.get("pending", 0),
                "dead_letter": dlq_length,
                "paused": paused is not None,
            }

        return await self._redis.execute(_stats)

    def worker_key(self, worker_id: str) -> str:
        return f"{self.prefix}:workers:{worker_id}"

    async def record_heartbeat(self, worker_id: str, info: dict, ttl_seconds: int) -> None:
        """
        Record worker liveness; the key expires if heartbeats stop.

        Raises:
            RedisUnavailableError: If Redis is down
        """
        payload = json.dumps({**info, "last_heartbeat": datetime.now(timezone.utc).isoformat()})
        await self._redis.execute(lambda redis: redis.set(self.worker_key(worker_id), payload, ex=ttl_seconds))

    async def ping(self) -> bool:
        """Check the queue connection."""
        return await self._redis.health_check(force=True)
