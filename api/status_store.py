"""
Job status store backed by Redis.

Each job has one JSON status entry at {prefix}:status:{job_id}
(last write wins) and a bounded list of classified errors at
{prefix}:errors:{job_id}. A global list {prefix}:errors:recent keeps the
latest errors across all jobs for statistics.

Entries are never deleted by the store; terminal entries may carry a
retention TTL (STATUS_RETENTION_SECONDS, 0 = keep forever).
"""

import json
import logging
from dataclasses import replace
from typing import Any, List, Optional

from api.enums import JobStatus
from api.models import ClassifiedError, JobProgress, utcnow
from api.redis_client import RedisClient
from config import (
    ERROR_GLOBAL_HISTORY_LIMIT,
    ERROR_HISTORY_LIMIT,
    REDIS_KEY_PREFIX,
    STATUS_RETENTION_SECONDS,
)

logger = logging.getLogger(__name__)


class StatusStore:
    """Reads and writes job status entries and error history."""

    def __init__(
        self,
        redis: RedisClient,
        prefix: str = REDIS_KEY_PREFIX,
        retention_seconds: int = STATUS_RETENTION_SECONDS,
        history_limit: int = ERROR_HISTORY_LIMIT,
        global_history_limit: int = ERROR_GLOBAL_HISTORY_LIMIT,
    ) -> None:
        self._redis = redis
        self.prefix = prefix
        self.retention_seconds = retention_seconds
        self.history_limit = history_limit
        self.global_history_limit = global_history_limit

    def status_key(self, job_id: str) -> str:
        return f"{self.prefix}:status:{job_id}"

    def errors_key(self, job_id: str) -> str:
        return f"{self.prefix}:errors:{job_id}"

    @property
    def recent_errors_key(self) -> str:
        return f"{self.prefix}:errors:recent"

    def _ttl_for(self, status: JobStatus) -> Optional[int]:
        if status.is_terminal and self.retention_seconds > 0:
            return self.retention_seconds
        return None

    async def set(self, progress: JobProgress) -> None:
        """Write a status entry (overwrites)."""
        ttl = self._ttl_for(progress.status)
        payload = progress.to_json()

        async def _write(redis: Any) -> None:
            await redis.set(self.status_key(progress.job_id), payload, ex=ttl)
            if ttl:
                await redis.expire(self.errors_key(progress.job_id), ttl)

        await self._redis.execute(_write)

    async def get(self, job_id: str) -> Optional[JobProgress]:
        """Read a status entry, or None if the job is unknown."""
        raw = await self._redis.execute(lambda redis: redis.get(self.status_key(job_id)))
        if raw is None:
            return None
        return JobProgress.from_json(raw)

    async def mark_queued(self, job_id: str) -> JobProgress:
        """Reset a job to QUEUED (used on submission and resubmission)."""
        progress = JobProgress(job_id=job_id, status=JobStatus.QUEUED, progress=0, current_step="Queued")
        await self.set(progress)
        return progress

    async def update(self, job_id: str, **changes: Any) -> JobProgress:
        """
        Apply field changes to a job's status entry.

        Progress never goes down while the job is not re-queued: a lower
        value is ignored and the stored one is kept.
        """
        current = await self.get(job_id)
        if current is None:
            current = JobProgress(job_id=job_id, status=JobStatus.PROCESSING)

        if "progress" in changes and changes.get("status") != JobStatus.QUEUED:
            changes["progress"] = max(int(changes["progress"]), current.progress)

        updated = replace(current, updated_at=utcnow(), **changes)
        await self.set(updated)
        return updated

    async def append_error(self, job_id: str, error: ClassifiedError) -> None:
        """Append a classified error to the job's history and the global window."""
        payload = json.dumps(error.to_dict())

        async def _write(redis: Any) -> None:
            await redis.rpush(self.errors_key(job_id), payload)
            await redis.ltrim(self.errors_key(job_id), -self.history_limit, -1)
            await redis.rpush(self.recent_errors_key, payload)
            await redis.ltrim(self.recent_errors_key, -self.global_history_limit, -1)

        await self._redis.execute(_write)

    async def get_errors(self, job_id: str) -> List[ClassifiedError]:
        """Classified error history of a job, oldest first."""
        raw = await self._redis.execute(lambda redis: redis.lrange(self.errors_key(job_id), 0, -1))
        return [ClassifiedError.from_dict(json.loads(item)) for item in raw or []]

    async def get_recent_errors(self) -> List[ClassifiedError]:
        """Latest classified errors across all jobs, oldest first."""
        raw = await self._redis.execute(lambda redis: redis.lrange(self.recent_errors_key, 0, -1))
        return [ClassifiedError.from_dict(json.loads(item)) for item in raw or []]

    async def clear_errors(self, job_id: str) -> None:
        await self._redis.execute(lambda redis: redis.delete(self.errors_key(job_id)))
