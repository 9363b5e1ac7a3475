"""
Pytest fixtures for vodforge tests.

Provides an in-memory stand-in for the Redis commands used by the status
store and job queue, a scripted encoder that writes real segment files,
and helpers to build a worker pool around them.
"""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from redis.exceptions import ResponseError

from api.enums import AckOutcome, JobStatus
from api.job_queue import JobDelivery
from api.models import JobProgress, QualityProfile, SegmentInfo, TranscodingJob, VideoInfo, profiles_for_names
from api.redis_client import RedisClient
from api.status_store import StatusStore


def _normalize_range(length: int, start: int, end: int):
    if start < 0:
        start = max(0, length + start)
    if end < 0:
        end = length + end
    return start, end + 1


class InMemoryRedis:
    """The subset of redis.asyncio.Redis used by StatusStore and JobQueue.

    One consumer group per stream; pending entries are never idle, so
    abandoned-message recovery is exercised with mocks instead.
    """

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.lists: Dict[str, List[str]] = {}
        self.streams: Dict[str, List[tuple]] = {}
        self.groups: Dict[str, set] = {}
        self.ttls: Dict[str, float] = {}
        self.acked: List[str] = []
        # Stream IDs are "<n>-0", n shared by all streams; tests set it to
        # the current time in ms when an entry must look recent
        self._sequence = 0
        self.cursors: Dict[str, int] = {}
        self.pending: Dict[str, str] = {}

    async def ping(self):
        return True

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None, px=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex:
            self.ttls[key] = ex
        elif px:
            self.ttls[key] = px / 1000
        else:
            self.ttls.pop(key, None)
        return True

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return key in self.values or key in self.lists

    async def pexpire(self, key, milliseconds):
        return await self.expire(key, milliseconds / 1000)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if key in self.values or key in self.lists:
                removed += 1
            self.values.pop(key, None)
            self.lists.pop(key, None)
            self.ttls.pop(key, None)
        return removed

    async def rpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        items.extend(values)
        return len(items)

    async def ltrim(self, key, start, end):
        items = self.lists.get(key, [])
        lo, hi = _normalize_range(len(items), start, end)
        self.lists[key] = items[lo:hi]
        return True

    async def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        lo, hi = _normalize_range(len(items), start, end)
        return list(items[lo:hi])

    async def xgroup_create(self, name, group, id="0", mkstream=False):
        self.streams.setdefault(name, [])
        self.groups.setdefault(name, set()).add(group)
        return True

    async def xadd(self, name, fields, maxlen=None):
        stream = self.streams.setdefault(name, [])
        self._sequence += 1
        message_id = f"{self._sequence}-0"
        stream.append((message_id, dict(fields)))
        return message_id

    async def xlen(self, name):
        return len(self.streams.get(name, []))

    async def xreadgroup(self, group, consumer, streams, count=None, block=None):
        for name in streams:
            cursor = self.cursors.get(name, 0)
            stream = self.streams.get(name, [])
            undelivered = [m for m in stream if int(m[0].split("-")[0]) > cursor]
            if undelivered:
                message_id, data = undelivered[0]
                self.cursors[name] = int(message_id.split("-")[0])
                self.pending[message_id] = consumer
                return [[name, [(message_id, dict(data))]]]
        return []

    async def xpending_range(self, name, group, min="-", max="+", count=10):
        return []

    async def xpending(self, name, group):
        ids = sorted(self.pending, key=lambda m: int(m.split("-")[0]))
        summary = {"pending": len(ids), "min": None, "max": None}
        if ids:
            summary.update({"min": ids[0], "max": ids[-1]})
        return summary

    async def xclaim(self, name, group, consumer, min_idle_time, message_ids, justid=False):
        claimed = [m for m in message_ids if m in self.pending]
        for message_id in claimed:
            self.pending[message_id] = consumer
        if justid:
            return claimed
        entries = dict(self.streams.get(name, []))
        return [(m, dict(entries[m])) for m in claimed if m in entries]

    async def xack(self, name, group, *ids):
        self.acked.extend(ids)
        for message_id in ids:
            self.pending.pop(message_id, None)
        return len(ids)

    async def xinfo_groups(self, name):
        if name not in self.groups:
            raise ResponseError("no such key")
        cursor = self.cursors.get(name, 0)
        lag = sum(1 for m, _ in self.streams.get(name, []) if int(m.split("-")[0]) > cursor)
        return [
            {"name": group, "last-delivered-id": f"{cursor}-0", "pending": len(self.pending), "lag": lag}
            for group in self.groups[name]
        ]

    async def xtrim(self, name, minid=None, approximate=True):
        bound = int(minid.split("-")[0])
        stream = self.streams.get(name, [])
        kept = [m for m in stream if int(m[0].split("-")[0]) >= bound]
        self.streams[name] = kept
        return len(stream) - len(kept)


class RecordingStatusStore(StatusStore):
    """StatusStore that keeps every entry it writes, in order."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.history: List[JobProgress] = []

    async def set(self, progress: JobProgress) -> None:
        await super().set(progress)
        self.history.append(progress)

    def statuses(self, job_id: str) -> List[JobStatus]:
        return [p.status for p in self.history if p.job_id == job_id]

    def progress_values(self, job_id: str) -> List[int]:
        return [p.progress for p in self.history if p.job_id == job_id]


class FakeQueue:
    """Queue double for the worker pool: records acks, rejects and heartbeats."""

    def __init__(self, deliveries: Optional[List[JobDelivery]] = None):
        self.deliveries = list(deliveries or [])
        self.acknowledged: List[JobDelivery] = []
        self.rejected: List[tuple] = []
        self.heartbeats: List[tuple] = []
        self.touched: List[str] = []
        # job_ids whose claim another worker has taken
        self.lost: set = set()
        self.healthy = True
        self.initialized = False
        self.on_empty = None

    async def initialize(self):
        self.initialized = True

    async def ping(self):
        return self.healthy

    async def claim_job(self):
        if self.deliveries:
            return self.deliveries.pop(0)
        if self.on_empty:
            self.on_empty()
        await asyncio.sleep(0)
        return None

    async def touch_job(self, delivery):
        self.touched.append(delivery.job_id)
        return delivery.job_id not in self.lost

    async def acknowledge_job(self, delivery):
        self.acknowledged.append(delivery)
        return AckOutcome.ACKED

    async def reject_job(self, delivery, error):
        self.rejected.append((delivery, error))
        return AckOutcome.ACKED

    async def record_heartbeat(self, worker_id, info, ttl_seconds):
        self.heartbeats.append((worker_id, info, ttl_seconds))


class ScriptedEncoder:
    """
    Encoder double that writes real segment files.

    `failures` maps a quality name to exceptions raised on successive
    encodes of that quality (once the list is used up, encodes succeed).
    """

    def __init__(
        self,
        width: int = 1920,
        height: int = 1080,
        duration: Optional[float] = 25.0,
        segments_per_quality: int = 3,
        failures: Optional[Dict[str, list]] = None,
        available: Optional[List[bool]] = None,
    ):
        self.width = width
        self.height = height
        self.duration = duration
        self.segments_per_quality = segments_per_quality
        self.failures = {name: list(errors) for name, errors in (failures or {}).items()}
        self.available = list(available or [True])
        self.calls: List[str] = []
        self.probe_error: Optional[BaseException] = None
        # Awaited with the quality at the start of every encode
        self.on_transcode = None

    async def is_available(self):
        if len(self.available) > 1:
            return self.available.pop(0)
        return self.available[0]

    async def probe(self, input_path):
        if self.probe_error is not None:
            raise self.probe_error
        return VideoInfo(
            width=self.width,
            height=self.height,
            duration=self.duration,
            codec="h264",
            fps=30.0,
            size=Path(input_path).stat().st_size,
        )

    async def transcode(self, input_path, output_dir, quality, on_progress=None, duration=None, timeout=None):
        self.calls.append(quality.name)
        if self.on_transcode:
            await self.on_transcode(quality)
        pending = self.failures.get(quality.name)
        if pending:
            raise pending.pop(0)

        quality_dir = Path(output_dir) / quality.name
        quality_dir.mkdir(parents=True, exist_ok=True)
        segments = []
        for index in range(self.segments_per_quality):
            filename = f"segment_{index:03d}.ts"
            (quality_dir / filename).write_bytes(b"\x47" * 188)
            segments.append(SegmentInfo(filename=filename, duration=10.0 if index < 2 else 5.0, size=188))
        if on_progress:
            await on_progress(50)
            await on_progress(100)
        return segments


@pytest.fixture
def memory_redis():
    return InMemoryRedis()


@pytest.fixture
def redis_client(memory_redis):
    return RedisClient(url="redis://test", client=memory_redis)


@pytest.fixture
def status_store(redis_client):
    return RecordingStatusStore(redis_client, prefix="test")


@pytest.fixture
def input_file(tmp_path):
    path = tmp_path / "input.mp4"
    path.write_bytes(b"\x00" * 1024)
    return path


@pytest.fixture
def make_job(tmp_path, input_file):
    """Factory for jobs reading input_file and writing under tmp_path/out."""

    def _make(job_id: str = "job-1", qualities=("360p", "720p", "1080p"), input_path=None):
        profiles = [q if isinstance(q, QualityProfile) else profiles_for_names([q])[0] for q in qualities]
        return TranscodingJob.create(
            input_path=str(input_path or input_file),
            output_path=str(tmp_path / "out" / job_id),
            qualities=profiles,
            job_id=job_id,
        )

    return _make


@pytest.fixture
def sleeps():
    """Recorded sleep delays; the fake sleep still yields to the event loop."""
    return []


@pytest.fixture
def make_pool(status_store, sleeps):
    """Factory for a WorkerPool wired to fakes with no real delays."""
    from worker.pool import WorkerPool

    async def fake_sleep(delay):
        sleeps.append(delay)
        await asyncio.sleep(0)

    def _make(encoder=None, queue=None, **kwargs):
        kwargs.setdefault("progress_interval", 0)
        kwargs.setdefault("worker_id", "worker-test")
        return WorkerPool(
            queue=queue or FakeQueue(),
            status_store=status_store,
            encoder=encoder or ScriptedEncoder(),
            sleep=fake_sleep,
            **kwargs,
        )

    return _make
