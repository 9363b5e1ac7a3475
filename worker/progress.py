"""
Encoder progress: line scanning and throttled status reporting.

ProgressLineScanner turns ffmpeg output lines into samples. It understands
both the machine-readable `-progress` format (out_time_us=, out_time_ms=,
out_time=, frame=, progress=end) and the classic stderr stats line
("frame=  120 fps=... time=00:00:05.00 ..."). It does no I/O.

ProgressReporter sits between the encoder and the status store. Encoders
report as often as they like; the reporter writes at most once per
interval, never lowers the stored value, and always writes step changes
and 100%.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from api.enums import JobStatus
from api.redis_client import RedisUnavailableError
from api.status_store import StatusStore
from config import PROGRESS_UPDATE_INTERVAL

logger = logging.getLogger(__name__)

_TIMESTAMP_RE = re.compile(r"(-?\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_CLASSIC_TIME_RE = re.compile(r"\btime=\s*(-?\d+:\d{2}:\d{2}(?:\.\d+)?)")
_CLASSIC_FRAME_RE = re.compile(r"\bframe=\s*(\d+)")


def parse_timestamp(value: str) -> Optional[float]:
    """Parse HH:MM:SS(.fraction) into seconds, or None if malformed or negative."""
    match = _TIMESTAMP_RE.fullmatch(value.strip())
    if not match:
        return None
    hours, minutes, seconds = int(match.group(1)), int(match.group(2)), float(match.group(3))
    if hours < 0:
        return None
    return hours * 3600 + minutes * 60 + seconds


def percent_complete(elapsed: Optional[float], duration: Optional[float]) -> Optional[int]:
    """
    Convert encoder position to a whole percentage in [0, 100].

    Returns None when either value is unknown or the duration is not positive.
    """
    if elapsed is None or not duration or duration <= 0:
        return None
    return max(0, min(100, int(elapsed / duration * 100)))


@dataclass(frozen=True)
class ProgressSample:
    """Latest known encoder position."""

    elapsed: Optional[float] = None
    frame: Optional[int] = None
    done: bool = False


class ProgressLineScanner:
    """Stateful scanner over encoder output lines."""

    def __init__(self) -> None:
        self.elapsed: Optional[float] = None
        self.frame: Optional[int] = None
        self.done = False

    def _set_elapsed(self, seconds: Optional[float]) -> bool:
        if seconds is None or seconds < 0:
            return False
        self.elapsed = seconds
        return True

    def feed(self, line: str) -> Optional[ProgressSample]:
        """
        Consume one line of encoder output.

        Returns:
            A sample if the line carried position, frame or end information,
            otherwise None
        """
        line = line.strip()
        if not line:
            return None

        updated = False
        key, sep, value = line.partition("=")
        key = key.strip()
        value = value.strip()

        if sep and " " not in key and "=" not in value:
            if key == "out_time_us" or key == "out_time_ms":
                # Both are microseconds in ffmpeg's -progress output
                try:
                    updated = self._set_elapsed(int(value) / 1_000_000)
                except ValueError:
                    return None
            elif key == "out_time":
                updated = self._set_elapsed(parse_timestamp(value))
            elif key == "frame":
                try:
                    self.frame = int(value)
                    updated = True
                except ValueError:
                    return None
            elif key == "progress":
                if value == "end":
                    self.done = True
                    updated = True
            if updated:
                return self.sample()

        # Classic stats line: several key=value pairs on one line
        time_match = _CLASSIC_TIME_RE.search(line)
        if time_match:
            updated = self._set_elapsed(parse_timestamp(time_match.group(1))) or updated
        frame_match = _CLASSIC_FRAME_RE.search(line)
        if frame_match:
            self.frame = int(frame_match.group(1))
            updated = True

        return self.sample() if updated else None

    def sample(self) -> ProgressSample:
        return ProgressSample(elapsed=self.elapsed, frame=self.frame, done=self.done)


class ProgressReporter:
    """
    Throttled, monotonic progress writer for one job.

    The same reporter is kept across retry attempts of a job so the stored
    progress never goes backwards.
    """

    def __init__(
        self,
        status_store: StatusStore,
        job_id: str,
        min_interval: float = PROGRESS_UPDATE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = status_store
        self.job_id = job_id
        self.min_interval = min_interval
        self._clock = clock
        self._lock = asyncio.Lock()
        self.last_write_time: Optional[float] = None
        self.reported = 0  # highest value accepted
        self.written = -1  # highest value persisted
        self.step: Optional[str] = None
        self._written_step: Optional[str] = None
        self.attempt = 0
        self.writes = 0

    async def report(self, progress: float, step: Optional[str] = None) -> bool:
        """
        Offer a progress value (0-100) and optionally a new step label.

        Returns:
            True if the update was written, False if coalesced or rate-limited
        """
        async with self._lock:
            value = max(self.reported, max(0, min(100, int(progress))))
            self.reported = value
            step_changed = step is not None and step != self.step
            if step is not None:
                self.step = step

            now = self._clock()
            due = self.last_write_time is None or now - self.last_write_time >= self.min_interval
            forced = step_changed or (value == 100 and self.written < 100)
            if not forced and (not due or value == self.written):
                return False
            return await self._write(now)

    async def set_step(self, step: str, attempt: Optional[int] = None) -> bool:
        """Change the step label (always written)."""
        if attempt is not None:
            self.attempt = attempt
        return await self.report(self.reported, step=step)

    async def flush(self) -> bool:
        """Write any coalesced value that has not been persisted yet."""
        async with self._lock:
            if self.reported == self.written and self.step == self._written_step:
                return False
            return await self._write(self._clock())

    async def _write(self, now: float) -> bool:
        try:
            await self._store.update(
                self.job_id,
                status=JobStatus.PROCESSING,
                progress=self.reported,
                current_step=self.step,
                attempt=self.attempt,
            )
        except RedisUnavailableError as e:
            # Progress is advisory; the value stays pending for the next write
            logger.warning(f"Progress update for job {self.job_id} failed: {e}")
            return False
        self.last_write_time = now
        self.written = self.reported
        self._written_step = self.step
        self.writes += 1
        return True
