"""
Worker pool: claims jobs from the queue and runs the HLS pipeline.

Each of the N worker slots processes one job end to end:

    check input -> probe -> resolve qualities -> clean output
    -> per quality: transcode + media playlist
    -> master playlist -> validate -> COMPLETED

Every failure is classified, recorded, and passed to the retry policy.
Retries run in place (same job, same delivery); once the policy gives up
the job is marked FAILED and moved to the dead letter stream.

A job whose claim is lost to another worker (heartbeat refresh or final
ownership check fails) is abandoned at the next stage boundary or progress
update, without touching its status entry or stream message.

Overall progress while transcoding is 5 + 85 * (done fraction of all
qualities); the remaining steps take it to 100.
"""

import asyncio
import logging
import shutil
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Set

from api.enums import AckOutcome, JobStatus, PipelineStage
from api.errors import truncate_error
from api.job_queue import JobDelivery, JobQueue
from api.models import ClassifiedError, QualityProfile, TranscodingJob
from api.redis_client import RedisUnavailableError
from api.status_store import StatusStore
from config import (
    DOWNSCALE_TOLERANCE,
    ERROR_SUMMARY_MAX_LENGTH,
    PARALLEL_QUALITIES,
    PROGRESS_UPDATE_INTERVAL,
    RESCALE_FALLBACK_ENABLED,
    WORKER_CONCURRENCY,
    WORKER_HEARTBEAT_INTERVAL,
    WORKER_HEARTBEAT_TIMEOUT,
    WORKER_IDLE_SLEEP,
    WORKER_STARTUP_RETRY_INTERVAL,
)
from worker.alerts import (
    alert_job_failed,
    alert_job_recovered,
    alert_max_retries_exceeded,
    alert_worker_shutdown,
    alert_worker_startup,
    send_alert_fire_and_forget,
)
from worker.encoder import EncoderDriver
from worker.errors import ClaimLostError, EncoderError, ErrorClassifier, InputFileError, PlaylistValidationError
from worker.playlist import MASTER_PLAYLIST_NAME, validate_output, write_master_playlist, write_media_playlist
from worker.progress import ProgressReporter
from worker.quality import resolve_qualities
from worker.retry_policy import RetryDecision, RetryPolicy

logger = logging.getLogger(__name__)

# Overall progress milestones
PROGRESS_PROBED = 2
PROGRESS_RESOLVED = 4
PROGRESS_TRANSCODE_START = 5
PROGRESS_TRANSCODE_SPAN = 85
PROGRESS_PLAYLISTS_WRITTEN = 93
PROGRESS_VALIDATED = 97


@dataclass
class JobContext:
    """Mutable state of one attempt at a job."""

    job: TranscodingJob
    reporter: ProgressReporter
    attempt: int
    stage: PipelineStage = PipelineStage.INPUT
    qualities: List[QualityProfile] = field(default_factory=list)
    quality_progress: Dict[str, int] = field(default_factory=dict)

    def overall_progress(self) -> float:
        if not self.qualities:
            return PROGRESS_TRANSCODE_START
        done = sum(self.quality_progress.get(q.name, 0) for q in self.qualities) / 100
        return PROGRESS_TRANSCODE_START + PROGRESS_TRANSCODE_SPAN * done / len(self.qualities)


def prepare_output_dir(output_dir: Path, quality_names: List[str]) -> None:
    """Remove output of any previous run so a redelivered job starts clean."""
    output_dir.mkdir(parents=True, exist_ok=True)
    (output_dir / MASTER_PLAYLIST_NAME).unlink(missing_ok=True)
    for name in quality_names:
        quality_dir = output_dir / name
        if quality_dir.is_dir():
            shutil.rmtree(quality_dir)


class WorkerPool:
    """Fixed-size pool of job workers sharing one queue consumer."""

    def __init__(
        self,
        queue: JobQueue,
        status_store: StatusStore,
        encoder: EncoderDriver,
        classifier: Optional[ErrorClassifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = WORKER_CONCURRENCY,
        parallel_qualities: int = PARALLEL_QUALITIES,
        worker_id: Optional[str] = None,
        heartbeat_interval: float = WORKER_HEARTBEAT_INTERVAL,
        heartbeat_timeout: float = WORKER_HEARTBEAT_TIMEOUT,
        startup_retry_interval: float = WORKER_STARTUP_RETRY_INTERVAL,
        idle_sleep: float = WORKER_IDLE_SLEEP,
        progress_interval: float = PROGRESS_UPDATE_INTERVAL,
        downscale_tolerance: float = DOWNSCALE_TOLERANCE,
        rescale_fallback: bool = RESCALE_FALLBACK_ENABLED,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.queue = queue
        self.status_store = status_store
        self.encoder = encoder
        self.classifier = classifier or ErrorClassifier()
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = max(1, concurrency)
        self.parallel_qualities = max(1, parallel_qualities)
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.startup_retry_interval = startup_retry_interval
        self.idle_sleep = idle_sleep
        self.progress_interval = progress_interval
        self.downscale_tolerance = downscale_tolerance
        self.rescale_fallback = rescale_fallback
        self._sleep = sleep
        self._clock = clock

        self.shutdown_requested = False
        self.started = False
        self.encoder_ok = False
        self.queue_ok = False
        self.last_heartbeat: Optional[float] = None
        self.active: Dict[str, JobDelivery] = {}
        # Jobs another worker took over; abandoned at the next checkpoint
        self.lost_claims: Set[str] = set()
        self.jobs_processed = 0
        self.jobs_failed = 0

    def request_shutdown(self) -> None:
        """Stop claiming new jobs; jobs in progress run to completion."""
        self.shutdown_requested = True

    # Health

    def heartbeat_fresh(self) -> bool:
        if self.last_heartbeat is None:
            return False
        return self._clock() - self.last_heartbeat <= self.heartbeat_timeout

    def is_healthy(self) -> bool:
        """Started, dependencies reachable and heartbeat within the timeout."""
        return self.started and self.encoder_ok and self.queue_ok and self.heartbeat_fresh()

    async def readiness_checks(self) -> Dict[str, bool]:
        return {
            "encoder": self.encoder_ok,
            "queue": await self.queue.ping(),
            "heartbeat": self.heartbeat_fresh(),
        }

    async def start_up(self) -> bool:
        """
        Check the encoder and the queue, retrying until both work.

        The pool stays unhealthy (not crashed) while a dependency is down.

        Returns:
            True once ready, False if shutdown was requested first
        """
        while not self.shutdown_requested:
            self.encoder_ok = await self.encoder.is_available()
            self.queue_ok = await self.queue.ping()
            if self.encoder_ok and self.queue_ok:
                try:
                    await self.queue.initialize()
                except RedisUnavailableError as e:
                    logger.warning(f"Queue initialization failed: {e}")
                    self.queue_ok = False
            if self.encoder_ok and self.queue_ok:
                self.started = True
                await self.heartbeat_once()
                return True

            logger.warning(
                f"Worker {self.worker_id} not ready (encoder: {self.encoder_ok}, queue: {self.queue_ok}), "
                f"retrying in {self.startup_retry_interval}s"
            )
            await self._sleep(self.startup_retry_interval)
        return False

    async def heartbeat_once(self) -> None:
        """Record liveness and keep in-flight job claims from going stale."""
        info = {
            "worker_id": self.worker_id,
            "status": "busy" if self.active else "idle",
            "active_jobs": sorted(self.active),
            "jobs_processed": self.jobs_processed,
            "jobs_failed": self.jobs_failed,
        }
        try:
            await self.queue.record_heartbeat(self.worker_id, info, int(self.heartbeat_timeout))
            for delivery in list(self.active.values()):
                if not await self.queue.touch_job(delivery):
                    self.lost_claims.add(delivery.job_id)
        except RedisUnavailableError as e:
            self.queue_ok = False
            logger.warning(f"Heartbeat failed: {e}")
            return
        self.queue_ok = True
        self.last_heartbeat = self._clock()

    async def heartbeat_loop(self) -> None:
        """Background task to send periodic heartbeats."""
        while not self.shutdown_requested:
            await self._sleep(self.heartbeat_interval)
            await self.heartbeat_once()

    # Main loop

    async def run(self) -> None:
        """Run until shutdown is requested and all in-progress jobs are done."""
        if not await self.start_up():
            return

        send_alert_fire_and_forget(
            alert_worker_startup(
                worker_id=self.worker_id,
                concurrency=self.concurrency,
                encoder_available=self.encoder_ok,
            )
        )
        heartbeat_task = asyncio.create_task(self.heartbeat_loop())
        try:
            await asyncio.gather(*(self._worker_loop(slot) for slot in range(self.concurrency)))
        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass
            send_alert_fire_and_forget(
                alert_worker_shutdown(
                    worker_id=self.worker_id,
                    jobs_processed=self.jobs_processed,
                    jobs_failed=self.jobs_failed,
                )
            )
            print(f"Worker {self.worker_id} stopped. Jobs processed: {self.jobs_processed}, failed: {self.jobs_failed}")

    async def _worker_loop(self, slot: int) -> None:
        logger.debug(f"Worker slot {slot} started")
        while not self.shutdown_requested:
            try:
                started = self._clock()
                delivery = await self.queue.claim_job()
                if delivery is None:
                    # claim_job blocks on Redis; only sleep when it returned immediately
                    if self._clock() - started < self.idle_sleep:
                        await self._sleep(self.idle_sleep)
                    continue
                await self.process_delivery(delivery)
            except RedisUnavailableError as e:
                self.queue_ok = False
                logger.warning(f"Redis error in worker slot {slot}: {e}")
                await self._sleep(self.idle_sleep)
        logger.debug(f"Worker slot {slot} stopped")

    async def process_delivery(self, delivery: JobDelivery) -> bool:
        """
        Run a claimed job to a terminal state, retrying in place per the retry policy.

        Returns:
            True if the job ran to completion, False if it failed or was abandoned
        """
        job = delivery.job
        self.active[job.job_id] = delivery
        if delivery.recovered:
            send_alert_fire_and_forget(
                alert_job_recovered(job.job_id, delivery.delivery_count, worker_id=self.worker_id)
            )

        reporter = ProgressReporter(self.status_store, job.job_id, min_interval=self.progress_interval)
        attempts_by_type: Counter = Counter()
        attempt = 0
        print(f"Processing job {job.job_id} (delivery {delivery.delivery_count})")

        try:
            while True:
                attempt += 1
                ctx = JobContext(job=job, reporter=reporter, attempt=attempt)
                try:
                    await self.run_pipeline(ctx)
                except ClaimLostError:
                    raise
                except Exception as e:
                    classified = self.classifier.classify(
                        e, job_id=job.job_id, stage=ctx.stage.value, context={"attempt": attempt}
                    )
                    logger.warning(f"Job {job.job_id} failed at {ctx.stage.value} (attempt {attempt}): {e}")
                    await self._record_error(job.job_id, classified)
                    attempts_by_type[classified.type] += 1
                    decision = self.retry_policy.decide(classified, attempts_by_type)
                    if decision.retry:
                        logger.info(f"Job {job.job_id}: {decision.reason}")
                        await reporter.set_step(
                            f"Retrying after {classified.type.value} "
                            f"(retry {decision.attempt}/{decision.max_retries} in {decision.delay:.0f}s)",
                            attempt=attempt,
                        )
                        await self._sleep(decision.delay)
                        continue
                    await self._fail(delivery, classified, decision, attempt)
                    return False

                await self._complete(delivery, ctx)
                return True
        except ClaimLostError as e:
            logger.warning(f"Abandoning job {job.job_id}: {e}")
            print(f"Abandoned job {job.job_id}: claimed by another worker")
            return False
        finally:
            self.active.pop(job.job_id, None)
            self.lost_claims.discard(job.job_id)
            # Persisted in the status store; only the global window is kept here
            self.classifier.clear_error_history(job.job_id)

    def _check_claim(self, job_id: str) -> None:
        if job_id in self.lost_claims:
            raise ClaimLostError(f"claim on job {job_id} was lost")

    def _enter_stage(self, ctx: JobContext, stage: PipelineStage) -> None:
        self._check_claim(ctx.job.job_id)
        ctx.stage = stage

    async def _confirm_claim(self, delivery: JobDelivery) -> None:
        """Check ownership with the queue before writing a terminal status."""
        self._check_claim(delivery.job_id)
        if not await self.queue.touch_job(delivery):
            self.lost_claims.add(delivery.job_id)
            raise ClaimLostError(f"claim on job {delivery.job_id} was lost")

    async def run_pipeline(self, ctx: JobContext) -> None:
        """One attempt at a job. Raises on any failure; ctx.stage says where."""
        job = ctx.job
        reporter = ctx.reporter
        input_path = Path(job.input_path)
        output_dir = Path(job.output_path)

        self._enter_stage(ctx, PipelineStage.INPUT)
        await reporter.set_step("Checking input", attempt=ctx.attempt)
        if not input_path.is_file():
            raise InputFileError(f"No such file or directory: {input_path}")

        self._enter_stage(ctx, PipelineStage.PROBE)
        await reporter.set_step("Probing input")
        info = await self.encoder.probe(input_path)
        await reporter.report(PROGRESS_PROBED)

        self._enter_stage(ctx, PipelineStage.RESOLVE)
        ctx.qualities = resolve_qualities(
            info.width,
            info.height,
            job.qualities,
            tolerance=self.downscale_tolerance,
            rescale_fallback=self.rescale_fallback,
        )
        logger.info(
            f"Job {job.job_id}: {info.width}x{info.height} source, "
            f"producing {', '.join(q.name for q in ctx.qualities)}"
        )
        await reporter.report(PROGRESS_RESOLVED)

        self._enter_stage(ctx, PipelineStage.TRANSCODE)
        prepare_output_dir(output_dir, [q.name for q in job.qualities] + [q.name for q in ctx.qualities])
        await reporter.report(PROGRESS_TRANSCODE_START)
        await self._transcode_all(ctx, input_path, output_dir, info.duration)

        self._enter_stage(ctx, PipelineStage.PLAYLIST)
        await reporter.set_step("Writing master playlist")
        write_master_playlist(output_dir, ctx.qualities)
        await reporter.report(PROGRESS_PLAYLISTS_WRITTEN)

        self._enter_stage(ctx, PipelineStage.VALIDATE)
        await reporter.set_step("Validating output")
        result = validate_output(output_dir, ctx.qualities)
        if not result.valid:
            raise PlaylistValidationError(
                f"Playlist validation failed: {'; '.join(result.issues)}",
                issues=result.issues,
                context={"segment_counts": result.segment_counts},
            )
        await reporter.report(PROGRESS_VALIDATED)

    async def _transcode_all(
        self, ctx: JobContext, input_path: Path, output_dir: Path, duration: Optional[float]
    ) -> None:
        total = len(ctx.qualities)
        semaphore = asyncio.Semaphore(self.parallel_qualities)

        async def transcode_one(index: int, quality: QualityProfile) -> None:
            async with semaphore:

                async def on_progress(percent: int) -> None:
                    self._check_claim(ctx.job.job_id)
                    ctx.quality_progress[quality.name] = percent
                    await ctx.reporter.report(ctx.overall_progress())

                await ctx.reporter.set_step(f"Transcoding {quality.name} ({index + 1}/{total})")
                segments = await self.encoder.transcode(
                    input_path, output_dir, quality, on_progress=on_progress, duration=duration
                )
                if not segments:
                    raise EncoderError(f"ffmpeg produced no segments for {quality.name}")
                write_media_playlist(output_dir / quality.name, segments)
                ctx.quality_progress[quality.name] = 100
                await ctx.reporter.report(ctx.overall_progress())

        if self.parallel_qualities == 1:
            for index, quality in enumerate(ctx.qualities):
                await transcode_one(index, quality)
            return

        tasks = [asyncio.create_task(transcode_one(i, q)) for i, q in enumerate(ctx.qualities)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _record_error(self, job_id: str, classified: ClassifiedError) -> None:
        try:
            await self.status_store.append_error(job_id, classified)
        except RedisUnavailableError as e:
            # Still kept in the classifier's in-memory history
            logger.warning(f"Could not persist error history for job {job_id}: {e}")

    async def _complete(self, delivery: JobDelivery, ctx: JobContext) -> None:
        ctx.stage = PipelineStage.FINALIZE
        await self._confirm_claim(delivery)
        await self.status_store.update(
            delivery.job_id,
            status=JobStatus.COMPLETED,
            progress=100,
            current_step="Completed",
            error=None,
            error_type=None,
            attempt=ctx.attempt,
        )
        outcome = await self.queue.acknowledge_job(delivery)
        if await self._handle_release(delivery, outcome):
            return
        self.jobs_processed += 1
        print(f"Successfully completed: {delivery.job_id} ({', '.join(q.name for q in ctx.qualities)})")

    async def _fail(
        self, delivery: JobDelivery, classified: ClassifiedError, decision: RetryDecision, attempt: int
    ) -> None:
        job_id = delivery.job_id
        await self._confirm_claim(delivery)
        summary = truncate_error(classified.summary, ERROR_SUMMARY_MAX_LENGTH)
        await self.status_store.update(
            job_id,
            status=JobStatus.FAILED,
            current_step="Failed",
            error=summary,
            error_type=classified.type.value,
            attempt=attempt,
        )
        outcome = await self.queue.reject_job(delivery, classified.summary)
        if await self._handle_release(delivery, outcome):
            return
        self.jobs_failed += 1
        print(f"Failed to process: {job_id} ({decision.reason})")

        if classified.retryable and decision.max_retries > 0:
            send_alert_fire_and_forget(
                alert_max_retries_exceeded(
                    job_id,
                    classified.type.value,
                    decision.max_retries,
                    last_error=classified.message,
                )
            )
        else:
            send_alert_fire_and_forget(
                alert_job_failed(job_id, classified.type.value, classified.severity.value, classified.message)
            )

    async def _handle_release(self, delivery: JobDelivery, outcome: AckOutcome) -> bool:
        """
        Deal with a release that did not simply acknowledge the job.

        Returns:
            True if the terminal status just written no longer applies
        """
        if outcome == AckOutcome.REQUEUED:
            # A newer submission is queued; its status is QUEUED, not this run's result
            await self.status_store.mark_queued(delivery.job_id)
            print(f"Job {delivery.job_id} was resubmitted while processing, queued again")
            return True
        if outcome == AckOutcome.LOST:
            logger.warning(f"Job {delivery.job_id} finished after its claim was lost, result discarded")
            return True
        # UNAVAILABLE leaves the message pending; it is redelivered after the stall timeout
        return False
