#!/usr/bin/env python3
"""
HLS transcoding worker.

Claims jobs from the Redis job stream and runs them through the worker
pool (probe, resolve qualities, transcode, playlists, validation).
Serves /health and /ready for orchestration and shuts down gracefully on
SIGTERM/SIGINT: no new jobs are claimed and jobs in progress finish.
"""

import asyncio
import logging
import signal
import uuid
from typing import Dict, Optional

from api.job_queue import JobQueue
from api.redis_client import RedisClient
from api.status_store import StatusStore
from config import (
    FFMPEG_PATH,
    LOG_LEVEL,
    OUTPUT_ROOT,
    PARALLEL_QUALITIES,
    REDIS_CONSUMER_GROUP,
    REDIS_PENDING_TIMEOUT_MS,
    REDIS_URL,
    WORKER_CONCURRENCY,
    WORKER_HEALTH_PORT,
    WORKER_HEARTBEAT_INTERVAL,
)
from worker.encoder import EncoderDriver
from worker.errors import ErrorClassifier
from worker.health_server import HealthServer, check_resources
from worker.pool import WorkerPool
from worker.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_pool(redis: RedisClient, worker_id: Optional[str] = None) -> WorkerPool:
    """Wire the queue, status store, encoder and policies into a pool."""
    worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
    status_store = StatusStore(redis)
    queue = JobQueue(redis, status_store, consumer_name=worker_id)
    return WorkerPool(
        queue=queue,
        status_store=status_store,
        encoder=EncoderDriver(),
        classifier=ErrorClassifier(),
        retry_policy=RetryPolicy(),
        worker_id=worker_id,
    )


def install_signal_handlers(pool: WorkerPool) -> None:
    """Translate SIGTERM/SIGINT into a graceful pool shutdown."""
    loop = asyncio.get_running_loop()

    def _handler(sig: signal.Signals) -> None:
        print(f"\n{signal.strsignal(sig)} received, finishing current jobs and shutting down gracefully...")
        pool.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handler, sig)


async def worker_loop(pool: Optional[WorkerPool] = None, health_port: int = WORKER_HEALTH_PORT) -> None:
    """
    Run a worker until it is asked to stop.

    Args:
        pool: Pre-built pool (for testing); built from config when omitted
        health_port: Port for the health server, 0 to disable it
    """
    redis: Optional[RedisClient] = None
    if pool is None:
        redis = RedisClient(REDIS_URL)
        if not await redis.connect():
            print("  Redis unavailable at startup, will keep retrying")
        pool = build_pool(redis)

    install_signal_handlers(pool)

    print(f"Transcoding worker starting (ID: {pool.worker_id})")
    print(f"  Redis: {REDIS_URL.split('@')[-1]}")
    print(f"  Consumer group: {REDIS_CONSUMER_GROUP}")
    print(f"  Concurrency: {WORKER_CONCURRENCY} jobs, {PARALLEL_QUALITIES} qualities per job")
    print(f"  Heartbeat interval: {WORKER_HEARTBEAT_INTERVAL}s")
    print(f"  Stall timeout: {REDIS_PENDING_TIMEOUT_MS / 1000:.0f}s")
    print(f"  Encoder: {FFMPEG_PATH}")

    async def readiness() -> Dict[str, bool]:
        checks = await pool.readiness_checks()
        checks.update(check_resources(OUTPUT_ROOT))
        return checks

    health_server = None
    if health_port:
        health_server = HealthServer(
            port=health_port,
            liveness_fn=pool.is_healthy,
            readiness_fn=readiness,
            worker_id=pool.worker_id,
        )
        await health_server.start()

    try:
        await pool.run()
    finally:
        if health_server is not None:
            await health_server.stop()
        if redis is not None:
            await redis.close()
        print("Worker stopped gracefully.")


def main():
    """Entry point for the transcoding worker."""
    configure_logging()
    asyncio.run(worker_loop())


if __name__ == "__main__":
    main()
