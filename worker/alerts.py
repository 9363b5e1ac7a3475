"""
Alert system for transcoding worker events.

Provides webhook notifications for:
- Jobs that exhausted their retry budget
- Jobs that failed permanently (non-retryable errors)
- Jobs recovered from a crashed worker
- Worker startup and shutdown

Includes rate limiting to prevent alert flooding.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, Optional, Set

import httpx

from api.errors import truncate_error
from config import ALERT_RATE_LIMIT_SECONDS, ALERT_WEBHOOK_TIMEOUT, ALERT_WEBHOOK_URL

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    """Types of alerts that can be sent."""

    JOB_RECOVERED = "job_recovered"
    JOB_MAX_RETRIES_EXCEEDED = "job_max_retries_exceeded"
    JOB_FAILED = "job_failed"
    WORKER_STARTUP = "worker_startup"
    WORKER_SHUTDOWN = "worker_shutdown"


@dataclass
class AlertMetrics:
    """Tracks metrics for alerting and monitoring."""

    # Counters
    jobs_recovered: int = 0
    jobs_max_retries_exceeded: int = 0
    jobs_failed: int = 0
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0

    # Last alert timestamps by type (for rate limiting)
    last_alert_time: Dict[str, float] = field(default_factory=dict)

    # Failures by error type
    failures_by_type: Dict[str, int] = field(default_factory=dict)

    def increment_recovered(self) -> int:
        self.jobs_recovered += 1
        return self.jobs_recovered

    def increment_max_retries(self) -> int:
        self.jobs_max_retries_exceeded += 1
        return self.jobs_max_retries_exceeded

    def increment_failed(self, error_type: Optional[str] = None) -> int:
        """Increment jobs failed counter and track failures per error type."""
        self.jobs_failed += 1
        if error_type is not None:
            self.failures_by_type[error_type] = self.failures_by_type.get(error_type, 0) + 1
        return self.jobs_failed

    def can_send_alert(self, alert_type: str, rate_limit_seconds: int = 300) -> bool:
        """Check if enough time has passed since the last alert of this type."""
        last_time = self.last_alert_time.get(alert_type)
        if last_time is None:
            return True
        return (time.time() - last_time) >= rate_limit_seconds

    def record_alert_sent(self, alert_type: str):
        self.last_alert_time[alert_type] = time.time()
        self.alerts_sent += 1

    def record_alert_rate_limited(self):
        self.alerts_rate_limited += 1

    def record_alert_failed(self):
        self.alerts_failed += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to a dictionary for reporting."""
        return {
            "jobs_recovered": self.jobs_recovered,
            "jobs_max_retries_exceeded": self.jobs_max_retries_exceeded,
            "jobs_failed": self.jobs_failed,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
            "failures_by_type": dict(self.failures_by_type),
        }


# Global metrics instance
_metrics: Optional[AlertMetrics] = None

# Strong references to in-flight alert tasks
_pending_alerts: Set["asyncio.Task[None]"] = set()


def get_metrics() -> AlertMetrics:
    """Get or create the global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = AlertMetrics()
    return _metrics


def reset_metrics():
    """Reset metrics (for testing)."""
    global _metrics
    _metrics = AlertMetrics()


def send_alert_fire_and_forget(coro: Awaitable[Any]) -> None:
    """
    Schedule an alert coroutine as a fire-and-forget background task.

    Alert failures must never crash the worker, so exceptions are logged
    and dropped.

    Args:
        coro: The alert coroutine to execute (e.g., alert_job_failed(...))
    """

    async def _safe_send():
        try:
            await coro
        except Exception as e:
            logger.debug(f"Failed to send alert (fire-and-forget): {e}")

    try:
        task = asyncio.get_running_loop().create_task(_safe_send())
    except RuntimeError:
        # No running event loop (shouldn't happen in normal operation)
        logger.debug("Cannot send alert: no running event loop")
        if asyncio.iscoroutine(coro):
            coro.close()
        return
    _pending_alerts.add(task)
    task.add_done_callback(_pending_alerts.discard)


async def send_webhook_alert(
    alert_type: AlertType,
    details: Dict[str, Any],
    force: bool = False,
) -> bool:
    """
    Send an alert to the configured webhook URL.

    Args:
        alert_type: Type of alert being sent
        details: Additional details about the alert
        force: If True, bypass rate limiting

    Returns:
        True if alert was sent successfully, False otherwise
    """
    if not ALERT_WEBHOOK_URL:
        return False

    metrics = get_metrics()

    # Check rate limiting
    if not force and not metrics.can_send_alert(alert_type.value, ALERT_RATE_LIMIT_SECONDS):
        metrics.record_alert_rate_limited()
        logger.debug(f"Alert {alert_type.value} rate limited")
        return False

    payload = {
        "event": alert_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details,
        "metrics": metrics.to_dict(),
    }

    try:
        async with httpx.AsyncClient(timeout=ALERT_WEBHOOK_TIMEOUT) as client:
            response = await client.post(
                ALERT_WEBHOOK_URL,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()

        metrics.record_alert_sent(alert_type.value)
        logger.info(f"Alert sent: {alert_type.value}")
        return True

    except httpx.TimeoutException:
        metrics.record_alert_failed()
        logger.warning(f"Alert webhook timed out after {ALERT_WEBHOOK_TIMEOUT}s")
        return False
    except httpx.HTTPStatusError as e:
        metrics.record_alert_failed()
        logger.warning(f"Alert webhook returned error: {e.response.status_code}")
        return False
    except httpx.HTTPError as e:
        metrics.record_alert_failed()
        logger.warning(f"Failed to send alert webhook: {e}")
        return False


async def alert_job_recovered(job_id: str, delivery_count: int, worker_id: Optional[str] = None):
    """
    Send alert when a job abandoned by a crashed worker is picked up again.

    Args:
        job_id: Job identifier
        delivery_count: How many times the job message has been delivered
        worker_id: ID of the worker that recovered it
    """
    metrics = get_metrics()
    metrics.increment_recovered()

    await send_webhook_alert(
        AlertType.JOB_RECOVERED,
        {
            "job_id": job_id,
            "delivery_count": delivery_count,
            "worker_id": worker_id,
        },
    )


async def alert_max_retries_exceeded(
    job_id: str,
    error_type: str,
    max_retries: int,
    last_error: Optional[str] = None,
):
    """
    Send alert when a job exceeds the retry budget of its error class.

    Args:
        job_id: Job identifier
        error_type: Classified error type of the last failure
        max_retries: Retry budget of that class
        last_error: Last error message from the job
    """
    metrics = get_metrics()
    metrics.increment_max_retries()
    metrics.increment_failed(error_type)

    # Always send max retries alerts (they're critical)
    await send_webhook_alert(
        AlertType.JOB_MAX_RETRIES_EXCEEDED,
        {
            "job_id": job_id,
            "error_type": error_type,
            "max_retries": max_retries,
            "last_error": truncate_error(last_error),
            "total_max_retries_exceeded": metrics.jobs_max_retries_exceeded,
        },
        force=True,
    )


async def alert_job_failed(job_id: str, error_type: str, severity: str, error: str):
    """
    Send alert when a job fails with a non-retryable error.

    Args:
        job_id: Job identifier
        error_type: Classified error type
        severity: Classified severity
        error: Error message
    """
    metrics = get_metrics()
    metrics.increment_failed(error_type)

    await send_webhook_alert(
        AlertType.JOB_FAILED,
        {
            "job_id": job_id,
            "error_type": error_type,
            "severity": severity,
            "error": truncate_error(error),
        },
    )


async def alert_worker_startup(worker_id: str, concurrency: int, encoder_available: bool):
    """
    Send alert when a worker starts up.

    Args:
        worker_id: ID of the worker
        concurrency: Number of concurrent job slots
        encoder_available: Whether ffmpeg was reachable at startup
    """
    await send_webhook_alert(
        AlertType.WORKER_STARTUP,
        {
            "worker_id": worker_id,
            "concurrency": concurrency,
            "encoder_available": encoder_available,
        },
        force=True,
    )


async def alert_worker_shutdown(worker_id: str, jobs_processed: int = 0, jobs_failed: int = 0):
    """
    Send alert when a worker shuts down.

    Args:
        worker_id: ID of the worker
        jobs_processed: Jobs completed during this run
        jobs_failed: Jobs failed during this run
    """
    await send_webhook_alert(
        AlertType.WORKER_SHUTDOWN,
        {
            "worker_id": worker_id,
            "jobs_processed": jobs_processed,
            "jobs_failed": jobs_failed,
            "final_metrics": get_metrics().to_dict(),
        },
        force=True,
    )
