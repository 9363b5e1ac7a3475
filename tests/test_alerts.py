"""Tests for the worker alerting system."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from worker.alerts import (
    AlertMetrics,
    AlertType,
    alert_job_failed,
    alert_job_recovered,
    alert_max_retries_exceeded,
    alert_worker_shutdown,
    alert_worker_startup,
    get_metrics,
    reset_metrics,
    send_alert_fire_and_forget,
    send_webhook_alert,
)


@pytest.fixture(autouse=True)
def reset_alert_metrics():
    """Reset metrics before each test."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def mock_webhook():
    """Configured webhook URL with a mocked httpx client."""
    mock_response = MagicMock()
    mock_response.raise_for_status = MagicMock()
    with patch("worker.alerts.ALERT_WEBHOOK_URL", "https://example.com/webhook"):
        with patch("httpx.AsyncClient") as mock_client:
            mock_instance = AsyncMock()
            mock_instance.post = AsyncMock(return_value=mock_response)
            mock_client.return_value.__aenter__.return_value = mock_instance
            yield mock_instance


class TestAlertMetrics:
    """Tests for AlertMetrics class."""

    def test_initial_state(self):
        """Test initial counter values."""
        metrics = AlertMetrics()
        assert metrics.jobs_recovered == 0
        assert metrics.jobs_max_retries_exceeded == 0
        assert metrics.jobs_failed == 0
        assert metrics.alerts_sent == 0
        assert metrics.alerts_rate_limited == 0
        assert metrics.alerts_failed == 0

    def test_increment_recovered(self):
        """Test incrementing recovered jobs counter."""
        metrics = AlertMetrics()
        assert metrics.increment_recovered() == 1
        assert metrics.increment_recovered() == 2

    def test_increment_max_retries(self):
        """Test incrementing max retries counter."""
        metrics = AlertMetrics()
        assert metrics.increment_max_retries() == 1
        assert metrics.jobs_max_retries_exceeded == 1

    def test_increment_failed_tracks_error_types(self):
        """Failures are counted per error type."""
        metrics = AlertMetrics()
        metrics.increment_failed("ENCODER_ERROR")
        metrics.increment_failed("ENCODER_ERROR")
        metrics.increment_failed("INPUT_FILE_ERROR")

        assert metrics.jobs_failed == 3
        assert metrics.failures_by_type == {"ENCODER_ERROR": 2, "INPUT_FILE_ERROR": 1}

    def test_increment_failed_without_error_type(self):
        metrics = AlertMetrics()
        metrics.increment_failed()

        assert metrics.jobs_failed == 1
        assert metrics.failures_by_type == {}

    def test_can_send_alert_first_time(self):
        """First alert of a type is always allowed."""
        assert AlertMetrics().can_send_alert("test_alert", 300) is True

    def test_can_send_alert_rate_limited(self):
        """Second alert within the rate limit is blocked."""
        metrics = AlertMetrics()
        metrics.record_alert_sent("test_alert")

        assert metrics.can_send_alert("test_alert", 300) is False
        assert metrics.can_send_alert("other_alert", 300) is True

    def test_to_dict(self):
        metrics = AlertMetrics()
        metrics.increment_recovered()
        metrics.increment_failed("TIMEOUT_ERROR")

        result = metrics.to_dict()

        assert result["jobs_recovered"] == 1
        assert result["jobs_failed"] == 1
        assert result["failures_by_type"] == {"TIMEOUT_ERROR": 1}


class TestSendWebhookAlert:
    """Tests for send_webhook_alert function."""

    @pytest.mark.asyncio
    async def test_no_webhook_url_configured(self):
        """Test that no alert is sent when webhook URL is not configured."""
        with patch("worker.alerts.ALERT_WEBHOOK_URL", ""):
            result = await send_webhook_alert(AlertType.JOB_RECOVERED, {"test": "data"})

        assert result is False

    @pytest.mark.asyncio
    async def test_successful_webhook_call(self, mock_webhook):
        """Test successful webhook call."""
        result = await send_webhook_alert(AlertType.JOB_RECOVERED, {"job_id": "job-1"}, force=True)

        assert result is True
        mock_webhook.post.assert_called_once()
        call_args = mock_webhook.post.call_args
        assert call_args[0][0] == "https://example.com/webhook"
        payload = call_args[1]["json"]
        assert payload["event"] == "job_recovered"
        assert payload["details"]["job_id"] == "job-1"
        assert "timestamp" in payload
        assert "metrics" in payload
        assert get_metrics().alerts_sent == 1

    @pytest.mark.asyncio
    async def test_rate_limiting(self):
        """Test that alerts are rate limited."""
        metrics = get_metrics()
        metrics.record_alert_sent(AlertType.JOB_FAILED.value)

        with patch("worker.alerts.ALERT_WEBHOOK_URL", "https://example.com/webhook"):
            result = await send_webhook_alert(AlertType.JOB_FAILED, {"test": "data"})

        assert result is False
        assert metrics.alerts_rate_limited == 1

    @pytest.mark.asyncio
    async def test_force_bypasses_rate_limiting(self, mock_webhook):
        """Test that force=True bypasses rate limiting."""
        get_metrics().record_alert_sent(AlertType.JOB_MAX_RETRIES_EXCEEDED.value)

        result = await send_webhook_alert(AlertType.JOB_MAX_RETRIES_EXCEEDED, {"test": "data"}, force=True)

        assert result is True

    @pytest.mark.asyncio
    async def test_timeout_error(self, mock_webhook):
        """Test handling of timeout errors."""
        mock_webhook.post = AsyncMock(side_effect=httpx.TimeoutException("timeout"))

        result = await send_webhook_alert(AlertType.JOB_RECOVERED, {"test": "data"}, force=True)

        assert result is False
        assert get_metrics().alerts_failed == 1

    @pytest.mark.asyncio
    async def test_http_error(self, mock_webhook):
        """Test handling of HTTP errors."""
        mock_response = MagicMock()
        mock_response.status_code = 500
        error = httpx.HTTPStatusError("error", request=MagicMock(), response=mock_response)
        mock_webhook.post = AsyncMock(side_effect=error)

        result = await send_webhook_alert(AlertType.JOB_RECOVERED, {"test": "data"}, force=True)

        assert result is False
        assert get_metrics().alerts_failed == 1

    @pytest.mark.asyncio
    async def test_connection_error(self, mock_webhook):
        mock_webhook.post = AsyncMock(side_effect=httpx.ConnectError("refused"))

        result = await send_webhook_alert(AlertType.JOB_RECOVERED, {"test": "data"}, force=True)

        assert result is False
        assert get_metrics().alerts_failed == 1


class TestAlertHelpers:
    """Tests for alert helper functions."""

    @pytest.mark.asyncio
    async def test_alert_job_recovered(self):
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_job_recovered("job-1", delivery_count=2, worker_id="worker-123")

        assert get_metrics().jobs_recovered == 1
        mock_send.assert_called_once()
        call_args = mock_send.call_args
        assert call_args[0][0] == AlertType.JOB_RECOVERED
        assert call_args[0][1] == {"job_id": "job-1", "delivery_count": 2, "worker_id": "worker-123"}

    @pytest.mark.asyncio
    async def test_alert_max_retries_exceeded(self):
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_max_retries_exceeded("job-1", "ENCODER_ERROR", 3, last_error="Conversion failed!")

        metrics = get_metrics()
        assert metrics.jobs_max_retries_exceeded == 1
        assert metrics.failures_by_type == {"ENCODER_ERROR": 1}
        call_args = mock_send.call_args
        assert call_args[0][0] == AlertType.JOB_MAX_RETRIES_EXCEEDED
        details = call_args[0][1]
        assert details["job_id"] == "job-1"
        assert details["error_type"] == "ENCODER_ERROR"
        assert details["max_retries"] == 3
        assert details["last_error"] == "Conversion failed!"
        # Should always force send
        assert call_args[1]["force"] is True

    @pytest.mark.asyncio
    async def test_alert_max_retries_truncates_error(self):
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_max_retries_exceeded("job-1", "ENCODER_ERROR", 3, last_error="x" * 2000)

        assert len(mock_send.call_args[0][1]["last_error"]) == 500

    @pytest.mark.asyncio
    async def test_alert_job_failed(self):
        """Permanent failures are rate limited like other non-critical alerts."""
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_job_failed("job-1", "INPUT_FILE_ERROR", "HIGH", "No such file or directory")

        assert get_metrics().jobs_failed == 1
        call_args = mock_send.call_args
        assert call_args[0][0] == AlertType.JOB_FAILED
        assert call_args[0][1]["severity"] == "HIGH"
        assert "force" not in call_args[1]

    @pytest.mark.asyncio
    async def test_alert_worker_startup(self):
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_worker_startup(worker_id="test-worker-id", concurrency=2, encoder_available=True)

        call_args = mock_send.call_args
        assert call_args[0][0] == AlertType.WORKER_STARTUP
        assert call_args[0][1] == {"worker_id": "test-worker-id", "concurrency": 2, "encoder_available": True}
        assert call_args[1]["force"] is True

    @pytest.mark.asyncio
    async def test_alert_worker_shutdown(self):
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_worker_shutdown(worker_id="test-worker-id", jobs_processed=5, jobs_failed=1)

        call_args = mock_send.call_args
        assert call_args[0][0] == AlertType.WORKER_SHUTDOWN
        details = call_args[0][1]
        assert details["worker_id"] == "test-worker-id"
        assert details["jobs_processed"] == 5
        assert details["jobs_failed"] == 1
        assert "final_metrics" in details
        assert call_args[1]["force"] is True


class TestGlobalMetrics:
    """Tests for global metrics management."""

    def test_get_metrics_creates_instance(self):
        metrics1 = get_metrics()
        metrics2 = get_metrics()
        assert metrics1 is metrics2

    def test_reset_metrics(self):
        get_metrics().increment_recovered()

        reset_metrics()

        assert get_metrics().jobs_recovered == 0


class TestFireAndForget:
    """Tests for fire-and-forget alert functionality."""

    @pytest.mark.asyncio
    async def test_fire_and_forget_schedules_task(self):
        called = False

        async def mock_alert():
            nonlocal called
            called = True

        send_alert_fire_and_forget(mock_alert())
        await asyncio.sleep(0.1)

        assert called is True

    @pytest.mark.asyncio
    async def test_fire_and_forget_catches_exceptions(self):
        async def failing_alert():
            raise ValueError("Test error")

        # Should not raise - exceptions are caught
        send_alert_fire_and_forget(failing_alert())
        await asyncio.sleep(0.1)

    @pytest.mark.asyncio
    async def test_fire_and_forget_with_real_alert(self):
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            send_alert_fire_and_forget(alert_job_recovered("job-1", delivery_count=2, worker_id="worker-1"))
            await asyncio.sleep(0.1)

        mock_send.assert_called_once()
        assert get_metrics().jobs_recovered == 1

    def test_fire_and_forget_without_loop(self):
        """Outside an event loop the coroutine is closed, not leaked."""

        async def mock_alert():
            pass

        coro = mock_alert()
        send_alert_fire_and_forget(coro)

        assert coro.cr_frame is None
