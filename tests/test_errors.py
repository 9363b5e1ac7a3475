"""Tests for error classification and error statistics."""

import errno
from datetime import timedelta

import pytest

from api.enums import ErrorSeverity, ErrorType
from api.models import ClassifiedError, utcnow
from worker.errors import (
    EncoderError,
    EncoderTimeoutError,
    ErrorClassifier,
    InputFileError,
    PlaylistValidationError,
    ProbeError,
    QualityResolutionError,
    classify_exception,
    classify_message,
    compute_error_statistics,
)


class TestClassifyMessage:
    """Tests for message signature matching."""

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("[Errno 28] No space left on device", ErrorType.STORAGE_ERROR),
            ("write failed: disk quota exceeded", ErrorType.STORAGE_ERROR),
            ("Read-only file system", ErrorType.STORAGE_ERROR),
            ("Input/output error while writing segment", ErrorType.STORAGE_ERROR),
            ("Cannot allocate memory", ErrorType.RESOURCE_ERROR),
            ("Too many open files", ErrorType.RESOURCE_ERROR),
            ("input.mp4: No such file or directory", ErrorType.INPUT_FILE_ERROR),
            ("Invalid data found when processing input", ErrorType.INPUT_FILE_ERROR),
            ("Permission denied", ErrorType.INPUT_FILE_ERROR),
            ("Connection refused", ErrorType.NETWORK_ERROR),
            ("operation timed out", ErrorType.TIMEOUT_ERROR),
            ("ffmpeg exited with code 1", ErrorType.ENCODER_ERROR),
            ("Error initializing output stream: codec not supported", ErrorType.ENCODER_ERROR),
            ("invalid playlist structure", ErrorType.VALIDATION_ERROR),
            ("something odd happened", ErrorType.UNKNOWN_ERROR),
        ],
    )
    def test_signatures(self, message, expected):
        assert classify_message(message) == expected

    def test_storage_checked_before_input(self):
        """A full disk mentioning the input file is still a storage problem."""
        assert classify_message("No space left on device while reading input file") == ErrorType.STORAGE_ERROR


class TestClassifyException:
    """Tests for exception classification."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (InputFileError("missing"), ErrorType.INPUT_FILE_ERROR),
            (ProbeError("ffprobe failed"), ErrorType.INPUT_FILE_ERROR),
            (EncoderError("exit 1"), ErrorType.ENCODER_ERROR),
            (EncoderTimeoutError("slow"), ErrorType.TIMEOUT_ERROR),
            (QualityResolutionError("none"), ErrorType.VALIDATION_ERROR),
            (PlaylistValidationError("bad"), ErrorType.VALIDATION_ERROR),
            (MemoryError(), ErrorType.RESOURCE_ERROR),
            (OSError(errno.ENOSPC, "No space left on device"), ErrorType.STORAGE_ERROR),
            (OSError(errno.EIO, "I/O error"), ErrorType.STORAGE_ERROR),
            (OSError(errno.EMFILE, "Too many open files"), ErrorType.RESOURCE_ERROR),
            (FileNotFoundError(errno.ENOENT, "No such file"), ErrorType.INPUT_FILE_ERROR),
            (PermissionError(errno.EACCES, "Permission denied"), ErrorType.INPUT_FILE_ERROR),
            (TimeoutError(), ErrorType.TIMEOUT_ERROR),
            (ConnectionResetError(), ErrorType.NETWORK_ERROR),
            (RuntimeError("boom"), ErrorType.UNKNOWN_ERROR),
            (RuntimeError("ffmpeg crashed"), ErrorType.ENCODER_ERROR),
        ],
    )
    def test_exceptions(self, error, expected):
        assert classify_exception(error) == expected

    def test_typed_error_wins_over_message(self):
        """The exception type decides even if the message looks like something else."""
        assert classify_exception(EncoderError("No such file or directory")) == ErrorType.ENCODER_ERROR


class TestErrorClassifier:
    """Tests for ErrorClassifier."""

    def test_classify_sets_severity_and_retryable(self):
        classifier = ErrorClassifier()

        result = classifier.classify(EncoderError("ffmpeg failed"), job_id="job-1", stage="transcode")

        assert result.type == ErrorType.ENCODER_ERROR
        assert result.severity == ErrorSeverity.HIGH
        assert result.retryable is True
        assert result.stage == "transcode"
        assert result.summary == "ENCODER_ERROR: ffmpeg failed"

    @pytest.mark.parametrize(
        "error,severity,retryable",
        [
            (InputFileError("missing"), ErrorSeverity.HIGH, False),
            (PlaylistValidationError("bad"), ErrorSeverity.LOW, False),
            (MemoryError("oom"), ErrorSeverity.CRITICAL, True),
            (OSError(errno.ENOSPC, "full"), ErrorSeverity.MEDIUM, True),
            (RuntimeError("boom"), ErrorSeverity.MEDIUM, True),
        ],
    )
    def test_severity_table(self, error, severity, retryable):
        result = ErrorClassifier().classify(error)

        assert result.severity == severity
        assert result.retryable is retryable

    def test_context_is_merged(self):
        error = EncoderError("exit 1", returncode=1, stderr_tail="Conversion failed!", context={"quality": "720p"})

        result = ErrorClassifier().classify(error, job_id="job-1", context={"attempt": 2})

        assert result.context == {"quality": "720p", "stderr_tail": "Conversion failed!", "attempt": 2}

    def test_long_messages_are_truncated(self):
        result = ErrorClassifier().classify(RuntimeError("x" * 2000))

        assert len(result.message) == 500

    def test_empty_message_uses_type_name(self):
        assert ErrorClassifier().classify(MemoryError()).message == "MemoryError"

    def test_history_per_job(self):
        classifier = ErrorClassifier(history_limit=2)
        for i in range(3):
            classifier.classify(RuntimeError(f"error {i}"), job_id="job-1")
        classifier.classify(RuntimeError("other"), job_id="job-2")

        assert [e.message for e in classifier.get_error_history("job-1")] == ["error 1", "error 2"]
        assert len(classifier.get_error_history("job-2")) == 1
        assert classifier.get_error_history("job-3") == []

    def test_clear_error_history(self):
        classifier = ErrorClassifier()
        classifier.classify(RuntimeError("boom"), job_id="job-1")

        classifier.clear_error_history("job-1")

        assert classifier.get_error_history("job-1") == []
        assert classifier.get_error_statistics()["total_errors"] == 1

    def test_number_of_job_histories_is_bounded(self):
        """Histories for many distinct jobs are capped; the oldest jobs go first."""
        classifier = ErrorClassifier(history_limit=5, global_limit=10)
        for i in range(1000):
            classifier.classify(RuntimeError("boom"), job_id=f"job-{i}")

        assert len(classifier._history) == 10
        assert classifier.get_error_history("job-0") == []
        assert len(classifier.get_error_history("job-999")) == 1

    def test_recently_failing_job_is_kept(self):
        """A job that fails again moves to the back of the eviction order."""
        classifier = ErrorClassifier(global_limit=2)
        classifier.classify(RuntimeError("first"), job_id="job-a")
        classifier.classify(RuntimeError("first"), job_id="job-b")
        classifier.classify(RuntimeError("again"), job_id="job-a")

        classifier.classify(RuntimeError("first"), job_id="job-c")

        assert [e.message for e in classifier.get_error_history("job-a")] == ["first", "again"]
        assert classifier.get_error_history("job-b") == []

    def test_statistics(self):
        classifier = ErrorClassifier()
        classifier.classify(EncoderError("ffmpeg failed"), job_id="job-1")
        classifier.classify(EncoderError("ffmpeg failed"), job_id="job-2")
        classifier.classify(InputFileError("missing"), job_id="job-3")

        stats = classifier.get_error_statistics(hours=1)

        assert stats["total_errors"] == 3
        assert stats["errors_by_type"] == {"ENCODER_ERROR": 2, "INPUT_FILE_ERROR": 1}
        assert stats["errors_by_severity"] == {"HIGH": 3}
        assert stats["most_common_errors"][0] == {"message": "ffmpeg failed", "count": 2}


class TestComputeErrorStatistics:
    def test_window_excludes_old_errors(self):
        old = ClassifiedError(
            type=ErrorType.ENCODER_ERROR,
            severity=ErrorSeverity.HIGH,
            message="old",
            retryable=True,
            timestamp=utcnow() - timedelta(hours=48),
        )
        new = ClassifiedError(
            type=ErrorType.STORAGE_ERROR, severity=ErrorSeverity.MEDIUM, message="new", retryable=True
        )

        stats = compute_error_statistics([old, new], hours=24)

        assert stats["total_errors"] == 1
        assert stats["errors_by_type"] == {"STORAGE_ERROR": 1}

    def test_empty(self):
        assert compute_error_statistics([]) == {
            "total_errors": 0,
            "errors_by_type": {},
            "errors_by_severity": {},
            "most_common_errors": [],
        }
