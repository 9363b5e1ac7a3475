"""
Pipeline exceptions and error classification.

Every failure in the worker pipeline is turned into a ClassifiedError with
a type and severity. Typed exceptions raised by the pipeline map directly;
anything else (OSError from the filesystem, errors from libraries) is
classified from its message.
"""

import errno
import logging
from collections import Counter, OrderedDict, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional

from api.enums import ErrorSeverity, ErrorType
from api.errors import truncate_error
from api.models import ClassifiedError
from config import ERROR_GLOBAL_HISTORY_LIMIT, ERROR_HISTORY_LIMIT

logger = logging.getLogger(__name__)


class TranscodingError(Exception):
    """Base class for pipeline failures. Subclasses carry a classification hint."""

    error_type: ErrorType = ErrorType.UNKNOWN_ERROR

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class InputFileError(TranscodingError):
    """Input file missing, unreadable or not a video."""

    error_type = ErrorType.INPUT_FILE_ERROR


class ProbeError(InputFileError):
    """ffprobe ran but could not read the input.

    Probe timeouts and a missing ffprobe binary are raised as
    EncoderTimeoutError and EncoderError instead.
    """


class EncoderError(TranscodingError):
    """Encoder exited with a non-zero status."""

    error_type = ErrorType.ENCODER_ERROR

    def __init__(self, message: str, returncode: Optional[int] = None, stderr_tail: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class EncoderTimeoutError(TranscodingError):
    """Encoder exceeded its wall-clock limit."""

    error_type = ErrorType.TIMEOUT_ERROR


class ClaimLostError(Exception):
    """Another worker took over the job; this worker must stop without reporting."""


class QualityResolutionError(TranscodingError):
    """No rendition can be produced for the input."""

    error_type = ErrorType.VALIDATION_ERROR


class PlaylistValidationError(TranscodingError):
    """Output failed structural validation."""

    error_type = ErrorType.VALIDATION_ERROR

    def __init__(self, message: str, issues: Optional[List[str]] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.issues = issues or []


ERROR_SEVERITY = {
    ErrorType.INPUT_FILE_ERROR: ErrorSeverity.HIGH,
    ErrorType.ENCODER_ERROR: ErrorSeverity.HIGH,
    ErrorType.STORAGE_ERROR: ErrorSeverity.MEDIUM,
    ErrorType.RESOURCE_ERROR: ErrorSeverity.CRITICAL,
    ErrorType.NETWORK_ERROR: ErrorSeverity.MEDIUM,
    ErrorType.TIMEOUT_ERROR: ErrorSeverity.HIGH,
    ErrorType.VALIDATION_ERROR: ErrorSeverity.LOW,
    ErrorType.UNKNOWN_ERROR: ErrorSeverity.MEDIUM,
}

NON_RETRYABLE_TYPES = frozenset({ErrorType.INPUT_FILE_ERROR, ErrorType.VALIDATION_ERROR})

# Message signatures, checked in this order. Storage and resource come
# before input so "no space left on device" is not read as a missing file.
MESSAGE_SIGNATURES = [
    (
        ErrorType.STORAGE_ERROR,
        ("enospc", "no space left", "disk full", "disk quota", "read-only file system", "i/o error", "input/output error"),
    ),
    (ErrorType.RESOURCE_ERROR, ("out of memory", "cannot allocate", "enomem", "memoryerror", "too many open files")),
    (
        ErrorType.INPUT_FILE_ERROR,
        (
            "no such file",
            "enoent",
            "input file",
            "invalid data found when processing input",
            "permission denied",
            "eacces",
            "no video stream",
        ),
    ),
    (ErrorType.NETWORK_ERROR, ("network", "connection", "econnrefused", "econnreset", "etimedout", "dns")),
    (ErrorType.TIMEOUT_ERROR, ("timed out", "timeout", "deadline exceeded")),
    (ErrorType.ENCODER_ERROR, ("ffmpeg", "encoder", "encoding", "codec", "libx264")),
    (ErrorType.VALIDATION_ERROR, ("validation", "invalid playlist", "missing segment", "playlist")),
]

ERRNO_TYPES = {
    errno.ENOSPC: ErrorType.STORAGE_ERROR,
    errno.EDQUOT: ErrorType.STORAGE_ERROR,
    errno.EROFS: ErrorType.STORAGE_ERROR,
    errno.EIO: ErrorType.STORAGE_ERROR,
    errno.ENOMEM: ErrorType.RESOURCE_ERROR,
    errno.EMFILE: ErrorType.RESOURCE_ERROR,
    errno.ENOENT: ErrorType.INPUT_FILE_ERROR,
    errno.EACCES: ErrorType.INPUT_FILE_ERROR,
}


def classify_message(message: str) -> ErrorType:
    """Classify a free-form error message by its signature."""
    lowered = message.lower()
    for error_type, needles in MESSAGE_SIGNATURES:
        if any(needle in lowered for needle in needles):
            return error_type
    return ErrorType.UNKNOWN_ERROR


def classify_exception(error: BaseException) -> ErrorType:
    if isinstance(error, TranscodingError):
        return error.error_type
    if isinstance(error, MemoryError):
        return ErrorType.RESOURCE_ERROR
    if isinstance(error, OSError) and error.errno in ERRNO_TYPES:
        return ERRNO_TYPES[error.errno]
    if isinstance(error, TimeoutError):
        return ErrorType.TIMEOUT_ERROR
    if isinstance(error, ConnectionError):
        return ErrorType.NETWORK_ERROR
    return classify_message(str(error) or type(error).__name__)


def compute_error_statistics(errors: Iterable[ClassifiedError], hours: float = 24, top: int = 10) -> Dict[str, Any]:
    """
    Summarize classified errors newer than `hours`.

    Returns:
        Dict with total_errors, errors_by_type, errors_by_severity and
        most_common_errors ([{"message", "count"}], most frequent first)
    """
    cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
    recent = [e for e in errors if e.timestamp >= cutoff]

    by_type = Counter(e.type.value for e in recent)
    by_severity = Counter(e.severity.value for e in recent)
    messages = Counter(e.message for e in recent)

    return {
        "total_errors": len(recent),
        "errors_by_type": dict(by_type),
        "errors_by_severity": dict(by_severity),
        "most_common_errors": [{"message": message, "count": count} for message, count in messages.most_common(top)],
    }


class ErrorClassifier:
    """Classifies failures and keeps a bounded in-memory history."""

    def __init__(
        self,
        history_limit: int = ERROR_HISTORY_LIMIT,
        global_limit: int = ERROR_GLOBAL_HISTORY_LIMIT,
    ) -> None:
        self.history_limit = history_limit
        # Per-job histories, oldest job evicted first
        self.job_limit = max(1, global_limit)
        self._history: "OrderedDict[str, Deque[ClassifiedError]]" = OrderedDict()
        self._recent: Deque[ClassifiedError] = deque(maxlen=global_limit)

    def classify(
        self,
        error: BaseException,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ClassifiedError:
        """
        Classify an exception and record it in the job's history.

        Args:
            error: The failure
            job_id: Job it happened in (None records only in the global window)
            stage: Pipeline stage name
            context: Extra diagnostic fields (merged with the exception's own context)
        """
        error_type = classify_exception(error)
        merged_context: Dict[str, Any] = {}
        if isinstance(error, TranscodingError):
            merged_context.update(error.context)
        if isinstance(error, EncoderError) and error.stderr_tail:
            merged_context["stderr_tail"] = truncate_error(error.stderr_tail)
        merged_context.update(context or {})

        message = str(error) or type(error).__name__
        classified = ClassifiedError(
            type=error_type,
            severity=ERROR_SEVERITY[error_type],
            message=truncate_error(message),
            retryable=error_type not in NON_RETRYABLE_TYPES,
            job_id=job_id,
            stage=stage,
            context=merged_context,
        )
        self.record(classified)
        logger.info(f"Classified error for job {job_id} at {stage}: {error_type.value} ({classified.severity.value})")
        return classified

    def record(self, error: ClassifiedError) -> None:
        if error.job_id is not None:
            history = self._history.get(error.job_id)
            if history is None:
                history = deque(maxlen=self.history_limit)
                self._history[error.job_id] = history
                while len(self._history) > self.job_limit:
                    self._history.popitem(last=False)
            else:
                self._history.move_to_end(error.job_id)
            history.append(error)
        self._recent.append(error)

    def get_error_history(self, job_id: str) -> List[ClassifiedError]:
        return list(self._history.get(job_id, ()))

    def clear_error_history(self, job_id: str) -> None:
        self._history.pop(job_id, None)

    def get_error_statistics(self, hours: float = 24) -> Dict[str, Any]:
        return compute_error_statistics(self._recent, hours=hours)
