"""
Centralized enums for status and classification values used throughout the application.
Using str-based enums so values serialize cleanly to Redis and JSON.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle states of a transcoding job."""

    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class ErrorType(str, Enum):
    """Classification of pipeline failures."""

    INPUT_FILE_ERROR = "INPUT_FILE_ERROR"
    ENCODER_ERROR = "ENCODER_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    RESOURCE_ERROR = "RESOURCE_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ErrorSeverity(str, Enum):
    """How urgently a classified error needs attention."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class PlaylistType(str, Enum):
    """Media playlist framing."""

    VOD = "VOD"  # Closed with #EXT-X-ENDLIST
    LIVE = "LIVE"  # Open-ended, uses #EXT-X-MEDIA-SEQUENCE


class PipelineStage(str, Enum):
    """Pipeline stage names, recorded on classified errors."""

    INPUT = "input"
    PROBE = "probe"
    RESOLVE = "resolve"
    TRANSCODE = "transcode"
    PLAYLIST = "playlist"
    VALIDATE = "validate"
    FINALIZE = "finalize"


class AckOutcome(str, Enum):
    """What happened when a worker released a job's stream message."""

    ACKED = "acked"
    REQUEUED = "requeued"  # Resubmitted while running; latest payload delivered again
    LOST = "lost"  # Another worker owns the job now
    UNAVAILABLE = "unavailable"
