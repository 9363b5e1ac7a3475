"""
Domain model for transcoding jobs.

Dataclasses shared by the queue, the status store, the worker pool and the
HTTP API. Queue messages use flat string dicts (Redis Streams only carry
strings); status entries use JSON.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from api.enums import ErrorSeverity, ErrorType, JobStatus
from config import DEFAULT_QUALITIES, QUALITY_PRESETS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp, returning None for missing or invalid values."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_resolution(resolution: str) -> Tuple[int, int]:
    """
    Parse a "WxH" resolution string.

    Raises:
        ValueError: If the string is not two positive integers separated by "x"
    """
    parts = resolution.lower().split("x")
    if len(parts) != 2:
        raise ValueError(f"Invalid resolution '{resolution}', expected WxH")
    try:
        width, height = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"Invalid resolution '{resolution}', expected WxH") from None
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid resolution '{resolution}', dimensions must be positive")
    return width, height


@dataclass(frozen=True)
class QualityProfile:
    """A target rendition: resolution and video bitrate (kbps)."""

    name: str
    width: int
    height: int
    bitrate_kbps: int
    fps: Optional[float] = None

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def bandwidth(self) -> int:
        """Bandwidth in bits per second, as advertised in the master playlist."""
        return self.bitrate_kbps * 1000

    @property
    def pixels(self) -> int:
        return self.width * self.height

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "resolution": self.resolution,
            "bitrate": self.bitrate_kbps,
        }
        if self.fps is not None:
            data["fps"] = self.fps
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityProfile":
        """Create from a {"name", "resolution", "bitrate", "fps"?} dict (the preset format)."""
        width, height = parse_resolution(str(data["resolution"]))
        bitrate = int(data["bitrate"])
        if bitrate <= 0:
            raise ValueError(f"Invalid bitrate {bitrate} for quality '{data['name']}'")
        fps = data.get("fps")
        return cls(
            name=str(data["name"]),
            width=width,
            height=height,
            bitrate_kbps=bitrate,
            fps=float(fps) if fps is not None else None,
        )


# Catalog, ascending by bitrate
QUALITY_CATALOG: Dict[str, QualityProfile] = {
    preset["name"]: QualityProfile.from_dict(preset) for preset in QUALITY_PRESETS
}


def profiles_for_names(names: Sequence[str]) -> List[QualityProfile]:
    """
    Look up catalog profiles by name.

    Raises:
        ValueError: If a name is not in the catalog
    """
    unknown = [name for name in names if name not in QUALITY_CATALOG]
    if unknown:
        raise ValueError(f"Unknown quality name(s): {', '.join(unknown)}")
    return [QUALITY_CATALOG[name] for name in names]


def default_qualities() -> List[QualityProfile]:
    """Requested set for submissions that name no qualities."""
    return profiles_for_names(DEFAULT_QUALITIES)


def generate_job_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class TranscodingJob:
    """
    A request to package one input file as HLS.

    Immutable once enqueued. Identity is job_id; resubmitting the same id
    replaces the stored payload and status entry.
    """

    job_id: str
    input_path: str
    output_path: str
    qualities: Tuple[QualityProfile, ...]
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        input_path: str,
        output_path: str,
        qualities: Optional[Sequence[QualityProfile]] = None,
        job_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "TranscodingJob":
        """Build a new job, generating an id and using the default qualities when omitted."""
        return cls(
            job_id=job_id or generate_job_id(),
            input_path=str(input_path),
            output_path=str(output_path),
            qualities=tuple(qualities) if qualities else tuple(default_qualities()),
            metadata=dict(metadata or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "input_path": self.input_path,
            "output_path": self.output_path,
            "qualities": [q.to_dict() for q in self.qualities],
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscodingJob":
        return cls(
            job_id=str(data["job_id"]),
            input_path=str(data["input_path"]),
            output_path=str(data["output_path"]),
            qualities=tuple(QualityProfile.from_dict(q) for q in data.get("qualities", [])),
            metadata=dict(data.get("metadata") or {}),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "TranscodingJob":
        return cls.from_dict(json.loads(raw))

    def to_stream_dict(self) -> Dict[str, str]:
        """Convert to Redis stream message format (all string values)."""
        return {
            "job_id": self.job_id,
            "input_path": self.input_path,
            "output_path": self.output_path,
            "qualities": json.dumps([q.to_dict() for q in self.qualities]),
            "metadata": json.dumps(self.metadata),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_stream_dict(cls, data: Dict[str, str]) -> "TranscodingJob":
        """Create from Redis stream message."""
        return cls(
            job_id=data["job_id"],
            input_path=data["input_path"],
            output_path=data["output_path"],
            qualities=tuple(QualityProfile.from_dict(q) for q in json.loads(data.get("qualities") or "[]")),
            metadata=json.loads(data.get("metadata") or "{}"),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
        )


@dataclass
class JobProgress:
    """Status entry of a job, as stored in the status store."""

    job_id: str
    status: JobStatus
    progress: int = 0
    current_step: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    attempt: int = 0
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "progress": self.progress,
            "current_step": self.current_step,
            "error": self.error,
            "error_type": self.error_type,
            "attempt": self.attempt,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobProgress":
        return cls(
            job_id=str(data["job_id"]),
            status=JobStatus(data["status"]),
            progress=int(data.get("progress", 0)),
            current_step=data.get("current_step"),
            error=data.get("error"),
            error_type=data.get("error_type"),
            attempt=int(data.get("attempt", 0)),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "JobProgress":
        return cls.from_dict(json.loads(raw))


@dataclass(frozen=True)
class SegmentInfo:
    """One media segment of a rendition."""

    filename: str
    duration: float
    size: Optional[int] = None
    discontinuity: bool = False


@dataclass(frozen=True)
class VariantStream:
    """One entry of a master playlist."""

    name: str
    bandwidth: int
    width: int
    height: int
    uri: str

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @classmethod
    def from_quality(cls, quality: QualityProfile) -> "VariantStream":
        return cls(
            name=quality.name,
            bandwidth=quality.bandwidth,
            width=quality.width,
            height=quality.height,
            uri=f"{quality.name}/playlist.m3u8",
        )


@dataclass(frozen=True)
class ClassifiedError:
    """A pipeline failure after classification."""

    type: ErrorType
    severity: ErrorSeverity
    message: str
    retryable: bool
    job_id: Optional[str] = None
    stage: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def summary(self) -> str:
        """Short form stored on FAILED status entries."""
        return f"{self.type.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "retryable": self.retryable,
            "job_id": self.job_id,
            "stage": self.stage,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassifiedError":
        return cls(
            type=ErrorType(data["type"]),
            severity=ErrorSeverity(data["severity"]),
            message=str(data.get("message", "")),
            retryable=bool(data.get("retryable", False)),
            job_id=data.get("job_id"),
            stage=data.get("stage"),
            context=dict(data.get("context") or {}),
            timestamp=parse_datetime(data.get("timestamp")) or utcnow(),
        )


@dataclass(frozen=True)
class VideoInfo:
    """Result of probing an input file."""

    width: int
    height: int
    duration: Optional[float]
    codec: str = "unknown"
    fps: Optional[float] = None
    size: int = 0
