from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from api.models import QualityProfile, parse_resolution


class QualityProfileRequest(BaseModel):
    """A custom quality profile; named presets can be given as plain strings instead."""

    name: str = Field(..., min_length=1, max_length=32, pattern=r"^[A-Za-z0-9_-]+$")
    resolution: str = Field(..., description="WIDTHxHEIGHT, e.g. 1280x720")
    bitrate: int = Field(..., gt=0, le=200000, description="Video bitrate in kbps")
    fps: Optional[float] = Field(default=None, gt=0, le=240)

    @field_validator("resolution")
    @classmethod
    def validate_resolution(cls, v: str) -> str:
        parse_resolution(v)
        return v

    def to_profile(self) -> QualityProfile:
        width, height = parse_resolution(self.resolution)
        return QualityProfile(name=self.name, width=width, height=height, bitrate_kbps=self.bitrate, fps=self.fps)


class JobSubmitRequest(BaseModel):
    job_id: Optional[str] = Field(default=None, min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    input_path: str = Field(..., min_length=1, max_length=4096)
    output_path: str = Field(..., min_length=1, max_length=4096)
    qualities: Optional[List[Union[str, QualityProfileRequest]]] = Field(
        default=None, description="Preset names or custom profiles; defaults when omitted"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("qualities")
    @classmethod
    def validate_qualities(cls, v):
        if v is not None and len(v) == 0:
            raise ValueError("qualities must not be empty when given")
        return v


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str
    enqueued: bool


class JobStatusResponse(BaseModel):
    job_id: str
    status: str  # QUEUED, PROCESSING, COMPLETED, FAILED
    progress: int = 0
    current_step: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    attempt: int = 0
    updated_at: Optional[datetime] = None


class ClassifiedErrorResponse(BaseModel):
    type: str
    severity: str
    message: str
    retryable: bool
    job_id: Optional[str] = None
    stage: Optional[str] = None
    context: Dict[str, Any] = {}
    timestamp: Optional[datetime] = None


class JobErrorsResponse(BaseModel):
    job_id: str
    errors: List[ClassifiedErrorResponse] = []


class CommonError(BaseModel):
    message: str
    count: int


class ErrorStatsResponse(BaseModel):
    hours: float
    total_errors: int
    errors_by_type: Dict[str, int] = {}
    errors_by_severity: Dict[str, int] = {}
    most_common_errors: List[CommonError] = []


class QueueStatsResponse(BaseModel):
    stream: str
    length: int
    waiting: Optional[int] = None  # None when Redis does not report consumer lag
    pending: int
    dead_letter: int
    paused: bool = False


class QueuePauseResponse(BaseModel):
    paused: bool


class QueueCleanResponse(BaseModel):
    completed: int  # Acknowledged job messages removed
    failed: int  # Dead letters removed


class HealthResponse(BaseModel):
    status: str  # healthy, unhealthy
    redis: bool
    timestamp: datetime
