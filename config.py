import json
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, Optional

# Configure logger for config module warnings
logger = logging.getLogger(__name__)


def get_int_env(
    name: str,
    default: int,
    min_val: Optional[int] = None,
    max_val: Optional[int] = None,
) -> int:
    """Get an integer from environment variable with error handling and validation.

    Args:
        name: Environment variable name
        default: Default value if env var is missing or invalid
        min_val: Optional minimum value (inclusive)
        max_val: Optional maximum value (inclusive)

    Returns:
        Parsed integer value, or default if parsing fails or value is out of range
    """
    value = os.getenv(name)
    if value is None:
        return default

    try:
        result = int(value)
    except ValueError:
        logger.warning(f"Invalid {name}='{value}', using default {default}")
        return default

    # Range validation (only applied to user-provided values)
    if min_val is not None and result < min_val:
        logger.warning(f"{name}={result} is below minimum {min_val}, using default {default}")
        return default
    if max_val is not None and result > max_val:
        logger.warning(f"{name}={result} is above maximum {max_val}, using default {default}")
        return default

    return result


def get_float_env(
    name: str,
    default: float,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
) -> float:
    """Get a float from environment variable with error handling and validation.

    Args:
        name: Environment variable name
        default: Default value if env var is missing or invalid
        min_val: Optional minimum value (inclusive)
        max_val: Optional maximum value (inclusive)

    Returns:
        Parsed float value, or default if parsing fails or value is out of range
    """
    value = os.getenv(name)
    if value is None:
        return default

    try:
        result = float(value)
    except ValueError:
        logger.warning(f"Invalid {name}='{value}', using default {default}")
        return default

    # Reject special float values (inf, -inf, nan)
    if math.isinf(result) or math.isnan(result):
        logger.warning(f"Invalid {name}='{value}' (special float), using default {default}")
        return default

    if min_val is not None and result < min_val:
        logger.warning(f"{name}={result} is below minimum {min_val}, using default {default}")
        return default
    if max_val is not None and result > max_val:
        logger.warning(f"{name}={result} is above maximum {max_val}, using default {default}")
        return default

    return result


def get_json_env(name: str) -> Dict[str, Any]:
    """Get a JSON object from an environment variable, or {} if unset/invalid."""
    value = os.getenv(name)
    if not value:
        return {}
    try:
        result = json.loads(value)
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in {name}: {e}, ignoring")
        return {}
    if not isinstance(result, dict):
        logger.warning(f"{name} must be a JSON object, ignoring")
        return {}
    return result


# Logging
LOG_LEVEL = os.getenv("VODFORGE_LOG_LEVEL", "INFO").upper()

# Default output root used by the CLI when a job does not name one
OUTPUT_ROOT = Path(os.getenv("VODFORGE_OUTPUT_ROOT", "./transcoded"))

# Quality catalog, ascending by bitrate.
# Bitrates are video kbps; master playlist BANDWIDTH is bitrate * 1000.
QUALITY_PRESETS = [
    {"name": "240p", "resolution": "426x240", "bitrate": 400},
    {"name": "360p", "resolution": "640x360", "bitrate": 800},
    {"name": "480p", "resolution": "854x480", "bitrate": 1400},
    {"name": "720p", "resolution": "1280x720", "bitrate": 2800},
    {"name": "1080p", "resolution": "1920x1080", "bitrate": 5000},
    {"name": "1440p", "resolution": "2560x1440", "bitrate": 8000},
    {"name": "2160p", "resolution": "3840x2160", "bitrate": 15000},
]

# Requested set for submissions that don't name their qualities
_default_qualities_env = os.getenv("VODFORGE_DEFAULT_QUALITIES", "360p,720p,1080p")
DEFAULT_QUALITIES = [q.strip() for q in _default_qualities_env.split(",") if q.strip()]

# Quality selection policy
# A profile is kept only if source/target >= tolerance on both axes
DOWNSCALE_TOLERANCE = get_float_env("VODFORGE_DOWNSCALE_TOLERANCE", 0.8, min_val=0.1, max_val=1.0)
# Keep one rescaled variant when no requested profile fits the source
RESCALE_FALLBACK_ENABLED = os.getenv("VODFORGE_RESCALE_FALLBACK", "true").lower() == "true"

# Encoder settings
FFMPEG_PATH = os.getenv("VODFORGE_FFMPEG_PATH", "ffmpeg")
FFPROBE_PATH = os.getenv("VODFORGE_FFPROBE_PATH", "ffprobe")
HLS_SEGMENT_DURATION = get_int_env("VODFORGE_HLS_SEGMENT_DURATION", 10, min_val=1)
ENCODER_GOP_SIZE = get_int_env("VODFORGE_ENCODER_GOP_SIZE", 48, min_val=1)
ENCODER_PRESET = os.getenv("VODFORGE_ENCODER_PRESET", "medium")
AUDIO_BITRATE = os.getenv("VODFORGE_AUDIO_BITRATE", "128k")
PROBE_TIMEOUT = get_float_env("VODFORGE_PROBE_TIMEOUT", 30.0, min_val=1.0)
# Number of stderr lines kept from a failed encode for diagnostics
ENCODER_STDERR_TAIL_LINES = get_int_env("VODFORGE_ENCODER_STDERR_TAIL_LINES", 20, min_val=1)

# Encoder timeout settings (prevents stuck transcoding jobs)
# Base multiplier applied to video duration (scaled by resolution)
ENCODER_TIMEOUT_BASE_MULTIPLIER = get_float_env("VODFORGE_ENCODER_TIMEOUT_BASE_MULTIPLIER", 2.0, min_val=0.1)
ENCODER_TIMEOUT_MINIMUM = get_int_env("VODFORGE_ENCODER_TIMEOUT_MINIMUM", 300, min_val=1)
ENCODER_TIMEOUT_MAXIMUM = get_int_env("VODFORGE_ENCODER_TIMEOUT_MAXIMUM", 14400, min_val=60)  # 4 hours

# Per-resolution timeout multipliers (applied on top of base multiplier)
ENCODER_TIMEOUT_RESOLUTION_MULTIPLIERS = {
    240: 1.0,
    360: 1.0,
    480: 1.25,
    720: 1.5,
    1080: 2.0,
    1440: 2.5,
    2160: 3.5,
}

# Worker pool settings
WORKER_CONCURRENCY = get_int_env("VODFORGE_WORKER_CONCURRENCY", 2, min_val=1)
# Qualities encoded at once within a single job (1 = sequential)
PARALLEL_QUALITIES = get_int_env("VODFORGE_PARALLEL_QUALITIES", 1, min_val=1)
WORKER_HEARTBEAT_INTERVAL = get_int_env("VODFORGE_WORKER_HEARTBEAT_INTERVAL", 15, min_val=1, max_val=59)
# No heartbeat for this long marks the worker unhealthy
WORKER_HEARTBEAT_TIMEOUT = get_int_env("VODFORGE_WORKER_HEARTBEAT_TIMEOUT", 60, min_val=2)
WORKER_STARTUP_RETRY_INTERVAL = get_float_env("VODFORGE_WORKER_STARTUP_RETRY_INTERVAL", 5.0, min_val=0.1)
WORKER_IDLE_SLEEP = get_float_env("VODFORGE_WORKER_IDLE_SLEEP", 1.0, min_val=0.0)
WORKER_HEALTH_PORT = get_int_env("VODFORGE_WORKER_HEALTH_PORT", 8080, min_val=1, max_val=65535)
# Free space / memory below these percentages fails readiness
WORKER_MIN_DISK_FREE_PERCENT = get_float_env("VODFORGE_WORKER_MIN_DISK_FREE_PERCENT", 5.0, min_val=0.0, max_val=100.0)
WORKER_MIN_MEMORY_FREE_PERCENT = get_float_env(
    "VODFORGE_WORKER_MIN_MEMORY_FREE_PERCENT", 5.0, min_val=0.0, max_val=100.0
)

# Progress update rate limiting (prevents status store write amplification)
PROGRESS_UPDATE_INTERVAL = get_float_env("VODFORGE_PROGRESS_UPDATE_INTERVAL", 2.0, min_val=0.0)

# Retry policy
RETRY_MAX_DELAY = get_float_env("VODFORGE_RETRY_MAX_DELAY", 300.0, min_val=0.0)
# Per-class overrides, e.g. {"ENCODER_ERROR": {"max_retries": 5, "retry_delay": 2}}
RETRY_POLICY_OVERRIDES = get_json_env("VODFORGE_RETRY_POLICY_OVERRIDES")

# Error history
ERROR_HISTORY_LIMIT = get_int_env("VODFORGE_ERROR_HISTORY_LIMIT", 50, min_val=1)
ERROR_GLOBAL_HISTORY_LIMIT = get_int_env("VODFORGE_ERROR_GLOBAL_HISTORY_LIMIT", 1000, min_val=1)

# Error Message Truncation Limits
ERROR_SUMMARY_MAX_LENGTH = get_int_env("VODFORGE_ERROR_SUMMARY_MAX_LENGTH", 200, min_val=10)
ERROR_DETAIL_MAX_LENGTH = get_int_env("VODFORGE_ERROR_DETAIL_MAX_LENGTH", 500, min_val=10)

# Status retention for terminal jobs (seconds, 0 = keep forever)
STATUS_RETENTION_SECONDS = get_int_env("VODFORGE_STATUS_RETENTION_SECONDS", 7 * 24 * 3600, min_val=0)

# Redis Configuration (job queue, status store, heartbeats)
REDIS_URL = os.getenv("VODFORGE_REDIS_URL", "redis://localhost:6379")
REDIS_POOL_SIZE = get_int_env("VODFORGE_REDIS_POOL_SIZE", 10, min_val=1)
REDIS_SOCKET_TIMEOUT = get_float_env("VODFORGE_REDIS_SOCKET_TIMEOUT", 10.0, min_val=0.1)
REDIS_SOCKET_CONNECT_TIMEOUT = get_float_env("VODFORGE_REDIS_SOCKET_CONNECT_TIMEOUT", 5.0, min_val=0.1)
REDIS_HEALTH_CHECK_INTERVAL = get_int_env("VODFORGE_REDIS_HEALTH_CHECK_INTERVAL", 30, min_val=1)
REDIS_KEY_PREFIX = os.getenv("VODFORGE_REDIS_KEY_PREFIX", "vodforge")

# Redis Streams Settings
REDIS_STREAM_MAX_LEN = get_int_env("VODFORGE_REDIS_STREAM_MAX_LEN", 10000, min_val=100)
REDIS_CONSUMER_GROUP = os.getenv("VODFORGE_REDIS_CONSUMER_GROUP", "vodforge-workers")
REDIS_CONSUMER_BLOCK_MS = get_int_env("VODFORGE_REDIS_CONSUMER_BLOCK_MS", 5000, min_val=100)
# Stall timeout: pending messages idle longer than this are redelivered
REDIS_PENDING_TIMEOUT_MS = get_int_env("VODFORGE_REDIS_PENDING_TIMEOUT_MS", 300000, min_val=1000)  # 5 min
DEAD_LETTER_MAX_LEN = get_int_env("VODFORGE_DEAD_LETTER_MAX_LEN", 1000, min_val=10)
# Queue cleanup: acknowledged job messages and dead letters older than these are trimmed
QUEUE_CLEAN_COMPLETED_HOURS = get_float_env("VODFORGE_QUEUE_CLEAN_COMPLETED_HOURS", 24.0, min_val=0.0)
QUEUE_CLEAN_FAILED_HOURS = get_float_env("VODFORGE_QUEUE_CLEAN_FAILED_HOURS", 7 * 24.0, min_val=0.0)

# Status/submission API
API_HOST = os.getenv("VODFORGE_API_HOST", "0.0.0.0")
API_PORT = get_int_env("VODFORGE_API_PORT", 9005, min_val=1, max_val=65535)
API_URL = os.getenv("VODFORGE_API_URL", f"http://localhost:{API_PORT}")

# Alerting Configuration
# Leave empty to disable webhook alerts
ALERT_WEBHOOK_URL = os.getenv("VODFORGE_ALERT_WEBHOOK_URL", "")
ALERT_WEBHOOK_TIMEOUT = get_int_env("VODFORGE_ALERT_WEBHOOK_TIMEOUT", 10, min_val=1)
# Minimum interval between alerts for the same event type (seconds)
ALERT_RATE_LIMIT_SECONDS = get_int_env("VODFORGE_ALERT_RATE_LIMIT_SECONDS", 300, min_val=0)
