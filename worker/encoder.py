"""
Encoder driver: ffprobe/ffmpeg subprocess management.

One `transcode` call produces one rendition:
    <output_dir>/<quality>/playlist.m3u8
    <output_dir>/<quality>/segment_000.ts, segment_001.ts, ...

The driver never retries. Failures are raised as EncoderError or
EncoderTimeoutError and handled by the worker pool.
"""

import asyncio
import json
import logging
import math
import shutil
from collections import deque
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, List, Optional

from api.models import QualityProfile, SegmentInfo, VideoInfo
from config import (
    AUDIO_BITRATE,
    ENCODER_GOP_SIZE,
    ENCODER_PRESET,
    ENCODER_STDERR_TAIL_LINES,
    ENCODER_TIMEOUT_BASE_MULTIPLIER,
    ENCODER_TIMEOUT_MAXIMUM,
    ENCODER_TIMEOUT_MINIMUM,
    ENCODER_TIMEOUT_RESOLUTION_MULTIPLIERS,
    FFMPEG_PATH,
    FFPROBE_PATH,
    HLS_SEGMENT_DURATION,
    PROBE_TIMEOUT,
)
from worker.errors import EncoderError, EncoderTimeoutError, InputFileError, ProbeError
from worker.playlist import MEDIA_PLAYLIST_NAME, SEGMENT_PATTERN, parse_media_playlist, scan_segments
from worker.progress import ProgressLineScanner, percent_complete

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]

# Progress reported when the duration is unknown
COARSE_START_PROGRESS = 10


def calculate_encoder_timeout(duration: Optional[float], height: int = 1080) -> float:
    """
    Calculate appropriate timeout for one encode based on video duration and resolution.

    Higher resolutions take longer to encode, so timeouts scale accordingly.

    Args:
        duration: Video duration in seconds (None = unknown, uses the maximum)
        height: Target resolution height (e.g., 360, 720, 1080, 2160)

    Returns:
        Timeout in seconds, clamped between min and max values
    """
    if not duration or duration <= 0:
        return float(ENCODER_TIMEOUT_MAXIMUM)
    # Default to 2.0 for heights not in the table
    resolution_multiplier = ENCODER_TIMEOUT_RESOLUTION_MULTIPLIERS.get(height, 2.0)
    timeout = duration * ENCODER_TIMEOUT_BASE_MULTIPLIER * resolution_multiplier
    return max(ENCODER_TIMEOUT_MINIMUM, min(timeout, ENCODER_TIMEOUT_MAXIMUM))


def parse_duration(raw: Any) -> Optional[float]:
    """Parse an ffprobe duration, returning None for missing, non-finite or non-positive values."""
    if raw is None:
        return None
    try:
        duration = float(raw)
    except (TypeError, ValueError):
        return None
    if math.isnan(duration) or math.isinf(duration) or duration <= 0:
        return None
    return duration


def parse_frame_rate(raw: Optional[str]) -> Optional[float]:
    """Parse an ffprobe rate like "30000/1001" or "25"."""
    if not raw:
        return None
    numerator, _, denominator = raw.partition("/")
    try:
        value = float(numerator) / float(denominator) if denominator else float(numerator)
    except (ValueError, ZeroDivisionError):
        return None
    return round(value, 3) if value > 0 else None


async def cleanup_process(process: asyncio.subprocess.Process, context: str = "ffmpeg") -> None:
    """
    Kill and reap a subprocess, tolerating the race where it exits between
    the returncode check and kill().
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            # Process already terminated
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


class EncoderDriver:
    """Runs ffprobe and ffmpeg for the worker pool."""

    def __init__(
        self,
        ffmpeg_path: str = FFMPEG_PATH,
        ffprobe_path: str = FFPROBE_PATH,
        segment_duration: int = HLS_SEGMENT_DURATION,
        gop_size: int = ENCODER_GOP_SIZE,
        preset: str = ENCODER_PRESET,
        audio_bitrate: str = AUDIO_BITRATE,
        probe_timeout: float = PROBE_TIMEOUT,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.segment_duration = segment_duration
        self.gop_size = gop_size
        self.preset = preset
        self.audio_bitrate = audio_bitrate
        self.probe_timeout = probe_timeout

    async def is_available(self, timeout: float = 10.0) -> bool:
        """Check that the encoder binary can be executed."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg_path,
                "-version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning(f"Encoder binary {self.ffmpeg_path} not executable: {e}")
            return False
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            await cleanup_process(process, "ffmpeg -version")
            return False
        return process.returncode == 0

    async def probe(self, input_path: Path) -> VideoInfo:
        """Get video metadata using ffprobe (async with timeout).

        Args:
            input_path: Path to the video file

        Returns:
            VideoInfo; duration is None when ffprobe reports no usable duration

        Raises:
            InputFileError: If the file does not exist
            ProbeError: If ffprobe rejects the input or finds no video stream
            EncoderTimeoutError: If ffprobe exceeds probe_timeout
            EncoderError: If ffprobe cannot be started
        """
        input_path = Path(input_path)
        if not input_path.is_file():
            raise InputFileError(f"No such file or directory: {input_path}")

        cmd = [
            self.ffprobe_path,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(input_path),
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            # Missing or broken binary, not a bad input
            raise EncoderError(f"ffprobe could not be started: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            await cleanup_process(process, "ffprobe")
            raise EncoderTimeoutError(
                f"ffprobe timed out after {self.probe_timeout}s (file may be on slow storage or corrupted)",
                context={"timeout": self.probe_timeout},
            ) from None

        if process.returncode != 0:
            raise ProbeError(f"ffprobe failed: {stderr.decode('utf-8', errors='ignore').strip()}")

        try:
            data = json.loads(stdout.decode("utf-8", errors="ignore"))
        except json.JSONDecodeError as e:
            raise ProbeError(f"ffprobe returned invalid JSON: {e}") from e

        video_stream = next((s for s in data.get("streams", []) if s.get("codec_type") == "video"), None)
        if not video_stream:
            raise ProbeError(f"No video stream found in input file {input_path.name}")

        fmt = data.get("format", {})
        duration = parse_duration(fmt.get("duration")) or parse_duration(video_stream.get("duration"))
        if duration is None:
            logger.warning(f"Could not determine duration of {input_path.name}, progress will be coarse")

        try:
            size = int(fmt.get("size") or input_path.stat().st_size)
        except (TypeError, ValueError):
            size = input_path.stat().st_size

        return VideoInfo(
            width=int(video_stream.get("width", 0)),
            height=int(video_stream.get("height", 0)),
            duration=duration,
            codec=video_stream.get("codec_name", "unknown"),
            fps=parse_frame_rate(video_stream.get("avg_frame_rate") or video_stream.get("r_frame_rate")),
            size=size,
        )

    def build_command(self, input_path: Path, quality_dir: Path, quality: QualityProfile) -> List[str]:
        """Build the ffmpeg command for one HLS rendition."""
        maxrate = int(quality.bitrate_kbps * 1.2)
        bufsize = quality.bitrate_kbps * 2
        cmd = [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-nostats",
            "-v",
            "error",
            "-i",
            str(input_path),
            "-map",
            "0:v:0",
            "-map",
            "0:a:0?",
            "-c:v",
            "libx264",
            "-preset",
            self.preset,
            "-profile:v",
            "high",
        ]
        if quality.height <= 1080:
            cmd.extend(["-level:v", "4.0"])
        cmd.extend(
            [
                "-crf",
                "23",
                "-b:v",
                f"{quality.bitrate_kbps}k",
                "-maxrate",
                f"{maxrate}k",
                "-bufsize",
                f"{bufsize}k",
                "-vf",
                f"scale={quality.width}:{quality.height}",
            ]
        )
        if quality.fps:
            cmd.extend(["-r", f"{quality.fps:g}"])
        cmd.extend(
            [
                "-g",
                str(self.gop_size),
                "-keyint_min",
                str(self.gop_size),
                "-sc_threshold",
                "0",
                "-c:a",
                "aac",
                "-b:a",
                self.audio_bitrate,
                "-ar",
                "48000",
                "-ac",
                "2",
                "-f",
                "hls",
                "-hls_time",
                str(self.segment_duration),
                "-hls_playlist_type",
                "vod",
                "-hls_flags",
                "independent_segments",
                "-hls_segment_filename",
                str(quality_dir / SEGMENT_PATTERN),
                "-progress",
                "pipe:1",
                str(quality_dir / MEDIA_PLAYLIST_NAME),
            ]
        )
        return cmd

    async def transcode(
        self,
        input_path: Path,
        output_dir: Path,
        quality: QualityProfile,
        on_progress: Optional[ProgressCallback] = None,
        duration: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> List[SegmentInfo]:
        """
        Encode one rendition.

        Any previous output for this quality is removed first, so a
        redelivered job overwrites rather than appends.

        Args:
            input_path: Source video
            output_dir: Job output directory
            quality: Target rendition
            on_progress: Async callback receiving 0-100 for this rendition
            duration: Source duration; None degrades progress to 10% / 100%
            timeout: Wall-clock limit; defaults to calculate_encoder_timeout()

        Returns:
            Segments listed in the generated playlist, with sizes from disk

        Raises:
            EncoderTimeoutError: If the limit is exceeded
            EncoderError: If ffmpeg cannot start, exits non-zero or writes no playlist
        """
        quality_dir = Path(output_dir) / quality.name
        if quality_dir.exists():
            shutil.rmtree(quality_dir)
        quality_dir.mkdir(parents=True, exist_ok=True)

        if timeout is None:
            timeout = calculate_encoder_timeout(duration, quality.height)
        cmd = self.build_command(Path(input_path), quality_dir, quality)
        context = f"ffmpeg {quality.name}"
        logger.info(f"Starting {context} ({quality.resolution} @ {quality.bitrate_kbps}k, timeout {timeout:.0f}s)")
        logger.debug(" ".join(cmd))

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EncoderError(f"ffmpeg could not be started: {e}", context={"quality": quality.name}) from e

        if duration is None and on_progress:
            await on_progress(COARSE_START_PROGRESS)

        scanner = ProgressLineScanner()
        stderr_tail: Deque[str] = deque(maxlen=ENCODER_STDERR_TAIL_LINES)
        last_progress = -1
        start_time = asyncio.get_running_loop().time()
        timed_out = False

        async def read_progress():
            """Feed ffmpeg -progress output to the scanner."""
            nonlocal last_progress
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                sample = scanner.feed(line.decode("utf-8", errors="ignore"))
                if sample is None or not on_progress:
                    continue
                percent = percent_complete(sample.elapsed, duration)
                # progress=end is reported by the caller once the playlist checks out
                if percent is not None and last_progress < percent < 100:
                    last_progress = percent
                    await on_progress(percent)

        async def drain_stderr():
            """Keep the last lines of stderr so a full pipe never blocks ffmpeg."""
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="ignore").rstrip()
                if text:
                    stderr_tail.append(text)

        async def timeout_killer():
            """Kill process after timeout."""
            nonlocal timed_out
            await asyncio.sleep(timeout)
            timed_out = True
            elapsed = asyncio.get_running_loop().time() - start_time
            logger.warning(f"{context} exceeded {timeout:.0f}s limit (ran for {elapsed:.0f}s)")
            try:
                process.kill()
            except ProcessLookupError:
                pass  # Process already terminated

        # The killer closes stdout/stderr by killing the process, which ends the readers
        timeout_task = asyncio.create_task(timeout_killer())
        try:
            await asyncio.gather(read_progress(), drain_stderr())
            await process.wait()
        finally:
            timeout_task.cancel()
            try:
                await timeout_task
            except asyncio.CancelledError:
                pass
            await cleanup_process(process, context)

        tail = "\n".join(stderr_tail)
        if timed_out:
            elapsed = asyncio.get_running_loop().time() - start_time
            raise EncoderTimeoutError(
                f"Encoding {quality.name} timed out after {elapsed:.0f} seconds (limit: {timeout:.0f}s)",
                context={"quality": quality.name, "timeout": timeout},
            )

        if process.returncode != 0:
            last_line = stderr_tail[-1] if stderr_tail else "no error output"
            raise EncoderError(
                f"ffmpeg encoding failed for {quality.name} (exit code {process.returncode}): {last_line}",
                returncode=process.returncode,
                stderr_tail=tail,
                context={"quality": quality.name},
            )

        playlist_path = quality_dir / MEDIA_PLAYLIST_NAME
        if not playlist_path.exists():
            raise EncoderError(
                f"ffmpeg produced no playlist for {quality.name}",
                returncode=process.returncode,
                stderr_tail=tail,
                context={"quality": quality.name},
            )

        try:
            segments = scan_segments(quality_dir, parse_media_playlist(playlist_path.read_text()))
        except ValueError as e:
            raise EncoderError(
                f"ffmpeg wrote an unreadable playlist for {quality.name}: {e}",
                returncode=process.returncode,
                stderr_tail=tail,
                context={"quality": quality.name},
            ) from e
        if on_progress:
            await on_progress(100)
        logger.info(f"Finished {context}: {len(segments)} segments")
        return segments
