"""
HLS playlist assembly, parsing and validation.

On-disk layout of a job:
    <output_dir>/master.m3u8
    <output_dir>/<quality>/playlist.m3u8
    <output_dir>/<quality>/segment_000.ts ...

Builders return text; writers replace files atomically so a reader never
sees a half-written playlist. Validators only read.
"""

import logging
import math
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from api.enums import PlaylistType
from api.models import QualityProfile, SegmentInfo, VariantStream

logger = logging.getLogger(__name__)

MASTER_PLAYLIST_NAME = "master.m3u8"
MEDIA_PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"
HLS_HEADER = "#EXTM3U"
ENDLIST_TAG = "#EXT-X-ENDLIST"

_ATTRIBUTE_RE = re.compile(r'([A-Z0-9-]+)=("[^"]*"|[^,]*)')


def build_master_playlist(variants: Sequence[VariantStream]) -> str:
    """
    Build a master playlist.

    Variants are written in ascending bandwidth order whatever order they
    are passed in.

    Raises:
        ValueError: If no variants are given
    """
    if not variants:
        raise ValueError("No variants provided")

    lines = [HLS_HEADER, "#EXT-X-VERSION:3"]
    for variant in sorted(variants, key=lambda v: (v.bandwidth, v.name)):
        lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={variant.bandwidth},RESOLUTION={variant.width}x{variant.height}")
        lines.append(variant.uri)
    return "\n".join(lines) + "\n"


def build_media_playlist(
    segments: Sequence[SegmentInfo],
    playlist_type: Union[PlaylistType, str] = PlaylistType.VOD,
    version: int = 3,
    media_sequence: int = 0,
) -> str:
    """
    Build a media playlist.

    Args:
        segments: Segments in playback order
        playlist_type: VOD (closed with #EXT-X-ENDLIST) or LIVE (open, with
            #EXT-X-MEDIA-SEQUENCE)
        version: #EXT-X-VERSION value
        media_sequence: Sequence number of the first segment (LIVE only)

    Raises:
        ValueError: If no segments are given
    """
    if not segments:
        raise ValueError("No segments provided")
    playlist_type = PlaylistType(playlist_type)

    target_duration = math.ceil(max(segment.duration for segment in segments))
    lines = [HLS_HEADER, f"#EXT-X-VERSION:{version}", f"#EXT-X-TARGETDURATION:{target_duration}"]
    if playlist_type == PlaylistType.VOD:
        lines.append("#EXT-X-PLAYLIST-TYPE:VOD")
    else:
        lines.append(f"#EXT-X-MEDIA-SEQUENCE:{media_sequence}")

    for segment in segments:
        if segment.discontinuity:
            lines.append("#EXT-X-DISCONTINUITY")
        lines.append(f"#EXTINF:{segment.duration:.6f},")
        lines.append(segment.filename)

    if playlist_type == PlaylistType.VOD:
        lines.append(ENDLIST_TAG)
    return "\n".join(lines) + "\n"


def parse_attributes(text: str) -> Dict[str, str]:
    """Parse an HLS attribute list (KEY=value,KEY="quoted,value")."""
    return {key: value.strip('"') for key, value in _ATTRIBUTE_RE.findall(text)}


def parse_media_playlist(text: str) -> List[SegmentInfo]:
    """
    Parse segments from a media playlist.

    Raises:
        ValueError: If the header is missing or an #EXTINF duration is malformed
    """
    if not text.startswith(HLS_HEADER):
        raise ValueError("Missing #EXTM3U header")

    segments = []
    duration: Optional[float] = None
    discontinuity = False
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("#EXTINF:"):
            value = line[len("#EXTINF:") :].split(",", 1)[0]
            try:
                duration = float(value)
            except ValueError:
                raise ValueError(f"Invalid #EXTINF duration: {value!r}") from None
        elif line == "#EXT-X-DISCONTINUITY":
            discontinuity = True
        elif not line.startswith("#"):
            if duration is None:
                raise ValueError(f"Segment {line} has no #EXTINF")
            segments.append(SegmentInfo(filename=line, duration=duration, discontinuity=discontinuity))
            duration = None
            discontinuity = False
    return segments


def parse_master_playlist(text: str) -> List[VariantStream]:
    """
    Parse variants from a master playlist, in file order.

    Raises:
        ValueError: If the header is missing or a variant lacks BANDWIDTH
    """
    if not text.startswith(HLS_HEADER):
        raise ValueError("Missing #EXTM3U header")

    variants = []
    pending: Optional[Dict[str, str]] = None
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("#EXT-X-STREAM-INF:"):
            pending = parse_attributes(line[len("#EXT-X-STREAM-INF:") :])
        elif not line.startswith("#") and pending is not None:
            if "BANDWIDTH" not in pending:
                raise ValueError(f"Variant {line} has no BANDWIDTH")
            width, _, height = pending.get("RESOLUTION", "0x0").partition("x")
            name = line.split("/", 1)[0] if "/" in line else Path(line).stem
            variants.append(
                VariantStream(
                    name=name,
                    bandwidth=int(pending["BANDWIDTH"]),
                    width=int(width or 0),
                    height=int(height or 0),
                    uri=line,
                )
            )
            pending = None
    return variants


def _atomic_write(path: Path, content: str) -> None:
    """Write a file via a temp file in the same directory and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_master_playlist(output_dir: Path, qualities: Sequence[QualityProfile]) -> Path:
    """Write <output_dir>/master.m3u8 for the given renditions."""
    path = Path(output_dir) / MASTER_PLAYLIST_NAME
    _atomic_write(path, build_master_playlist([VariantStream.from_quality(q) for q in qualities]))
    return path


def write_media_playlist(quality_dir: Path, segments: Sequence[SegmentInfo], **kwargs: Any) -> Path:
    """Write <quality_dir>/playlist.m3u8 (keyword arguments go to build_media_playlist)."""
    path = Path(quality_dir) / MEDIA_PLAYLIST_NAME
    _atomic_write(path, build_media_playlist(segments, **kwargs))
    return path


def scan_segments(quality_dir: Path, segments: Optional[Sequence[SegmentInfo]] = None) -> List[SegmentInfo]:
    """
    Attach on-disk sizes to segments.

    Args:
        quality_dir: Rendition directory
        segments: Segments to complete; read from the existing playlist.m3u8 when omitted

    Returns:
        Segments with `size` set (None for files missing on disk)
    """
    quality_dir = Path(quality_dir)
    if segments is None:
        playlist_path = quality_dir / MEDIA_PLAYLIST_NAME
        if not playlist_path.exists():
            return []
        segments = parse_media_playlist(playlist_path.read_text())

    result = []
    for segment in segments:
        segment_path = quality_dir / segment.filename
        size = segment_path.stat().st_size if segment_path.exists() else None
        result.append(
            SegmentInfo(
                filename=segment.filename,
                duration=segment.duration,
                size=size,
                discontinuity=segment.discontinuity,
            )
        )
    return result


@dataclass
class ValidationResult:
    valid: bool
    issues: List[str] = field(default_factory=list)
    segment_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "issues": list(self.issues), "segment_counts": dict(self.segment_counts)}


@dataclass
class PlaylistCheck:
    valid: bool
    issues: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


def _quality_names(expected: Sequence[Union[str, QualityProfile]]) -> List[str]:
    names = []
    for quality in expected:
        name = quality.name if isinstance(quality, QualityProfile) else str(quality)
        if name not in names:
            names.append(name)
    return names


def _check_master(output_dir: Path, names: List[str], issues: List[str]) -> None:
    master_path = output_dir / MASTER_PLAYLIST_NAME
    if not master_path.exists():
        issues.append(f"Master playlist ({MASTER_PLAYLIST_NAME}) not found")
        return

    text = master_path.read_text()
    if not text.startswith(HLS_HEADER):
        issues.append("Master playlist has invalid header")
        return

    try:
        referenced = [variant.name for variant in parse_master_playlist(text)]
    except ValueError:
        issues.append("Master playlist has invalid header")
        return

    for name in names:
        if name not in referenced:
            issues.append(f"Master playlist does not reference {name}")
    for name in referenced:
        if name not in names:
            issues.append(f"Master playlist references unexpected variant {name}")


def _check_quality(output_dir: Path, name: str, issues: List[str], segment_counts: Dict[str, int]) -> None:
    quality_dir = output_dir / name
    playlist_path = quality_dir / MEDIA_PLAYLIST_NAME
    if not playlist_path.exists():
        issues.append(f"Missing playlist for {name}")
        return

    text = playlist_path.read_text()
    filenames = [line.strip() for line in text.splitlines() if line.strip() and not line.strip().startswith("#")]
    segment_counts[name] = len(filenames)

    if not text.startswith(HLS_HEADER):
        issues.append(f"Invalid playlist header for {name}")
    if not filenames:
        issues.append(f"No segments found for {name}")
    elif ENDLIST_TAG not in text:
        issues.append(f"Missing {ENDLIST_TAG} for {name}")
    for filename in filenames:
        if not (quality_dir / filename).exists():
            issues.append(f"Missing segment {filename} for {name}")


def validate_output(output_dir: Path, expected_qualities: Sequence[Union[str, QualityProfile]]) -> ValidationResult:
    """
    Check the structure of a job's output tree.

    Safe to call at any time, including while encodes are running: it only
    reads, and problems are reported as issues rather than raised.

    Args:
        output_dir: Job output directory
        expected_qualities: Quality names (or profiles) that should be present

    Returns:
        ValidationResult with one issue string per problem found
    """
    output_dir = Path(output_dir)
    names = _quality_names(expected_qualities)
    issues: List[str] = []
    segment_counts: Dict[str, int] = {}

    try:
        _check_master(output_dir, names, issues)
    except (OSError, ValueError) as e:
        issues.append(f"Master playlist check failed: {e}")
    for name in names:
        # A directory removed mid-encode only affects its own rendition
        try:
            _check_quality(output_dir, name, issues, segment_counts)
        except (OSError, ValueError) as e:
            issues.append(f"Check failed for {name}: {e}")

    return ValidationResult(valid=not issues, issues=issues, segment_counts=segment_counts)


def validate_playlist(path: Path) -> PlaylistCheck:
    """
    Check a single media playlist and report its metadata.

    Metadata keys: version, target_duration, segment_count, total_duration,
    playlist_type. Never raises.
    """
    path = Path(path)
    issues: List[str] = []
    metadata: Dict[str, Any] = {}

    try:
        if not path.exists():
            return PlaylistCheck(valid=False, issues=["Playlist not found"])
        text = path.read_text()
        if not text.startswith(HLS_HEADER):
            return PlaylistCheck(valid=False, issues=["Invalid playlist header"])

        for raw_line in text.splitlines():
            line = raw_line.strip()
            if line.startswith("#EXT-X-VERSION:"):
                metadata["version"] = int(line.split(":", 1)[1])
            elif line.startswith("#EXT-X-TARGETDURATION:"):
                metadata["target_duration"] = int(line.split(":", 1)[1])
            elif line.startswith("#EXT-X-PLAYLIST-TYPE:"):
                metadata["playlist_type"] = line.split(":", 1)[1]

        segments = parse_media_playlist(text)
        has_endlist = ENDLIST_TAG in text
        metadata.setdefault("playlist_type", PlaylistType.VOD.value if has_endlist else PlaylistType.LIVE.value)
        metadata["segment_count"] = len(segments)
        metadata["total_duration"] = round(sum(s.duration for s in segments), 6)

        if not segments:
            issues.append("No segments found")
        if "target_duration" not in metadata:
            issues.append("Missing #EXT-X-TARGETDURATION")
        else:
            for segment in segments:
                if round(segment.duration) > metadata["target_duration"]:
                    issues.append(f"Segment {segment.filename} exceeds target duration")
        if metadata["playlist_type"] == PlaylistType.VOD.value and not has_endlist:
            issues.append(f"Missing {ENDLIST_TAG}")
        for segment in segments:
            if not (path.parent / segment.filename).exists():
                issues.append(f"Missing segment file: {segment.filename}")
    except (OSError, ValueError) as e:
        issues.append(f"Validation failed: {e}")

    return PlaylistCheck(valid=not issues, issues=issues, metadata=metadata)
