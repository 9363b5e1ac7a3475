"""
Quality selection: adapt requested renditions to the source video.

A requested profile is kept only when the source is at least
`tolerance` times its size on both axes, so a 1280x700 source still gets
its 720p rendition but a 640x360 source does not get a blown-up 1080p.
Kept profiles that are still larger than the source are encoded at the
source size with a proportionally lower bitrate.
"""

import logging
from typing import List, Sequence

from api.models import QualityProfile
from config import DOWNSCALE_TOLERANCE, RESCALE_FALLBACK_ENABLED
from worker.errors import QualityResolutionError

logger = logging.getLogger(__name__)


def _even(value: int) -> int:
    """Round down to an even number (libx264 needs even dimensions), minimum 2."""
    return max(2, value - (value % 2))


def rescale_to_source(quality: QualityProfile, source_width: int, source_height: int) -> QualityProfile:
    """
    Fit a profile inside the source dimensions.

    Returns the profile unchanged if it already fits; otherwise the target
    is clamped to the source size and the bitrate scaled by the pixel ratio.
    """
    if quality.width <= source_width and quality.height <= source_height:
        return quality

    width = _even(min(quality.width, source_width))
    height = _even(min(quality.height, source_height))
    ratio = (width * height) / quality.pixels
    bitrate = max(1, round(quality.bitrate_kbps * ratio))
    return QualityProfile(
        name=quality.name,
        width=width,
        height=height,
        bitrate_kbps=bitrate,
        fps=quality.fps,
    )


def resolve_qualities(
    source_width: int,
    source_height: int,
    requested: Sequence[QualityProfile],
    tolerance: float = DOWNSCALE_TOLERANCE,
    rescale_fallback: bool = RESCALE_FALLBACK_ENABLED,
) -> List[QualityProfile]:
    """
    Select the renditions to produce for a source video.

    Args:
        source_width: Probed source width in pixels
        source_height: Probed source height in pixels
        requested: Requested profiles, in any order
        tolerance: Minimum source/target ratio on both axes to keep a profile
        rescale_fallback: When nothing fits, encode the smallest requested
            profile at the source size instead of failing

    Returns:
        Non-empty list ordered ascending by bitrate, unique by name

    Raises:
        QualityResolutionError: If the source dimensions are invalid, nothing
            was requested, or nothing fits and the fallback is disabled
    """
    if source_width <= 0 or source_height <= 0:
        raise QualityResolutionError(
            f"No valid quality for this input video resolution ({source_width}x{source_height})"
        )
    if not requested:
        raise QualityResolutionError("No valid quality for this input: no qualities requested")

    selected = {}
    for quality in requested:
        if quality.name in selected:
            continue
        width_ratio = source_width / quality.width
        height_ratio = source_height / quality.height
        if width_ratio >= tolerance and height_ratio >= tolerance:
            selected[quality.name] = rescale_to_source(quality, source_width, source_height)
        else:
            logger.debug(
                f"Skipping {quality.name} for {source_width}x{source_height} source "
                f"(ratios {width_ratio:.2f}x{height_ratio:.2f} < {tolerance})"
            )

    if not selected:
        if not rescale_fallback:
            raise QualityResolutionError(
                f"No valid quality for this input video resolution ({source_width}x{source_height})"
            )
        smallest = min(requested, key=lambda q: (q.bitrate_kbps, q.pixels))
        fallback = rescale_to_source(smallest, source_width, source_height)
        logger.info(
            f"No requested quality fits {source_width}x{source_height}, "
            f"falling back to {fallback.name} at {fallback.resolution} ({fallback.bitrate_kbps}k)"
        )
        selected[fallback.name] = fallback

    return sorted(selected.values(), key=lambda q: (q.bitrate_kbps, q.pixels))
