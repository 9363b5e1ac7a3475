"""Tests for quality selection against the source resolution."""

import pytest

from api.models import QualityProfile, profiles_for_names
from worker.errors import QualityResolutionError
from worker.quality import _even, rescale_to_source, resolve_qualities


def names(profiles):
    return [p.name for p in profiles]


class TestResolveQualities:
    """Tests for resolve_qualities."""

    def test_full_hd_source_keeps_all(self):
        """A 1920x1080 source keeps 360p, 720p and 1080p, ascending by bitrate."""
        result = resolve_qualities(1920, 1080, profiles_for_names(["1080p", "360p", "720p"]))

        assert names(result) == ["360p", "720p", "1080p"]
        assert [p.bitrate_kbps for p in result] == sorted(p.bitrate_kbps for p in result)

    def test_480p_source_keeps_only_360p(self):
        """854x480 is too small for 720p and 1080p."""
        result = resolve_qualities(854, 480, profiles_for_names(["360p", "720p", "1080p"]))

        assert names(result) == ["360p"]

    def test_tolerance_allows_slightly_smaller_source(self):
        """A 1280x700 source still gets 720p, encoded at the source height."""
        result = resolve_qualities(1280, 700, profiles_for_names(["720p"]), tolerance=0.8)

        assert names(result) == ["720p"]
        assert (result[0].width, result[0].height) == (1280, 700)
        assert result[0].bitrate_kbps < 2800

    def test_strict_tolerance(self):
        """With tolerance 1.0 a profile must fit entirely."""
        result = resolve_qualities(1280, 700, profiles_for_names(["360p", "720p"]), tolerance=1.0)

        assert names(result) == ["360p"]

    def test_fallback_rescales_smallest_requested(self):
        """When nothing fits, the smallest requested profile is rescaled to the source."""
        result = resolve_qualities(320, 180, profiles_for_names(["1080p", "720p"]))

        assert len(result) == 1
        assert result[0].name == "720p"
        assert (result[0].width, result[0].height) == (320, 180)
        assert result[0].bitrate_kbps == round(2800 * (320 * 180) / (1280 * 720))

    def test_fallback_disabled_raises(self):
        with pytest.raises(QualityResolutionError, match="No valid quality for this input"):
            resolve_qualities(320, 180, profiles_for_names(["720p"]), rescale_fallback=False)

    @pytest.mark.parametrize("width,height", [(0, 1080), (1920, 0), (-1, -1)])
    def test_invalid_source_dimensions_raise(self, width, height):
        with pytest.raises(QualityResolutionError):
            resolve_qualities(width, height, profiles_for_names(["360p"]))

    def test_nothing_requested_raises(self):
        with pytest.raises(QualityResolutionError):
            resolve_qualities(1920, 1080, [])

    def test_duplicate_names_kept_once(self):
        result = resolve_qualities(1920, 1080, profiles_for_names(["720p", "720p", "360p"]))

        assert names(result) == ["360p", "720p"]

    def test_custom_profile(self):
        custom = QualityProfile(name="mobile", width=480, height=270, bitrate_kbps=500)

        result = resolve_qualities(1920, 1080, [custom] + profiles_for_names(["720p"]))

        assert names(result) == ["mobile", "720p"]
        assert result[0] is custom


class TestRescaleToSource:
    """Tests for rescale_to_source."""

    def test_fitting_profile_unchanged(self):
        profile = profiles_for_names(["720p"])[0]

        assert rescale_to_source(profile, 1920, 1080) is profile

    def test_clamps_to_even_dimensions(self):
        """libx264 needs even dimensions."""
        profile = profiles_for_names(["720p"])[0]

        result = rescale_to_source(profile, 1279, 719)

        assert (result.width, result.height) == (1278, 718)
        assert result.name == "720p"

    def test_bitrate_never_zero(self):
        profile = QualityProfile(name="tiny", width=1920, height=1080, bitrate_kbps=1)

        assert rescale_to_source(profile, 2, 2).bitrate_kbps == 1


class TestEven:
    @pytest.mark.parametrize("value,expected", [(720, 720), (719, 718), (1, 2), (3, 2)])
    def test_even(self, value, expected):
        assert _even(value) == expected
