"""Tests for transform option normalization.

**Feature: mediacache, Property 2: Option Normalization**
"""

import pytest
from hypothesis import given, settings, strategies as st

from mediacache.core.config import DEFAULT_QUALITY_TIERS
from mediacache.core.exceptions import ValidationError
from mediacache.modules.optimize.schemas import (
    TransformOptionsNormalizer,
    TransformRequest,
)
from mediacache.modules.transcoding.encoder import OutputFormat


@pytest.fixture
def normalizer() -> TransformOptionsNormalizer:
    return TransformOptionsNormalizer(DEFAULT_QUALITY_TIERS, max_width=2000)


class TestQualityClamping:
    """
    **Feature: mediacache, Property 2: Option Normalization**
    """

    @given(quality=st.integers(min_value=-10_000, max_value=10_000))
    @settings(max_examples=100)
    def test_numeric_quality_is_clamped(self, quality: int):
        """
        For any integer quality, the normalized value SHALL lie within 0-100
        and equal the input when already in range.
        """
        normalizer = TransformOptionsNormalizer(DEFAULT_QUALITY_TIERS)
        resolved, lossless = normalizer.resolve_quality(str(quality))

        assert 0 <= resolved <= 100
        assert lossless is False
        if 0 <= quality <= 100:
            assert resolved == quality

    @pytest.mark.parametrize("tier,expected", [
        ("low", 60),
        ("standard", 80),
        ("high", 90),
        ("auto:eco", 60),
        ("auto:good", 80),
        ("auto:best", 90),
        ("HIGH", 90),
    ])
    def test_named_tiers(self, normalizer, tier, expected):
        assert normalizer.resolve_quality(tier) == (expected, False)

    def test_lossless_sets_flag(self, normalizer):
        assert normalizer.resolve_quality("lossless") == (100, True)

    def test_tier_table_is_configurable(self):
        normalizer = TransformOptionsNormalizer({"standard": 75, "thumb": 40})
        assert normalizer.resolve_quality("thumb") == (40, False)
        assert normalizer.resolve_quality(None) == (75, False)

    @pytest.mark.parametrize("raw", ["best", "80%", "abc", ""])
    def test_unknown_quality_is_rejected(self, normalizer, raw):
        with pytest.raises(ValidationError):
            normalizer.resolve_quality(raw)


class TestWidth:

    def test_absent_width_uses_default(self):
        normalizer = TransformOptionsNormalizer(DEFAULT_QUALITY_TIERS, default_width=640)
        assert normalizer.resolve_width(None) == 640

    def test_absent_width_without_default_is_native(self, normalizer):
        assert normalizer.resolve_width(None) is None

    @pytest.mark.parametrize("raw", ["0", "-5", "abc", "12.5", "2001"])
    def test_invalid_width_is_rejected(self, normalizer, raw):
        with pytest.raises(ValidationError):
            normalizer.resolve_width(raw)

    def test_ceiling_is_inclusive(self, normalizer):
        assert normalizer.resolve_width("2000") == 2000

    def test_request_coerces_integers(self, normalizer):
        options = normalizer.normalize(TransformRequest(width=800, quality=70))
        assert options.width == 800
        assert options.quality == 70


class TestFormat:

    def test_default_format(self, normalizer):
        assert normalizer.resolve_format(None) == OutputFormat.WEBP

    def test_jpg_alias(self, normalizer):
        assert normalizer.resolve_format("jpg") == OutputFormat.JPEG

    def test_auto_prefers_avif_when_accepted(self, normalizer):
        accept = "image/avif,image/webp,image/apng,*/*;q=0.8"
        assert normalizer.resolve_format("auto", accept) == OutputFormat.AVIF

    def test_auto_falls_back_to_webp(self, normalizer):
        assert normalizer.resolve_format("auto", "image/webp,*/*") == OutputFormat.WEBP
        assert normalizer.resolve_format("auto", None) == OutputFormat.WEBP

    def test_video_formats(self, normalizer):
        assert normalizer.resolve_format("mp4").is_video
        assert normalizer.resolve_format("WEBM") == OutputFormat.WEBM

    @pytest.mark.parametrize("raw", ["gif", "tiff", "exe"])
    def test_unsupported_format_is_rejected(self, normalizer, raw):
        with pytest.raises(ValidationError):
            normalizer.resolve_format(raw)
