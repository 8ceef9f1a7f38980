"""Property-based tests for downscale-only image encoding.

**Feature: mediacache, Property 6: Downscale Only**

Requesting a width above the source's native width yields the native width,
never an enlarged image.
"""

import io

import pytest
from hypothesis import given, settings, strategies as st
from PIL import Image

from mediacache.core.exceptions import EncodingError
from mediacache.modules.transcoding.encoder import (
    EncodeOptions,
    ImageEncoder,
    OutputFormat,
    target_dimensions,
)


class TestTargetDimensions:
    """
    **Feature: mediacache, Property 6: Downscale Only**
    """

    @given(
        width=st.integers(min_value=1, max_value=8000),
        height=st.integers(min_value=1, max_value=8000),
        requested=st.one_of(st.none(), st.integers(min_value=1, max_value=10000)),
    )
    @settings(max_examples=200)
    def test_output_never_exceeds_source(self, width, height, requested):
        """
        For any source size and requested width, the output width SHALL be
        min(requested, native) and the height SHALL never grow.
        """
        out_w, out_h = target_dimensions(width, height, requested)

        expected_width = width if requested is None else min(requested, width)
        assert out_w == expected_width
        assert 1 <= out_h <= height

    @given(
        width=st.integers(min_value=2, max_value=4000),
        height=st.integers(min_value=2, max_value=4000),
        requested=st.integers(min_value=1, max_value=4000),
    )
    @settings(max_examples=100)
    def test_aspect_ratio_is_preserved(self, width, height, requested):
        out_w, out_h = target_dimensions(width, height, requested)

        if requested < width:
            assert abs(out_h - height * requested / width) <= 1


class TestImageEncoder:

    def _decode(self, data: bytes) -> Image.Image:
        return Image.open(io.BytesIO(data))

    def test_larger_width_keeps_native_size(self, make_image):
        source = make_image(120, 80)

        result = ImageEncoder().encode(source, EncodeOptions(format=OutputFormat.PNG, width=1000))

        assert (result.width, result.height) == (120, 80)
        assert self._decode(result.data).size == (120, 80)

    def test_smaller_width_downscales(self, make_image):
        source = make_image(400, 200)

        result = ImageEncoder().encode(source, EncodeOptions(format=OutputFormat.PNG, width=100))

        assert (result.width, result.height) == (100, 50)
        assert self._decode(result.data).size == (100, 50)

    @pytest.mark.parametrize("fmt,pil_format", [
        (OutputFormat.WEBP, "WEBP"),
        (OutputFormat.JPEG, "JPEG"),
        (OutputFormat.PNG, "PNG"),
    ])
    def test_output_format(self, make_image, fmt, pil_format):
        result = ImageEncoder().encode(make_image(64, 64), EncodeOptions(format=fmt, quality=70))

        assert self._decode(result.data).format == pil_format
        assert result.content_type == f"image/{fmt.value}"
        assert result.size == len(result.data)

    def test_transparent_source_to_jpeg(self, make_image):
        source = make_image(32, 32, mode="RGBA")

        result = ImageEncoder().encode(source, EncodeOptions(format=OutputFormat.JPEG))

        assert self._decode(result.data).mode == "RGB"

    def test_lossless_webp(self, make_image):
        source = make_image(32, 32)

        result = ImageEncoder().encode(
            source, EncodeOptions(format=OutputFormat.WEBP, quality=100, lossless=True)
        )

        assert self._decode(result.data).format == "WEBP"

    def test_exif_orientation_is_applied(self):
        image = Image.new("RGB", (60, 30), (0, 128, 0))
        exif = Image.Exif()
        exif[0x0112] = 6  # rotate 90 degrees clockwise on display
        output = io.BytesIO()
        image.save(output, format="JPEG", exif=exif.tobytes())

        result = ImageEncoder().encode(output.getvalue(), EncodeOptions(format=OutputFormat.PNG))

        assert (result.width, result.height) == (30, 60)

    def test_undecodable_input_raises_encoding_error(self):
        with pytest.raises(EncodingError):
            ImageEncoder().encode(b"definitely not an image", EncodeOptions(format=OutputFormat.WEBP))

    def test_video_format_is_refused(self, make_image):
        with pytest.raises(EncodingError):
            ImageEncoder().encode(make_image(8, 8), EncodeOptions(format=OutputFormat.MP4))
