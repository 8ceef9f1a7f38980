"""Image encoding with Pillow.

Decodes arbitrary input bytes, applies EXIF orientation and a downscale-only
resize, then re-encodes to the requested output format.
"""

import io
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from PIL import Image, ImageOps

from mediacache.core.exceptions import EncodingError


class OutputFormat(str, Enum):
    """Output formats the encoders can produce."""
    WEBP = "webp"
    AVIF = "avif"
    JPEG = "jpeg"
    PNG = "png"
    MP4 = "mp4"
    WEBM = "webm"

    @property
    def is_video(self) -> bool:
        return self in (OutputFormat.MP4, OutputFormat.WEBM)

    @property
    def content_type(self) -> str:
        if self.is_video:
            return f"video/{self.value}"
        return f"image/{self.value}"

    @property
    def extension(self) -> str:
        return self.value


@dataclass
class EncodeOptions:
    """Normalized options passed to an encoder."""
    format: OutputFormat
    width: Optional[int] = None
    quality: int = 80
    lossless: bool = False


@dataclass
class EncodedMedia:
    """Encoder output: bytes plus a descriptor."""
    data: bytes
    format: OutputFormat
    width: int
    height: int

    @property
    def content_type(self) -> str:
        return self.format.content_type

    @property
    def size(self) -> int:
        return len(self.data)


def target_dimensions(width: int, height: int, requested: Optional[int]) -> tuple[int, int]:
    """Compute output dimensions, never enlarging beyond the source.

    Args:
        width: Source width in pixels
        height: Source height in pixels
        requested: Requested output width, or None for native

    Returns:
        Tuple of (width, height)
    """
    if not requested or requested >= width:
        return width, height
    new_height = max(1, round(height * requested / width))
    return requested, new_height


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA", "PA") or (
        image.mode == "P" and "transparency" in image.info
    )


class ImageEncoder:
    """Handles image resizing and re-encoding."""

    WEBP_METHOD = 4
    PNG_COMPRESS_LEVEL = 9

    def encode(self, data: bytes, options: EncodeOptions) -> EncodedMedia:
        """Encode image bytes.

        Args:
            data: Raw source image bytes
            options: Target format, width and quality

        Returns:
            EncodedMedia: Encoded bytes with final dimensions

        Raises:
            EncodingError: If decoding or encoding fails
        """
        if options.format.is_video:
            raise EncodingError(f"ImageEncoder cannot produce {options.format.value}")

        try:
            image = Image.open(io.BytesIO(data))
            image.load()
            image = ImageOps.exif_transpose(image)

            size = target_dimensions(image.width, image.height, options.width)
            if size != image.size:
                image = image.resize(size, Image.Resampling.LANCZOS)

            output = io.BytesIO()
            self._save(image, output, options)
            encoded = output.getvalue()
        except EncodingError:
            raise
        except Exception as e:
            raise EncodingError(f"Image encoding failed: {str(e)}") from e

        return EncodedMedia(
            data=encoded,
            format=options.format,
            width=image.width,
            height=image.height,
        )

    def _save(self, image: Image.Image, output: io.BytesIO, options: EncodeOptions) -> None:
        fmt = options.format

        if fmt == OutputFormat.JPEG:
            if image.mode != "RGB":
                image = image.convert("RGB")
            image.save(
                output,
                format="JPEG",
                quality=options.quality,
                optimize=True,
                progressive=True,
            )
        elif fmt == OutputFormat.PNG:
            if image.mode == "CMYK":
                image = image.convert("RGB")
            image.save(output, format="PNG", optimize=True, compress_level=self.PNG_COMPRESS_LEVEL)
        elif fmt == OutputFormat.WEBP:
            image = self._to_rgb_or_rgba(image)
            image.save(
                output,
                format="WEBP",
                quality=options.quality,
                lossless=options.lossless,
                method=self.WEBP_METHOD,
            )
        elif fmt == OutputFormat.AVIF:
            image = self._to_rgb_or_rgba(image)
            image.save(
                output,
                format="AVIF",
                quality=100 if options.lossless else options.quality,
            )
        else:
            raise EncodingError(f"Unsupported image format: {fmt.value}")

    def _to_rgb_or_rgba(self, image: Image.Image) -> Image.Image:
        if image.mode in ("RGB", "RGBA"):
            return image
        return image.convert("RGBA" if _has_alpha(image) else "RGB")
