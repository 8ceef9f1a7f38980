"""Schemas for the optimize module.

Defines the raw transform request, option normalization and the pipeline
result types.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, field_validator

from mediacache.core.config import Settings
from mediacache.core.exceptions import ValidationError
from mediacache.core.storage import StoredObject
from mediacache.modules.transcoding.encoder import EncodeOptions, OutputFormat

_NUMERIC_QUALITY = re.compile(r"^-?\d+(\.\d+)?$")

FORMAT_ALIASES = {"jpg": "jpeg"}
AUTO_FORMAT = "auto"


class TransformRequest(BaseModel):
    """Untrusted transform parameters as received from a client."""

    source: Optional[str] = None
    width: Optional[str] = None
    quality: Optional[str] = None
    format: Optional[str] = None
    tenant: Optional[str] = None
    provider: Optional[str] = None
    accept: Optional[str] = None

    @field_validator("width", "quality", mode="before")
    @classmethod
    def coerce_to_text(cls, v: Union[str, int, float, None]) -> Optional[str]:
        if v is None:
            return None
        text = str(v).strip()
        return text or None


@dataclass(frozen=True)
class NormalizedTransform:
    """Transform options after default substitution and validation."""
    format: OutputFormat
    quality: int
    lossless: bool = False
    width: Optional[int] = None

    @property
    def quality_token(self) -> str:
        """Quality component of the cache key."""
        return "lossless" if self.lossless else str(self.quality)

    def encode_options(self) -> EncodeOptions:
        return EncodeOptions(
            format=self.format,
            width=self.width,
            quality=self.quality,
            lossless=self.lossless,
        )


class TransformOptionsNormalizer:
    """Validates raw width/quality/format and substitutes defaults.

    Defaults are substituted here, before any hashing, so an omitted value and
    its explicit default produce the same cache key.
    """

    def __init__(
        self,
        quality_tiers: dict[str, int],
        default_quality: str = "standard",
        max_width: int = 3840,
        default_width: Optional[int] = None,
        default_format: str = "webp",
    ):
        self.quality_tiers = {name.lower(): value for name, value in quality_tiers.items()}
        self.default_quality = default_quality
        self.max_width = max_width
        self.default_width = default_width
        self.default_format = default_format

    @classmethod
    def from_settings(cls, settings: Settings) -> "TransformOptionsNormalizer":
        return cls(
            quality_tiers=settings.QUALITY_TIERS,
            default_quality=settings.DEFAULT_QUALITY,
            max_width=settings.MAX_WIDTH,
            default_width=settings.DEFAULT_WIDTH,
            default_format=settings.DEFAULT_FORMAT,
        )

    def normalize(self, request: TransformRequest) -> NormalizedTransform:
        """Normalize a request's transform options.

        Args:
            request: Raw transform request

        Returns:
            NormalizedTransform: Validated options

        Raises:
            ValidationError: If any option is malformed or out of range
        """
        quality, lossless = self.resolve_quality(request.quality)
        return NormalizedTransform(
            format=self.resolve_format(request.format, request.accept),
            quality=quality,
            lossless=lossless,
            width=self.resolve_width(request.width),
        )

    def resolve_width(self, raw: Optional[str]) -> Optional[int]:
        if raw is None:
            return self.default_width
        try:
            width = int(raw)
        except ValueError:
            raise ValidationError(f"Invalid width: {raw!r}")
        if width <= 0:
            raise ValidationError("Width must be a positive integer")
        if width > self.max_width:
            raise ValidationError(f"Width must not exceed {self.max_width}")
        return width

    def resolve_quality(self, raw: Optional[str]) -> tuple[int, bool]:
        """Resolve a quality value to (numeric quality, lossless flag).

        Numeric values are clamped to 0-100; names go through the tier table.
        """
        value = raw if raw is not None else self.default_quality
        value = value.strip().lower()

        if _NUMERIC_QUALITY.match(value):
            return max(0, min(100, int(float(value)))), False

        if value in self.quality_tiers:
            return self.quality_tiers[value], value == "lossless"

        raise ValidationError(f"Invalid quality: {raw!r}")

    def resolve_format(self, raw: Optional[str], accept: Optional[str] = None) -> OutputFormat:
        value = (raw or self.default_format).strip().lower()
        value = FORMAT_ALIASES.get(value, value)

        if value == AUTO_FORMAT:
            if accept and "image/avif" in accept.lower():
                return OutputFormat.AVIF
            return OutputFormat.WEBP

        try:
            return OutputFormat(value)
        except ValueError:
            raise ValidationError(f"Unsupported format: {raw!r}")


@dataclass(frozen=True)
class CacheKey:
    """Content hash plus the tenant-prefixed storage key."""
    digest: str
    storage_key: str


class PipelineState(str, Enum):
    """States of the transform pipeline."""
    RESOLVING_TENANT = "resolving_tenant"
    DERIVING_KEY = "deriving_key"
    CHECKING_CACHE = "checking_cache"
    FETCHING_SOURCE = "fetching_source"
    ENCODING = "encoding"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TransformResult:
    """Outcome of a transform.

    ``data`` holds the encoded bytes on a cache miss and is None on a hit.
    """
    stored: StoredObject
    cache_hit: bool
    tenant: str
    format: OutputFormat
    data: Optional[bytes] = None
    state: PipelineState = PipelineState.DONE


class UploadResponse(BaseModel):
    """Response schema for an upload transform."""

    url: str
    size: int
    format: str
    width: Optional[int] = None
    height: Optional[int] = None
    key: str
    cached: bool


class SrcSetResponse(BaseModel):
    """Response schema for a responsive srcset."""

    srcset: str
    widths: list[int]
