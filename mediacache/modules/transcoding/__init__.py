"""Transcoding module for image and video encoding."""

from mediacache.modules.transcoding.encoder import (
    EncodedMedia,
    EncodeOptions,
    ImageEncoder,
    OutputFormat,
)
from mediacache.modules.transcoding.ffmpeg import FFmpegVideoEncoder
from mediacache.modules.transcoding.service import MediaEncoder

__all__ = [
    "EncodedMedia",
    "EncodeOptions",
    "ImageEncoder",
    "OutputFormat",
    "FFmpegVideoEncoder",
    "MediaEncoder",
]
