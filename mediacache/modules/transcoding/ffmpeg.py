"""FFmpeg video encoding.

Each invocation works inside its own temporary directory which is removed on
every exit path, including failures.
"""

import json
import logging
import math
import os
import subprocess
import tempfile
from typing import Optional

from mediacache.core.exceptions import EncodingError
from mediacache.modules.transcoding.encoder import (
    EncodedMedia,
    EncodeOptions,
    OutputFormat,
)

logger = logging.getLogger(__name__)

# CRF range used by the quality mapping: quality 100 -> 18, quality 0 -> 51
CRF_WORST = 51
CRF_SPAN = 33


def quality_to_crf(quality: int) -> int:
    """Map a 0-100 quality to an x264/VP9 CRF value (lower is better)."""
    quality = max(0, min(100, quality))
    return math.floor(CRF_WORST - (quality / 100) * CRF_SPAN)


class FFmpegVideoEncoder:
    """FFmpeg-based video encoder for mp4 and webm output."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        timeout: Optional[float] = None,
        temp_root: Optional[str] = None,
    ):
        """Initialize encoder.

        Args:
            ffmpeg_path: Path to ffmpeg binary
            ffprobe_path: Path to ffprobe binary
            timeout: Optional wall-clock limit for one ffmpeg run, in seconds
            temp_root: Parent directory for per-invocation working directories
        """
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout
        self.temp_root = temp_root

    def build_command(
        self,
        input_path: str,
        output_path: str,
        options: EncodeOptions,
    ) -> list[str]:
        """Build FFmpeg command for an encode.

        Args:
            input_path: Source file
            output_path: Destination file
            options: Target format, width and quality

        Returns:
            FFmpeg command as list of arguments
        """
        crf = quality_to_crf(options.quality)

        cmd = [self.ffmpeg_path, "-y", "-i", input_path]

        if options.width:
            # Downscale only; libx264 needs both dimensions even
            cmd.extend(["-vf", f"scale='max(2,trunc(min(iw,{options.width})/2)*2)':-2"])

        if options.format == OutputFormat.WEBM:
            cmd.extend([
                "-c:v", "libvpx-vp9",
                "-crf", str(crf),
                "-b:v", "0",
                "-c:a", "libopus",
                "-f", "webm",
            ])
        else:
            cmd.extend([
                "-c:v", "libx264",
                "-preset", "ultrafast",
                "-crf", str(crf),
                "-c:a", "aac",
                "-movflags", "+faststart",
                "-f", "mp4",
            ])

        cmd.append(output_path)
        return cmd

    def get_video_info(self, input_path: str) -> dict:
        """Get video information using ffprobe.

        Args:
            input_path: Path to the video

        Returns:
            Video information dict, or a dict with an "error" entry
        """
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            input_path,
        ]

        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, check=True, timeout=self.timeout
            )
            return json.loads(result.stdout)
        except (OSError, subprocess.SubprocessError, json.JSONDecodeError) as e:
            return {"error": str(e)}

    def _probe_dimensions(self, path: str) -> tuple[int, int]:
        info = self.get_video_info(path)
        for stream in info.get("streams", []):
            if stream.get("codec_type") == "video":
                return int(stream.get("width", 0)), int(stream.get("height", 0))
        if "error" in info:
            logger.warning(f"ffprobe failed for encoded output: {info['error']}")
        return 0, 0

    def encode(self, data: bytes, options: EncodeOptions) -> EncodedMedia:
        """Encode video bytes.

        Args:
            data: Raw source video bytes
            options: Target format (mp4 or webm), width and quality

        Returns:
            EncodedMedia: Encoded bytes with probed dimensions

        Raises:
            EncodingError: If ffmpeg fails or cannot be started
        """
        if not options.format.is_video:
            raise EncodingError(f"FFmpegVideoEncoder cannot produce {options.format.value}")

        with tempfile.TemporaryDirectory(prefix="mediacache-", dir=self.temp_root) as workdir:
            input_path = os.path.join(workdir, "input")
            output_path = os.path.join(workdir, f"output.{options.format.extension}")

            with open(input_path, "wb") as f:
                f.write(data)

            cmd = self.build_command(input_path, output_path, options)
            logger.debug(f"Running ffmpeg: {' '.join(cmd)}")

            try:
                result = subprocess.run(cmd, capture_output=True, timeout=self.timeout)
            except FileNotFoundError as e:
                raise EncodingError(f"ffmpeg binary not found: {self.ffmpeg_path}") from e
            except subprocess.TimeoutExpired as e:
                raise EncodingError(f"ffmpeg timed out after {self.timeout}s") from e

            if result.returncode != 0:
                stderr = result.stderr.decode("utf-8", errors="replace")[-2000:]
                raise EncodingError(f"ffmpeg exited with code {result.returncode}: {stderr}")

            try:
                with open(output_path, "rb") as f:
                    encoded = f.read()
            except OSError as e:
                raise EncodingError(f"ffmpeg produced no output: {e}") from e

            width, height = self._probe_dimensions(output_path)

        return EncodedMedia(
            data=encoded,
            format=options.format,
            width=width,
            height=height,
        )
