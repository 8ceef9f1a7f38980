"""Encoder dispatch.

Image and video encoders are synchronous and CPU bound; they run on a
dedicated bounded thread pool so the event loop keeps serving I/O.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from mediacache.core.exceptions import EncodingError
from mediacache.modules.transcoding.encoder import (
    EncodedMedia,
    EncodeOptions,
    ImageEncoder,
)
from mediacache.modules.transcoding.ffmpeg import FFmpegVideoEncoder

logger = logging.getLogger(__name__)


class MediaEncoder:
    """Routes encode jobs to the image or video encoder."""

    def __init__(
        self,
        image_encoder: Optional[ImageEncoder] = None,
        video_encoder: Optional[FFmpegVideoEncoder] = None,
        max_workers: int = 4,
    ):
        """Initialize the encoder pool.

        Args:
            image_encoder: Pillow encoder
            video_encoder: FFmpeg encoder
            max_workers: Size of the dedicated encode pool
        """
        self.image_encoder = image_encoder or ImageEncoder()
        self.video_encoder = video_encoder or FFmpegVideoEncoder()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers),
            thread_name_prefix="mediacache-encode",
        )

    def encode_sync(self, data: bytes, options: EncodeOptions) -> EncodedMedia:
        if options.format.is_video:
            return self.video_encoder.encode(data, options)
        return self.image_encoder.encode(data, options)

    async def encode(self, data: bytes, options: EncodeOptions) -> EncodedMedia:
        """Encode on the dedicated pool.

        Raises:
            EncodingError: If the encoder fails
        """
        if not data:
            raise EncodingError("Source is empty")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.encode_sync, data, options)

    def shutdown(self) -> None:
        """Release the encode pool."""
        self._executor.shutdown(wait=True)
        logger.info("Encode pool shut down")
