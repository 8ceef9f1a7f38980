"""Shared fixtures for the media cache tests."""

import asyncio
import io
from typing import Callable

import pytest
from PIL import Image

from mediacache.core.exceptions import EncodingError
from mediacache.core.storage import InMemoryStore
from mediacache.modules.transcoding.encoder import EncodedMedia, EncodeOptions


def render_image(width: int, height: int, fmt: str = "PNG", mode: str = "RGB") -> bytes:
    color = (200, 30, 30, 255) if mode == "RGBA" else (200, 30, 30)
    image = Image.new(mode, (width, height), color)
    output = io.BytesIO()
    image.save(output, format=fmt)
    return output.getvalue()


class CountingEncoder:
    """Encoder double recording every call."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.calls: list[tuple[bytes, EncodeOptions]] = []
        self.fail = fail
        self.delay = delay

    async def encode(self, data: bytes, options: EncodeOptions) -> EncodedMedia:
        self.calls.append((data, options))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise EncodingError("cannot decode source")
        return EncodedMedia(
            data=b"encoded:" + data[:16],
            format=options.format,
            width=options.width or 100,
            height=50,
        )


@pytest.fixture
def make_image() -> Callable[..., bytes]:
    """Factory producing small in-memory images."""
    return render_image


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def counting_encoder() -> CountingEncoder:
    return CountingEncoder()


@pytest.fixture
def encoder_factory() -> Callable[..., CountingEncoder]:
    def factory(fail: bool = False, delay: float = 0.0) -> CountingEncoder:
        return CountingEncoder(fail=fail, delay=delay)
    return factory
