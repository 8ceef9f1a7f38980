"""Helpers for building optimize URLs and responsive srcsets."""

from typing import Iterable, Optional, Union
from urllib.parse import urlencode

DEFAULT_BREAKPOINTS = (640, 768, 1024, 1280, 1536)


def build_optimized_url(
    base_url: str,
    src: str,
    width: Optional[int] = None,
    quality: Optional[Union[int, str]] = None,
    format: Optional[str] = None,
    client: Optional[str] = None,
) -> str:
    """Build a GET /optimize URL for a source.

    Data URIs are returned unchanged since there is nothing to fetch.

    Args:
        base_url: Absolute URL of the optimize endpoint
        src: Source media URL
        width: Requested width
        quality: Numeric quality or tier name
        format: Output format
        client: Tenant token

    Returns:
        The optimize URL, or ``src`` itself for empty and data: sources
    """
    if not src or src.startswith("data:"):
        return src

    params = {"url": src}
    if width:
        params["w"] = str(width)
    if quality is not None and quality != "":
        params["q"] = str(quality)
    if format:
        params["f"] = format
    if client:
        params["client"] = client

    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{urlencode(params)}"


def build_srcset(
    base_url: str,
    src: str,
    widths: Iterable[int] = DEFAULT_BREAKPOINTS,
    quality: Optional[Union[int, str]] = None,
    format: Optional[str] = None,
    client: Optional[str] = None,
) -> str:
    """Build a ``srcset`` attribute value with one candidate per width."""
    if not src or src.startswith("data:"):
        return src
    return ", ".join(
        f"{build_optimized_url(base_url, src, w, quality, format, client)} {w}w"
        for w in widths
    )
