"""Error taxonomy for the transform pipeline.

Client faults (bad input, unreachable origin) carry a specific message that is
safe to show the caller. Server faults are rendered with a generic message and
logged in full.
"""

from typing import Optional


class MediaCacheError(Exception):
    """Base exception for pipeline errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    client_fault: bool = False
    public_message: str = "Error processing media"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    @property
    def detail(self) -> str:
        """Message suitable for the HTTP response body."""
        return self.message if self.client_fault else self.public_message


class ValidationError(MediaCacheError):
    """Bad, missing or disallowed input."""

    status_code = 400
    code = "VALIDATION_ERROR"
    client_fault = True


class OriginFetchError(MediaCacheError):
    """Origin timed out, was oversized or answered with a non-2xx status."""

    status_code = 500
    code = "ORIGIN_FETCH_ERROR"
    client_fault = True


class EncodingError(MediaCacheError):
    """Transcode failure."""

    code = "ENCODING_ERROR"


class StorageError(MediaCacheError):
    """Backend unreachable, permission denied or ambiguous existence check."""

    code = "STORAGE_ERROR"


class ConfigurationError(MediaCacheError):
    """Invalid process configuration; raised at startup, never served."""

    code = "CONFIG_ERROR"
