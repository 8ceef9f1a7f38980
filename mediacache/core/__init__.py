"""Core module for configuration and shared infrastructure."""

from mediacache.core.config import Settings, settings
from mediacache.core.exceptions import (
    ConfigurationError,
    EncodingError,
    MediaCacheError,
    OriginFetchError,
    StorageError,
    ValidationError,
)

__all__ = [
    "Settings",
    "settings",
    "MediaCacheError",
    "ValidationError",
    "OriginFetchError",
    "EncodingError",
    "StorageError",
    "ConfigurationError",
]
