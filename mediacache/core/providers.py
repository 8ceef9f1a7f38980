"""Storage provider selection.

Providers are tried in a fixed priority order. A per-request override always
wins over the priority table; the process-wide STORAGE_PROVIDER setting acts as
the default override.
"""

import logging
from typing import Optional

from mediacache.core.config import Settings
from mediacache.core.exceptions import ConfigurationError, ValidationError
from mediacache.core.storage import (
    AsyncObjectStore,
    CloudinaryStore,
    InMemoryStore,
    LocalFilesystemStore,
    ObjectStore,
    RemoteBucketStore,
)

logger = logging.getLogger(__name__)

PROVIDER_PRIORITY = ("s3", "local", "cloudinary")


def build_stores(settings: Settings) -> dict[str, ObjectStore]:
    """Construct every storage backend the settings enable.

    Args:
        settings: Application settings

    Returns:
        Mapping of provider name to backend, in registration order
    """
    stores: dict[str, ObjectStore] = {}

    if settings.STORAGE_BUCKET:
        stores["s3"] = RemoteBucketStore(
            bucket=settings.STORAGE_BUCKET,
            region=settings.STORAGE_REGION,
            access_key=settings.STORAGE_ACCESS_KEY,
            secret_key=settings.STORAGE_SECRET_KEY,
            endpoint_url=settings.STORAGE_ENDPOINT_URL,
            public_url=settings.STORAGE_PUBLIC_URL,
        )

    if settings.LOCAL_STORAGE_PATH:
        stores["local"] = LocalFilesystemStore(
            root=settings.LOCAL_STORAGE_PATH,
            public_url=settings.LOCAL_PUBLIC_URL,
        )

    if settings.CLOUDINARY_CLOUD_NAME:
        stores["cloudinary"] = CloudinaryStore(
            cloud_name=settings.CLOUDINARY_CLOUD_NAME,
            api_key=settings.CLOUDINARY_API_KEY,
            api_secret=settings.CLOUDINARY_API_SECRET,
            folder=settings.CLOUDINARY_FOLDER,
        )

    if settings.MEMORY_STORAGE_ENABLED:
        stores["memory"] = InMemoryStore()

    return stores


class ProviderSelector:
    """Picks the storage backend for a request."""

    def __init__(
        self,
        stores: dict[str, ObjectStore],
        default: Optional[str] = None,
        priority: tuple[str, ...] = PROVIDER_PRIORITY,
    ):
        self._stores = {name: AsyncObjectStore(store) for name, store in stores.items()}
        self._order = [name for name in priority if name in self._stores]
        self._order += [name for name in self._stores if name not in self._order]

        self.default = default.strip().lower() if default else None
        if self.default and self.default not in self._stores:
            raise ConfigurationError(
                f"STORAGE_PROVIDER {self.default!r} is not configured; "
                f"available: {', '.join(self._order) or 'none'}"
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderSelector":
        return cls(build_stores(settings), default=settings.STORAGE_PROVIDER)

    @property
    def names(self) -> list[str]:
        """Configured provider names in selection order."""
        return list(self._order)

    def select(self, override: Optional[str] = None) -> tuple[str, AsyncObjectStore]:
        """Select a storage provider.

        Args:
            override: Explicit provider name for this request

        Returns:
            Tuple of provider name and store

        Raises:
            ValidationError: If the override names an unavailable provider
            ConfigurationError: If no provider is configured at all
        """
        requested = override.strip().lower() if override and override.strip() else self.default
        if requested:
            store = self._stores.get(requested)
            if store is None:
                raise ValidationError(f"Storage provider not available: {requested}")
            return requested, store

        if not self._order:
            raise ConfigurationError("No storage provider configured")

        name = self._order[0]
        return name, self._stores[name]
