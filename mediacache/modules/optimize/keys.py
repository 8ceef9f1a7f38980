"""Cache key derivation.

The content hash covers the source reference and the normalized transform
options only. The tenant is applied as a path prefix, so identical requests
from different tenants share a hash but never a storage key.
"""

import hashlib

from mediacache.modules.optimize.schemas import CacheKey, NormalizedTransform

UPLOAD_REFERENCE_PREFIX = "upload:sha256:"


def derive(source_reference: str, width, quality, target_format: str) -> str:
    """Derive the content hash for a transform.

    Args:
        source_reference: Source URL or upload reference, used verbatim
        width: Normalized width (None renders as "None")
        quality: Normalized quality component
        target_format: Resolved output format

    Returns:
        64-character SHA-256 hex digest
    """
    raw = f"{source_reference}-{width}-{quality}-{target_format}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def storage_key(tenant: str, digest: str, ext: str) -> str:
    return f"{tenant}/{digest}.{ext}"


def upload_reference(data: bytes) -> str:
    """Stable source reference for uploaded bytes."""
    return UPLOAD_REFERENCE_PREFIX + hashlib.sha256(data).hexdigest()


class KeyDeriver:
    """Builds cache keys from normalized transforms."""

    def build(self, tenant: str, source_reference: str, options: NormalizedTransform) -> CacheKey:
        digest = derive(
            source_reference,
            options.width,
            options.quality_token,
            options.format.value,
        )
        return CacheKey(
            digest=digest,
            storage_key=storage_key(tenant, digest, options.format.extension),
        )
