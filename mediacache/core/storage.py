"""Object storage backends for transformed media.

Supports: S3-compatible buckets (AWS, R2, MinIO), the local filesystem,
Cloudinary and an in-memory store for development. Every backend answers the
same small contract: existence check, metadata lookup, idempotent put, public
URL and prefix listing.
"""

import asyncio
import io
import json
import logging
import mimetypes
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, Iterator, Optional

import boto3
import cloudinary.api
import cloudinary.uploader
import cloudinary.utils
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from cloudinary.exceptions import Error as CloudinaryError, NotFound as CloudinaryNotFound

from mediacache.core.exceptions import StorageError

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"

_MISSING_OBJECT_CODES = frozenset({"404", "NoSuchKey", "NotFound"})
VIDEO_EXTENSIONS = frozenset({"mp4", "webm"})


@dataclass
class ObjectInfo:
    """Metadata of a stored object."""
    key: str
    size: int
    content_type: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)
    last_modified: Optional[datetime] = None


@dataclass
class StoredObject:
    """A persisted transform result as seen by callers."""
    key: str
    url: str
    size: int
    content_type: str
    provider: str
    width: Optional[int] = None
    height: Optional[int] = None

    @classmethod
    def from_info(cls, info: ObjectInfo, url: str, provider: str) -> "StoredObject":
        return cls(
            key=info.key,
            url=url,
            size=info.size,
            content_type=info.content_type or "application/octet-stream",
            provider=provider,
            width=_int_or_none(info.metadata.get("width")),
            height=_int_or_none(info.metadata.get("height")),
        )


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _stringify(metadata: Optional[dict[str, Any]]) -> dict[str, str]:
    return {k: str(v) for k, v in (metadata or {}).items() if v is not None}


def _parse_timestamp(value: Any) -> Optional[datetime]:
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


class ObjectStore(ABC):
    """Abstract base class for storage backends."""

    name: str = ""

    def exists(self, key: str) -> bool:
        """Check if an object exists.

        A backend error is raised as StorageError, never reported as absent.
        """
        return self.stat(key) is not None

    @abstractmethod
    def stat(self, key: str) -> Optional[ObjectInfo]:
        """Return object metadata, or None when the key is absent."""

    @abstractmethod
    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> StoredObject:
        """Write an object. Writing the same key twice overwrites it."""

    @abstractmethod
    def url_for(self, key: str) -> str:
        """Public URL for a key."""

    @abstractmethod
    def list_objects(self, prefix: str = "", limit: Optional[int] = None) -> list[ObjectInfo]:
        """List objects whose key starts with prefix."""

    def describe(self, key: str) -> Optional[StoredObject]:
        """Stat a key and build the caller-facing view of it."""
        info = self.stat(key)
        if info is None:
            return None
        return StoredObject.from_info(info, self.url_for(key), self.name)


class RemoteBucketStore(ObjectStore):
    """S3/R2/MinIO compatible storage backend."""

    name = "s3"

    def __init__(
        self,
        bucket: str,
        region: str = "auto",
        access_key: str = "",
        secret_key: str = "",
        endpoint_url: Optional[str] = None,
        public_url: Optional[str] = None,
        client: Any = None,
    ):
        self.bucket = bucket
        self.region = region
        self.access_key = access_key
        self.secret_key = secret_key
        self.endpoint_url = endpoint_url.rstrip("/") if endpoint_url else None
        self.public_url = public_url.rstrip("/") if public_url else None
        self._client = client

    def _get_client(self):
        """Get or create the S3 client."""
        if self._client is None:
            client_kwargs = {
                "service_name": "s3",
                "region_name": self.region or "us-east-1",
                "aws_access_key_id": self.access_key or None,
                "aws_secret_access_key": self.secret_key or None,
            }

            # R2, MinIO and other S3-compatible endpoints
            if self.endpoint_url:
                client_kwargs["endpoint_url"] = self.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                )

            self._client = boto3.client(**client_kwargs)

        return self._client

    @staticmethod
    def _is_missing(error: ClientError) -> bool:
        code = str(error.response.get("Error", {}).get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return code in _MISSING_OBJECT_CODES or status == 404

    def stat(self, key: str) -> Optional[ObjectInfo]:
        try:
            response = self._get_client().head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if self._is_missing(e):
                return None
            raise StorageError(f"Existence check failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Existence check failed for {key}: {e}") from e

        return ObjectInfo(
            key=key,
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType"),
            metadata=dict(response.get("Metadata") or {}),
            last_modified=response.get("LastModified"),
        )

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> StoredObject:
        meta = _stringify(metadata)
        try:
            self._get_client().put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=IMMUTABLE_CACHE_CONTROL,
                Metadata=meta,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Upload failed for {key}: {e}") from e

        info = ObjectInfo(key=key, size=len(data), content_type=content_type, metadata=meta)
        return StoredObject.from_info(info, self.url_for(key), self.name)

    def url_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def list_objects(self, prefix: str = "", limit: Optional[int] = None) -> list[ObjectInfo]:
        objects: list[ObjectInfo] = []
        try:
            paginator = self._get_client().get_paginator("list_objects_v2")
            for page in paginator.paginate(
                Bucket=self.bucket,
                Prefix=prefix,
                PaginationConfig={"PageSize": 1000},
            ):
                for obj in page.get("Contents", []):
                    objects.append(ObjectInfo(
                        key=obj["Key"],
                        size=int(obj.get("Size", 0)),
                        last_modified=obj.get("LastModified"),
                    ))
                    if limit is not None and len(objects) >= limit:
                        return objects
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Listing failed for prefix {prefix!r}: {e}") from e
        return objects


class LocalFilesystemStore(ObjectStore):
    """Local filesystem storage backend.

    Writes go to a temp file in the destination directory followed by an
    atomic rename, so readers never observe a partial object. Content type and
    metadata live in a ``<key>.meta.json`` sidecar that is hidden from listings.
    """

    name = "local"

    def __init__(self, root: str, public_url: Optional[str] = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_url = public_url.rstrip("/") if public_url else None

    def _path(self, key: str) -> Path:
        if not key or key.startswith("/") or key.endswith(META_SUFFIX):
            raise StorageError(f"Invalid storage key: {key!r}")
        path = (self.root / key).resolve()
        try:
            path.relative_to(self.root)
        except ValueError:
            raise StorageError(f"Storage key escapes the storage root: {key!r}")
        return path

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + META_SUFFIX)

    def _read_meta(self, path: Path) -> dict[str, Any]:
        try:
            with open(self._meta_path(path), "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            raise StorageError(f"Unreadable metadata for {path.name}: {e}") from e

    def stat(self, key: str) -> Optional[ObjectInfo]:
        path = self._path(key)
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Existence check failed for {key}: {e}") from e

        meta = self._read_meta(path)
        return ObjectInfo(
            key=key,
            size=st.st_size,
            content_type=meta.get("content_type") or mimetypes.guess_type(path.name)[0],
            metadata=meta.get("metadata", {}),
            last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    def _atomic_write(self, path: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> StoredObject:
        path = self._path(key)
        meta = _stringify(metadata)
        sidecar = json.dumps({"content_type": content_type, "metadata": meta}).encode("utf-8")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._atomic_write(self._meta_path(path), sidecar)
            self._atomic_write(path, data)
        except OSError as e:
            raise StorageError(f"Write failed for {key}: {e}") from e

        info = ObjectInfo(key=key, size=len(data), content_type=content_type, metadata=meta)
        return StoredObject.from_info(info, self.url_for(key), self.name)

    def url_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        return self._path(key).as_uri()

    def _walk(self, directory: Path, prefix: str) -> Iterator[tuple[str, os.DirEntry]]:
        """Yield (key, entry) for files under directory in sorted key order."""
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda entry: entry.name)
        for entry in entries:
            if entry.name.startswith("."):
                continue
            key = Path(entry.path).relative_to(self.root).as_posix()
            if entry.is_dir(follow_symlinks=False):
                folder = key + "/"
                if folder.startswith(prefix) or prefix.startswith(folder):
                    yield from self._walk(Path(entry.path), prefix)
            elif entry.is_file() and not entry.name.endswith(META_SUFFIX) and key.startswith(prefix):
                yield key, entry

    def list_objects(self, prefix: str = "", limit: Optional[int] = None) -> list[ObjectInfo]:
        objects: list[ObjectInfo] = []
        try:
            for key, entry in self._walk(self.root, prefix):
                st = entry.stat()
                objects.append(ObjectInfo(
                    key=key,
                    size=st.st_size,
                    last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                ))
                if limit is not None and len(objects) >= limit:
                    break
        except OSError as e:
            raise StorageError(f"Listing failed for prefix {prefix!r}: {e}") from e
        return objects


class CloudinaryStore(ObjectStore):
    """Cloudinary media library backend.

    Cloudinary addresses assets by public id and resource type rather than by
    path, so ``acme/<digest>.webp`` is stored as public id
    ``<folder>/acme/<digest>`` with format ``webp``. Metadata and content type
    travel in the asset's custom context.
    """

    name = "cloudinary"

    def __init__(self, cloud_name: str, api_key: str, api_secret: str, folder: str = ""):
        self.cloud_name = cloud_name
        self.folder = folder.strip("/")
        self._credentials = {
            "cloud_name": cloud_name,
            "api_key": api_key,
            "api_secret": api_secret,
        }

    def _locate(self, key: str) -> tuple[str, str, str]:
        """Map a storage key to (public id, format, resource type)."""
        stem, dot, ext = key.rpartition(".")
        if not dot or not stem or "/" in ext:
            raise StorageError(f"Invalid storage key: {key!r}")
        ext = ext.lower()
        public_id = f"{self.folder}/{stem}" if self.folder else stem
        resource_type = "video" if ext in VIDEO_EXTENSIONS else "image"
        return public_id, ext, resource_type

    def _key_for(self, public_id: str, fmt: str) -> str:
        if self.folder:
            public_id = public_id[len(self.folder) + 1:]
        return f"{public_id}.{fmt}"

    def stat(self, key: str) -> Optional[ObjectInfo]:
        public_id, _, resource_type = self._locate(key)
        try:
            resource = cloudinary.api.resource(
                public_id,
                resource_type=resource_type,
                type="upload",
                **self._credentials,
            )
        except CloudinaryNotFound:
            return None
        except CloudinaryError as e:
            raise StorageError(f"Existence check failed for {key}: {e}") from e

        context = dict((resource.get("context") or {}).get("custom") or {})
        content_type = context.pop("content_type", None) or mimetypes.guess_type(key)[0]
        return ObjectInfo(
            key=key,
            size=int(resource.get("bytes", 0)),
            content_type=content_type,
            metadata=context,
            last_modified=_parse_timestamp(resource.get("created_at")),
        )

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> StoredObject:
        public_id, fmt, resource_type = self._locate(key)
        meta = _stringify(metadata)
        try:
            result = cloudinary.uploader.upload(
                io.BytesIO(data),
                public_id=public_id,
                resource_type=resource_type,
                format=fmt,
                overwrite=True,
                context={**meta, "content_type": content_type},
                **self._credentials,
            )
        except CloudinaryError as e:
            raise StorageError(f"Upload failed for {key}: {e}") from e

        info = ObjectInfo(
            key=key,
            size=int(result.get("bytes", len(data))),
            content_type=content_type,
            metadata=meta,
        )
        return StoredObject.from_info(info, result.get("secure_url") or self.url_for(key), self.name)

    def url_for(self, key: str) -> str:
        public_id, fmt, resource_type = self._locate(key)
        url, _ = cloudinary.utils.cloudinary_url(
            public_id,
            resource_type=resource_type,
            format=fmt,
            secure=True,
            cloud_name=self.cloud_name,
        )
        return url

    def list_objects(self, prefix: str = "", limit: Optional[int] = None) -> list[ObjectInfo]:
        remote_prefix = f"{self.folder}/{prefix}" if self.folder else prefix
        objects: list[ObjectInfo] = []
        try:
            for resource_type in ("image", "video"):
                cursor = None
                while True:
                    options = {"next_cursor": cursor} if cursor else {}
                    page = cloudinary.api.resources(
                        type="upload",
                        resource_type=resource_type,
                        prefix=remote_prefix,
                        max_results=500,
                        **options,
                        **self._credentials,
                    )
                    for resource in page.get("resources", []):
                        objects.append(ObjectInfo(
                            key=self._key_for(resource["public_id"], resource.get("format", "")),
                            size=int(resource.get("bytes", 0)),
                            last_modified=_parse_timestamp(resource.get("created_at")),
                        ))
                        if limit is not None and len(objects) >= limit:
                            return objects
                    cursor = page.get("next_cursor")
                    if not cursor:
                        break
        except CloudinaryError as e:
            raise StorageError(f"Listing failed for prefix {prefix!r}: {e}") from e
        return objects


class InMemoryStore(ObjectStore):
    """Process-local store for development and tests."""

    name = "memory"

    def __init__(self, public_url: str = "memory://mediacache"):
        self.public_url = public_url.rstrip("/")
        self._objects: dict[str, tuple[bytes, ObjectInfo]] = {}
        self._lock = threading.Lock()

    def stat(self, key: str) -> Optional[ObjectInfo]:
        with self._lock:
            entry = self._objects.get(key)
        return entry[1] if entry else None

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> StoredObject:
        info = ObjectInfo(
            key=key,
            size=len(data),
            content_type=content_type,
            metadata=_stringify(metadata),
            last_modified=datetime.now(timezone.utc),
        )
        with self._lock:
            self._objects[key] = (bytes(data), info)
        return StoredObject.from_info(info, self.url_for(key), self.name)

    def read(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._objects.get(key)
        return entry[0] if entry else None

    def url_for(self, key: str) -> str:
        return f"{self.public_url}/{key}"

    def list_objects(self, prefix: str = "", limit: Optional[int] = None) -> list[ObjectInfo]:
        with self._lock:
            infos = [info for key, (_, info) in sorted(self._objects.items()) if key.startswith(prefix)]
        return infos[:limit] if limit is not None else infos


class AsyncObjectStore:
    """Async-compatible wrapper running blocking store calls in an executor."""

    def __init__(self, store: ObjectStore):
        self._store = store

    @property
    def name(self) -> str:
        return self._store.name

    @property
    def backend(self) -> ObjectStore:
        return self._store

    async def _run(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    async def exists(self, key: str) -> bool:
        return await self._run(self._store.exists, key)

    async def stat(self, key: str) -> Optional[ObjectInfo]:
        return await self._run(self._store.stat, key)

    async def describe(self, key: str) -> Optional[StoredObject]:
        return await self._run(self._store.describe, key)

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> StoredObject:
        """Persist content under key.

        Args:
            key: Storage key
            data: Encoded bytes
            content_type: MIME type
            metadata: Extra string metadata such as width and height

        Returns:
            StoredObject: The persisted object
        """
        return await self._run(self._store.put, key, data, content_type, metadata)

    def url_for(self, key: str) -> str:
        return self._store.url_for(key)

    async def list_objects(self, prefix: str = "", limit: Optional[int] = None) -> list[ObjectInfo]:
        return await self._run(self._store.list_objects, prefix, limit)
