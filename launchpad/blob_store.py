"""Blob store backends for uploaded site files.

Keys are bucket-relative strings of the form ``{site_id}/{relative_path}``.
Two backends share one async interface:

- ``LocalBlobStore`` keeps each bucket as a directory on disk under
  ``SITES_DIR``.
- ``SupabaseBlobStore`` talks to the Supabase Storage REST API with httpx.

Writes are upserts: putting an existing key replaces its bytes,
so retried chunk uploads are safe.

Usage:
    store = create_blob_store()
    await store.ensure_bucket()
    await store.put("site-1/index.html", b"<html>...</html>", "text/html")
    data = await store.get("site-1/index.html")
    infos = await store.list("site-1")
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import quote

import httpx

from . import config
from .content_types import content_type_for
from .errors import BlobNotFoundError, InvalidPathError, StorageError

_LOG = logging.getLogger(__name__)


@dataclass
class BlobInfo:
    """Metadata for one stored object.

    Attributes:
        key: Bucket-relative key ("site-1/static/js/main.js").
        size: Size in bytes as reported by the backend.
        content_type: MIME type recorded by the backend (or derived from the key).
        updated_at: ISO timestamp of the last write, if known.
    """

    key: str
    size: int
    content_type: str
    updated_at: str | None = None


class BlobStore(ABC):
    """Hierarchical key -> bytes object storage."""

    def __init__(self) -> None:
        self._bucket_ready = False
        self._bucket_lock = asyncio.Lock()

    @abstractmethod
    async def bucket_exists(self) -> bool:
        """Check whether the bucket exists."""

    @abstractmethod
    async def create_bucket(self, public: bool = True) -> None:
        """Create the bucket. Must tolerate the bucket already existing."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        """Write (or overwrite) an object."""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Read an object.

        Raises:
            BlobNotFoundError: The key does not exist.
            StorageError: The backend failed.
        """

    @abstractmethod
    async def list(self, prefix: str) -> list[BlobInfo]:
        """List every object under a folder prefix, recursively."""

    @abstractmethod
    async def delete(self, keys: list[str]) -> None:
        """Delete objects. Missing keys are ignored."""

    @abstractmethod
    def public_url(self, key: str) -> str:
        """Public URL the object can be fetched from directly."""

    async def ensure_bucket(self) -> None:
        """Create the bucket as publicly readable if it does not exist yet.

        Idempotent; after the first success no further backend calls are made.
        """
        if self._bucket_ready:
            return
        async with self._bucket_lock:
            if self._bucket_ready:
                return
            if not await self.bucket_exists():
                _LOG.info("Bucket does not exist, creating it")
                await self.create_bucket(public=True)
            self._bucket_ready = True

    async def exists(self, key: str) -> bool:
        try:
            await self.get(key)
        except BlobNotFoundError:
            return False
        return True

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every object under a folder prefix. Returns the count removed."""
        infos = await self.list(prefix)
        if infos:
            await self.delete([info.key for info in infos])
        return len(infos)

    async def close(self) -> None:
        """Release backend resources."""


# =============================================================================
# Local Filesystem Backend
# =============================================================================


class LocalBlobStore(BlobStore):
    """Blob store backed by a directory tree.

    Each bucket is a directory under ``root``; each key is a file path inside
    it. Writes go through a temp file and ``os.replace`` so a concurrent or
    retried write of the same key never exposes a partial file.
    """

    def __init__(self, root: Path, bucket: str = "sites", base_url: str = "") -> None:
        super().__init__()
        self.root = Path(root)
        self.bucket = bucket
        self.base_url = base_url.rstrip("/")

    @property
    def bucket_dir(self) -> Path:
        return self.root / self.bucket

    def _path_for(self, key: str) -> Path:
        """Map a key to its file path, refusing anything outside the bucket."""
        if not key or key.startswith("/"):
            raise InvalidPathError(f"Invalid key: {key!r}")
        bucket_dir = self.bucket_dir.resolve()
        path = (bucket_dir / key).resolve()
        if path != bucket_dir and bucket_dir not in path.parents:
            raise InvalidPathError(f"Key escapes bucket: {key!r}")
        return path

    async def bucket_exists(self) -> bool:
        return self.bucket_dir.is_dir()

    async def create_bucket(self, public: bool = True) -> None:
        try:
            self.bucket_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create bucket {self.bucket}: {e}") from e

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(self._write_file, path, data)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

    @staticmethod
    def _write_file(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        except FileNotFoundError:
            # A concurrent delete pruned the folder between the two calls
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def get(self, key: str) -> bytes:
        path = self._path_for(key)
        if not path.is_file():
            raise BlobNotFoundError(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise BlobNotFoundError(key) from e
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    async def list(self, prefix: str) -> list[BlobInfo]:
        prefix = prefix.strip("/")
        folder = self._path_for(prefix) if prefix else self.bucket_dir
        if not folder.is_dir():
            return []
        return await asyncio.to_thread(self._walk, folder)

    def _walk(self, folder: Path) -> list[BlobInfo]:
        infos = []
        for path in sorted(folder.rglob("*")):
            if not path.is_file() or path.name.startswith(".upload-"):
                continue
            key = path.relative_to(self.bucket_dir).as_posix()
            stat = path.stat()
            infos.append(BlobInfo(
                key=key,
                size=stat.st_size,
                content_type=content_type_for(key),
                updated_at=datetime.fromtimestamp(stat.st_mtime, UTC).isoformat(),
            ))
        return infos

    async def delete(self, keys: list[str]) -> None:
        paths = [self._path_for(key) for key in keys]
        try:
            await asyncio.to_thread(self._delete_files, paths)
        except OSError as e:
            raise StorageError(f"Failed to delete {len(keys)} objects: {e}") from e

    def _delete_files(self, paths: list[Path]) -> None:
        bucket_dir = self.bucket_dir.resolve()
        parents = set()
        for path in paths:
            path.unlink(missing_ok=True)
            parents.add(path.parent)
        # Prune only the directories that held deleted files, deepest first
        for folder in sorted(parents, key=lambda p: len(p.parts), reverse=True):
            while folder != bucket_dir and bucket_dir in folder.parents:
                try:
                    folder.rmdir()
                except OSError:
                    break  # Not empty, or already gone
                folder = folder.parent

    def public_url(self, key: str) -> str:
        # Local files are only reachable through the proxy route
        site_id, _, relative_path = key.partition("/")
        return f"{self.base_url}/sites/{quote(site_id)}/proxy/{quote(relative_path)}"


# =============================================================================
# Supabase Storage Backend
# =============================================================================


class SupabaseBlobStore(BlobStore):
    """Blob store backed by the Supabase Storage REST API."""

    LIST_PAGE_SIZE: int = 1000

    def __init__(
        self,
        url: str,
        key: str,
        bucket: str = "sites",
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ) -> None:
        super().__init__()
        self.url = url.rstrip("/")
        self.bucket = bucket
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {key}",
            "apikey": key,
            "X-Client-Info": "launchpad-backend",
        }

    def _object_url(self, key: str) -> str:
        return f"{self.url}/storage/v1/object/{self.bucket}/{quote(key)}"

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {**self._headers, **kwargs.pop("headers", {})}
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise StorageError(f"Storage backend unreachable: {e}") from e
        if response.status_code >= 500:
            raise StorageError(f"Storage backend error {response.status_code}: {response.text[:200]}")
        return response

    async def bucket_exists(self) -> bool:
        response = await self._request("GET", f"{self.url}/storage/v1/bucket/{self.bucket}")
        return response.status_code == 200

    async def create_bucket(self, public: bool = True) -> None:
        response = await self._request(
            "POST",
            f"{self.url}/storage/v1/bucket",
            json={"id": self.bucket, "name": self.bucket, "public": public},
        )
        # 409 means someone else created it first
        if response.status_code not in (200, 201, 409) and "already exists" not in response.text:
            raise StorageError(f"Failed to create bucket {self.bucket}: {response.text[:200]}")

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> None:
        response = await self._request(
            "POST",
            self._object_url(key),
            content=data,
            headers={
                "Content-Type": content_type or content_type_for(key),
                "x-upsert": "true",
            },
        )
        if response.status_code not in (200, 201):
            raise StorageError(f"Upload of {key} failed ({response.status_code}): {response.text[:200]}")

    async def get(self, key: str) -> bytes:
        response = await self._request("GET", self._object_url(key))
        # Supabase reports missing objects as 400 with a 404 body
        if response.status_code in (400, 404):
            raise BlobNotFoundError(key)
        if response.status_code != 200:
            raise StorageError(f"Download of {key} failed ({response.status_code})")
        return response.content

    async def list(self, prefix: str) -> list[BlobInfo]:
        infos: list[BlobInfo] = []
        pending = [prefix.strip("/")]
        while pending:
            folder = pending.pop()
            for entry in await self._list_folder(folder):
                key = f"{folder}/{entry['name']}" if folder else entry["name"]
                if entry.get("id") is None:
                    pending.append(key)
                    continue
                metadata = entry.get("metadata") or {}
                infos.append(BlobInfo(
                    key=key,
                    size=int(metadata.get("size", 0) or 0),
                    content_type=metadata.get("mimetype") or content_type_for(key),
                    updated_at=entry.get("updated_at") or metadata.get("lastModified"),
                ))
        infos.sort(key=lambda info: info.key)
        return infos

    async def _list_folder(self, folder: str) -> list[dict]:
        entries: list[dict] = []
        offset = 0
        while True:
            response = await self._request(
                "POST",
                f"{self.url}/storage/v1/object/list/{self.bucket}",
                json={
                    "prefix": folder,
                    "limit": self.LIST_PAGE_SIZE,
                    "offset": offset,
                    "sortBy": {"column": "name", "order": "asc"},
                },
            )
            if response.status_code != 200:
                raise StorageError(f"Listing {folder!r} failed ({response.status_code})")
            page = response.json()
            entries.extend(page)
            if len(page) < self.LIST_PAGE_SIZE:
                return entries
            offset += self.LIST_PAGE_SIZE

    async def delete(self, keys: list[str]) -> None:
        if not keys:
            return
        response = await self._request(
            "DELETE",
            f"{self.url}/storage/v1/object/{self.bucket}",
            json={"prefixes": keys},
        )
        if response.status_code != 200:
            raise StorageError(f"Delete failed ({response.status_code}): {response.text[:200]}")

    def public_url(self, key: str) -> str:
        return f"{self.url}/storage/v1/object/public/{self.bucket}/{quote(key)}"

    async def close(self) -> None:
        await self._client.aclose()


def create_blob_store() -> BlobStore:
    """Build the blob store selected by STORAGE_BACKEND."""
    if config.STORAGE_BACKEND == "supabase":
        if not config.SUPABASE_URL or not config.SUPABASE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set for the supabase backend")
        _LOG.info("Using Supabase storage at %s (bucket %s)", config.SUPABASE_URL, config.BUCKET_NAME)
        return SupabaseBlobStore(config.SUPABASE_URL, config.SUPABASE_KEY, config.BUCKET_NAME)
    _LOG.info("Using local storage at %s (bucket %s)", config.SITES_DIR, config.BUCKET_NAME)
    return LocalBlobStore(config.SITES_DIR, config.BUCKET_NAME, config.BASE_URL)
