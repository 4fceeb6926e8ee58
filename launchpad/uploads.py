"""Chunked, resumable site uploads.

A site bundle (a pre-built static site) arrives as one or more requests.
Each request carries a batch of files plus ``chunkNumber``/``totalChunks``;
the manager writes the files to the blob store under ``{site_id}/`` and
records the chunk in the site's upload session. ``finalize`` turns the
uploaded folder into an active Site record. A zip archive of the bundle can
also be uploaded in one request; it is extracted member by member and
finalized at once.

Failure model:
    - A batch is never all-or-nothing. Each file gets its own
      FileWriteResult, and the caller retries exactly the failed paths.
    - Writes are upserts, so repeating a chunk is always safe.
    - A chunk counts as received only once all of its files are written.
    - finalize is lenient: a missing or incomplete session is logged and
      reported through FinalizeResult.complete, never raised.

Concurrency:
    Writes inside one batch run in parallel, bounded by a semaphore
    (UPLOAD_CONCURRENCY). Session updates for one site serialize on a
    per-site asyncio.Lock; different sites never share a lock. Across
    processes the session store merges each chunk atomically.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import secrets
import time
import zipfile
import zlib
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field

from . import config
from .blob_store import BlobInfo, BlobStore
from .content_types import content_type_for
from .errors import (
    InvalidPathError,
    PayloadTooLargeError,
    SiteNotFoundError,
    StorageError,
    UploadValidationError,
)
from .sessions import SessionStore, UploadSession
from .site_registry import Site, SiteRegistry, SiteStatus

_LOG = logging.getLogger(__name__)

SITE_ID_PATTERN: re.Pattern = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")
"""Allowed storage folder keys (used verbatim as the first key segment)."""

DEFAULT_SITE_NAME: str = "Uploaded Site"


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class UploadFile:
    """One file of an upload batch.

    Contents are read lazily, inside the write semaphore, so a batch never
    holds more than ``concurrency`` files in memory.

    Attributes:
        path: Path relative to the bundle root ("static/js/main.abc.js").
        data: File contents, when already in memory.
        content_type: MIME type to store; derived from the extension when None.
        reader: Coroutine function returning the contents, used when data is None.
        size: Declared size in bytes, checked before reading when known.
    """

    path: str
    data: bytes | None = None
    content_type: str | None = None
    reader: Callable[[], Awaitable[bytes]] | None = None
    size: int | None = None

    async def read(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.reader is None:
            return b""
        return await self.reader()


@dataclass
class FileWriteResult:
    """Outcome of writing one file.

    Attributes:
        path: Relative path as uploaded (after normalisation).
        key: Blob store key, or None if the path was rejected.
        success: Whether the write succeeded.
        size: Bytes written.
        error: Failure description for unsuccessful writes.
    """

    path: str
    key: str | None
    success: bool
    size: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        result = {"path": self.path, "success": self.success}
        if self.success:
            result["size"] = self.size
        else:
            result["error"] = self.error
        return result


@dataclass
class UploadBatchResult:
    """Outcome of one upload request.

    Attributes:
        site_id: Storage folder the files were written into.
        chunk_number: Chunk number of this request, or None for a single upload.
        total_chunks: Announced chunk count, or None for a single upload.
        files_received: Files in the request.
        results: Per-file outcomes, in request order.
        session_files_written: Files written across all chunks so far.
        chunks_received: Chunk numbers acknowledged so far.
    """

    site_id: str
    chunk_number: int | None
    total_chunks: int | None
    files_received: int
    results: list[FileWriteResult] = field(default_factory=list)
    session_files_written: int = 0
    chunks_received: list[int] = field(default_factory=list)

    @property
    def files_written(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> list[FileWriteResult]:
        return [r for r in self.results if not r.success]

    @property
    def failed_paths(self) -> list[str]:
        return [r.path for r in self.failed]

    @property
    def is_chunked(self) -> bool:
        return self.chunk_number is not None

    @property
    def complete(self) -> bool:
        if not self.is_chunked:
            return not self.failed
        return len(self.chunks_received) >= (self.total_chunks or 0)


@dataclass
class FinalizeResult:
    """Outcome of finalizing an upload.

    Attributes:
        site: The created or updated Site record.
        url: Entry URL of the site.
        complete: False when chunks are known to be missing.
        missing_chunks: Chunk numbers never acknowledged.
        files_count: Files recorded on the site.
        had_session: False when finalize ran without a tracked upload.
    """

    site: Site
    url: str
    complete: bool
    missing_chunks: list[int]
    files_count: int
    had_session: bool


# =============================================================================
# Path Helpers
# =============================================================================


def normalize_upload_path(path: str) -> str:
    """Normalise an uploaded relative path.

    Backslashes become slashes; leading "./" and "/" and empty segments are
    dropped.

    Raises:
        InvalidPathError: Empty path or a ".." segment.
    """
    segments = []
    for segment in path.replace("\\", "/").split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            raise InvalidPathError(f"Path traversal in upload path: {path!r}")
        segments.append(segment)
    if not segments:
        raise InvalidPathError(f"Empty upload path: {path!r}")
    return "/".join(segments)


def generate_site_id() -> str:
    """Create a storage folder key for a new upload: ``site-{millis}{suffix}``."""
    return f"site-{int(time.time() * 1000)}{secrets.token_hex(2)}"


def validate_site_id(site_id: str) -> None:
    """Raise UploadValidationError for site ids unusable as a folder key."""
    if not SITE_ID_PATTERN.match(site_id or ""):
        raise UploadValidationError(
            "Site ID must be 1-128 chars of letters, digits, '-' or '_'"
        )


def entry_url_for(site_id: str, base_url: str | None = None) -> str:
    """Public URL of a site's rewritten entry document."""
    return f"{(base_url or config.BASE_URL).rstrip('/')}/sites/{site_id}/raw"


def archive_files(archive: zipfile.ZipFile) -> list[UploadFile]:
    """Upload files for every regular member of a zip archive.

    Directories and macOS resource forks (``__MACOSX/``) are skipped. Member
    names are not checked here; ``normalize_upload_path`` rejects traversal
    per file when the batch is written.
    """
    files = []
    for info in archive.infolist():
        if info.is_dir() or info.filename.startswith("__MACOSX/"):
            continue

        async def read_member(info: zipfile.ZipInfo = info) -> bytes:
            try:
                return await asyncio.to_thread(archive.read, info)
            except (zipfile.BadZipFile, zlib.error, RuntimeError, NotImplementedError) as e:
                # RuntimeError: encrypted member; NotImplementedError: unknown compression
                raise UploadValidationError(f"Cannot extract {info.filename}: {e}") from e

        files.append(UploadFile(path=info.filename, reader=read_member, size=info.file_size))
    return files


# =============================================================================
# Upload Session Manager
# =============================================================================


class UploadSessionManager:
    """Writes upload batches into the blob store and tracks their sessions."""

    def __init__(
        self,
        store: BlobStore,
        registry: SiteRegistry,
        sessions: SessionStore,
        *,
        concurrency: int | None = None,
        base_url: str | None = None,
        session_ttl: float | None = None,
        max_files: int | None = None,
        max_file_size: int | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.sessions = sessions
        self.concurrency = max(1, concurrency or config.UPLOAD_CONCURRENCY)
        self.base_url = base_url or config.BASE_URL
        self.session_ttl = session_ttl if session_ttl is not None else config.SESSION_TTL
        self.max_files = max_files or config.MAX_FILES_PER_CHUNK
        self.max_file_size = max_file_size or config.MAX_FILE_SIZE
        self._site_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def _site_lock(self, site_id: str) -> AsyncIterator[None]:
        """Serialize session updates for one site.

        The lock is dropped once no coroutine holds or waits for it, so the
        map only contains sites with updates in flight.
        """
        lock = self._site_locks.setdefault(site_id, asyncio.Lock())
        self._lock_users[site_id] = self._lock_users.get(site_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[site_id] -= 1
            if not self._lock_users[site_id]:
                del self._lock_users[site_id]
                del self._site_locks[site_id]

    def entry_url(self, site_id: str) -> str:
        return entry_url_for(site_id, self.base_url)

    def folder_for(self, site_id: str) -> str:
        """Storage folder of a site, accepting the registry UUID as well."""
        site = self.registry.get(site_id)
        return site.display_id if site else site_id

    def check_folder_key(self, site_id: str) -> None:
        """Validate a site id for use as the folder key of an upload.

        Besides the format check, refuses ids equal to another site's registry
        UUID, which lookups would otherwise resolve to that other site.

        Raises:
            UploadValidationError: Malformed or reserved id.
        """
        validate_site_id(site_id)
        site = self.registry.get(site_id)
        if site is not None and site.display_id != site_id:
            raise UploadValidationError(f"Site ID {site_id} is the registry ID of site {site.display_id}")

    # -------------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------------

    async def begin_or_continue(
        self,
        site_id: str | None,
        chunk_number: int | None,
        total_chunks: int | None,
        files: list[UploadFile],
        owner_id: str | None = None,
        site_name: str | None = None,
    ) -> UploadBatchResult:
        """Write one batch of files and record it in the site's session.

        Args:
            site_id: Storage folder key; generated when None on the first chunk.
            chunk_number: 1-based chunk number, or None for a single request.
            total_chunks: Announced chunk count, or None for a single request.
            files: Files of this batch (must not be empty).
            owner_id: Owner of the upload.
            site_name: Display name for the site.

        Raises:
            UploadValidationError: Bad chunk numbers, empty batch or bad site id.
            PayloadTooLargeError: More files than MAX_FILES_PER_CHUNK.
            StorageError: The bucket could not be created.
        """
        chunked = chunk_number is not None or total_chunks is not None
        if chunked:
            if chunk_number is None or total_chunks is None:
                raise UploadValidationError("chunkNumber and totalChunks must be sent together")
            if total_chunks < 1 or not 1 <= chunk_number <= total_chunks:
                raise UploadValidationError(
                    f"chunkNumber must be between 1 and totalChunks ({chunk_number}/{total_chunks})"
                )
        if not files:
            raise UploadValidationError("No files uploaded")
        if len(files) > self.max_files:
            raise PayloadTooLargeError(f"You can upload a maximum of {self.max_files} files per request")

        if site_id:
            self.check_folder_key(site_id)
        elif chunked and chunk_number != 1:
            raise UploadValidationError("siteId is required for chunks after the first")
        else:
            site_id = generate_site_id()
            _LOG.info("Starting new upload for %s", site_id)

        if chunked:
            _LOG.info("Chunk %d of %d for site %s (%d files)", chunk_number, total_chunks, site_id, len(files))

        await self.store.ensure_bucket()

        results = await self._write_files(site_id, files)
        failed = [r for r in results if not r.success]
        if failed:
            _LOG.warning(
                "%d of %d files failed for site %s: %s",
                len(failed), len(results), site_id, ", ".join(r.path for r in failed),
            )

        batch = UploadBatchResult(
            site_id=site_id,
            chunk_number=chunk_number,
            total_chunks=total_chunks,
            files_received=len(files),
            results=results,
        )

        if chunked:
            session = await self._record_chunk(
                site_id, chunk_number, total_chunks, results, owner_id, site_name
            )
            batch.session_files_written = session.files_written
            batch.chunks_received = sorted(session.received_chunks)
            _LOG.info(
                "Chunk %d/%d complete for site %s. Total files so far: %d",
                chunk_number, total_chunks, site_id, session.files_written,
            )
        else:
            batch.session_files_written = batch.files_written

        return batch

    async def _write_files(self, site_id: str, files: list[UploadFile]) -> list[FileWriteResult]:
        semaphore = asyncio.Semaphore(self.concurrency)
        limit_mb = self.max_file_size // (1024 * 1024)

        async def write(upload: UploadFile) -> FileWriteResult:
            try:
                relative = normalize_upload_path(upload.path)
            except InvalidPathError as e:
                return FileWriteResult(path=upload.path, key=None, success=False, error=str(e))

            key = f"{site_id}/{relative}"
            if upload.size is not None and upload.size > self.max_file_size:
                return FileWriteResult(path=relative, key=key, success=False, error=f"File exceeds {limit_mb} MB")

            content_type = upload.content_type or content_type_for(relative)
            async with semaphore:
                try:
                    data = await upload.read()
                except (OSError, UploadValidationError) as e:
                    _LOG.error("Error reading %s: %s", relative, e)
                    return FileWriteResult(path=relative, key=key, success=False, error=str(e))
                if len(data) > self.max_file_size:
                    return FileWriteResult(path=relative, key=key, success=False, error=f"File exceeds {limit_mb} MB")
                try:
                    await self.store.put(key, data, content_type)
                except (StorageError, InvalidPathError) as e:
                    _LOG.error("Error uploading %s: %s", key, e)
                    return FileWriteResult(path=relative, key=key, success=False, error=str(e))
            return FileWriteResult(path=relative, key=key, success=True, size=len(data))

        return list(await asyncio.gather(*(write(f) for f in files)))

    async def _record_chunk(
        self,
        site_id: str,
        chunk_number: int,
        total_chunks: int,
        results: list[FileWriteResult],
        owner_id: str | None,
        site_name: str | None,
    ) -> UploadSession:
        async with self._site_lock(site_id):
            return await self.sessions.record_chunk(
                site_id,
                chunk_number,
                total_chunks,
                [r.key for r in results if r.success],
                chunk_complete=all(r.success for r in results),
                owner_id=owner_id,
                site_name=site_name,
            )

    async def upload_archive(
        self,
        archive: zipfile.ZipFile,
        site_id: str | None = None,
        owner_id: str | None = None,
        site_name: str | None = None,
    ) -> tuple[UploadBatchResult, FinalizeResult]:
        """Extract a zip bundle into a site folder and finalize the site.

        Members are read one at a time inside the write semaphore. Members
        with ".." segments fail individually like any other upload path.

        Raises:
            UploadValidationError: Empty archive or bad site id.
            PayloadTooLargeError: More than MAX_ARCHIVE_FILES members.
            StorageError: The bucket could not be created.
        """
        files = archive_files(archive)
        if not files:
            raise UploadValidationError("Archive contains no files")
        if len(files) > config.MAX_ARCHIVE_FILES:
            raise PayloadTooLargeError(f"Archives may contain at most {config.MAX_ARCHIVE_FILES} files")

        if site_id:
            self.check_folder_key(site_id)
        else:
            site_id = generate_site_id()
        _LOG.info("Extracting archive with %d files into %s", len(files), site_id)

        await self.store.ensure_bucket()
        results = await self._write_files(site_id, files)
        batch = UploadBatchResult(
            site_id=site_id,
            chunk_number=None,
            total_chunks=None,
            files_received=len(files),
            results=results,
        )
        batch.session_files_written = batch.files_written
        if batch.failed:
            _LOG.warning(
                "%d of %d archive members failed for site %s: %s",
                len(batch.failed), len(results), site_id, ", ".join(batch.failed_paths),
            )

        final = await self.finalize(
            site_id,
            site_name=site_name,
            total_files_hint=batch.files_written,
            owner_id=owner_id,
        )
        return batch, final

    # -------------------------------------------------------------------------
    # Finalize
    # -------------------------------------------------------------------------

    async def finalize(
        self,
        site_id: str,
        site_name: str | None = None,
        total_files_hint: int | None = None,
        owner_id: str | None = None,
    ) -> FinalizeResult:
        """Create or update the Site for an uploaded folder and drop its session.

        Does not require every chunk to have arrived. Safe to call again for
        the same site id: the second call finds no session and keeps the
        stored metadata. A site whose folder holds no files at all is
        recorded with status failed.
        """
        self.check_folder_key(site_id)

        async with self._site_lock(site_id):
            session = await self.sessions.get(site_id)
            existing = self.registry.get(site_id)

            if session is None:
                if existing is None:
                    _LOG.warning(
                        "Finalize for %s without a tracked upload; using default metadata", site_id
                    )
                complete = True
                missing: list[int] = []
                files_count = total_files_hint if total_files_hint is not None else (
                    existing.files_count if existing else 0
                )
            else:
                complete = session.is_complete
                missing = session.missing_chunks
                files_count = session.files_written
                if not complete:
                    _LOG.warning(
                        "Finalizing %s with %d/%d chunks received (missing: %s)",
                        site_id, len(session.received_chunks), session.total_chunks, missing,
                    )
                if total_files_hint is not None and total_files_hint != files_count:
                    _LOG.warning(
                        "Site %s: client reported %d files, %d were written",
                        site_id, total_files_hint, files_count,
                    )

            has_files = session is not None and session.files_written > 0
            if not has_files:
                has_files = bool(await self.store.list(site_id))
            if not has_files:
                _LOG.warning("Finalizing %s with no stored files; marking it failed", site_id)

            name = site_name or (session.site_name if session else None)
            if name is None and existing is None:
                name = DEFAULT_SITE_NAME
            owner = owner_id or (session.owner_id if session else None)

            url = entry_url_for(site_id, self.base_url)
            site = self.registry.upsert(
                site_id,
                name=name,
                owner_id=owner,
                status=SiteStatus.ACTIVE if has_files else SiteStatus.FAILED,
                entry_url=url,
                files_count=files_count,
                deployed=True,
            )

            if session is not None:
                await self.sessions.delete(site_id)

        _LOG.info("Finalized site %s (%s) with %d files", site_id, site.id, files_count)
        return FinalizeResult(
            site=site,
            url=url,
            complete=complete,
            missing_chunks=missing,
            files_count=files_count,
            had_session=session is not None,
        )

    async def get_session(self, site_id: str) -> UploadSession | None:
        return await self.sessions.get(site_id)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def sweep_expired(self, now: float | None = None) -> list[str]:
        """Discard sessions idle for longer than the TTL. Returns the swept site ids.

        Files already written stay in the store, so a swept upload can still
        be finalized.
        """
        now = now if now is not None else time.time()
        swept = []
        for session in await self.sessions.list_all():
            if not session.is_expired(self.session_ttl, now):
                continue
            async with self._site_lock(session.site_id):
                current = await self.sessions.get(session.site_id)
                if current is None or not current.is_expired(self.session_ttl, now):
                    continue
                await self.sessions.delete(session.site_id)
            swept.append(session.site_id)
            _LOG.info(
                "Swept abandoned upload %s (%d/%d chunks, %d files)",
                session.site_id, len(session.received_chunks),
                session.total_chunks, session.files_written,
            )
        return swept

    async def run_sweeper(self, interval: float | None = None) -> None:
        """Sweep expired sessions forever. Runs as a background task."""
        interval = interval or config.SESSION_SWEEP_INTERVAL
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_expired()
            except Exception:
                _LOG.exception("Upload session sweep failed")

    # -------------------------------------------------------------------------
    # Site Files
    # -------------------------------------------------------------------------

    async def list_files(self, site_id: str) -> list[BlobInfo]:
        """List a site's stored files.

        Raises:
            SiteNotFoundError: No record and no stored files.
        """
        folder = self.folder_for(site_id)
        infos = await self.store.list(folder)
        if not infos and self.registry.get(site_id) is None:
            raise SiteNotFoundError(f"Site with ID {site_id} not found")
        return infos

    async def delete_site(self, site_id: str) -> int:
        """Remove a site's blob subtree, its record and any open session.

        Returns:
            Number of stored objects removed.

        Raises:
            SiteNotFoundError: Nothing stored and no record for the id.
        """
        site = self.registry.get(site_id)
        folder = site.display_id if site else site_id
        removed = await self.store.delete_prefix(folder)
        if site is None and removed == 0:
            raise SiteNotFoundError(f"Site with ID {site_id} not found")
        if site is not None:
            self.registry.delete(site.id)
        await self.sessions.delete(folder)
        _LOG.info("Deleted site %s (%d files)", folder, removed)
        return removed

    def update_site(self, site_id: str, name: str | None = None, status: str | None = None) -> Site:
        """Rename a site or change its status.

        Raises:
            SiteNotFoundError: No record for the id.
            ValueError: Unknown status value.
        """
        site = self.registry.get(site_id)
        if site is None:
            raise SiteNotFoundError(f"Site with ID {site_id} not found")
        return self.registry.upsert(site.display_id, name=name, status=status)
