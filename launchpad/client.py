"""Caller-side half of the chunked upload protocol.

Walks a built site folder, splits it into chunks, and sends them one at a
time to ``POST /sites/upload-folder`` before calling finalize:

    async with SiteUploader("http://localhost:3001", token=token) as uploader:
        report = await uploader.upload_folder(Path("dist"), site_name="Portfolio")
    print(report.url)

Retries belong to the caller. A chunk is retried on transport errors and
5xx responses, and only the files the server reported as failed are sent
again. Server writes are upserts, so resending is always safe.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from .content_types import content_type_for
from .errors import UploadFailedError
from .uploads import generate_site_id

_LOG = logging.getLogger(__name__)

DEFAULT_CHUNK_FILES: int = 50
"""Files per upload request."""

DEFAULT_CHUNK_BYTES: int = 50 * 1024 * 1024
"""Soft size limit per upload request (a single larger file gets its own chunk)."""

REQUEST_TIMEOUT: float = 120.0
"""Per-request timeout in seconds; there is no timeout for the whole upload."""

MAX_ATTEMPTS: int = 3
"""Attempts per chunk. The wait before retry n is 2n seconds."""

IGNORED_NAMES: frozenset[str] = frozenset({".DS_Store", "Thumbs.db", ".git", "node_modules"})


@dataclass
class LocalFile:
    """A file of the bundle being uploaded.

    Attributes:
        path: Path relative to the bundle root, with forward slashes.
        source: File on disk.
        size: Size in bytes.
    """

    path: str
    source: Path
    size: int


@dataclass
class UploadReport:
    """Outcome of a whole folder upload."""

    site_id: str
    url: str | None
    chunks: int
    files_total: int
    failed_paths: list[str] = field(default_factory=list)
    complete: bool = True
    site: dict = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.complete and not self.failed_paths


def collect_files(folder: Path) -> list[LocalFile]:
    """List every file of a built bundle, relative to ``folder``.

    Hidden files and common junk (``.DS_Store``, ``node_modules``) are skipped.

    Raises:
        NotADirectoryError: ``folder`` is not a directory.
    """
    folder = Path(folder)
    if not folder.is_dir():
        raise NotADirectoryError(f"Not a directory: {folder}")

    files = []
    for path in sorted(folder.rglob("*")):
        relative = path.relative_to(folder)
        if any(part in IGNORED_NAMES or part.startswith(".") for part in relative.parts):
            continue
        if path.is_file():
            files.append(LocalFile(path=relative.as_posix(), source=path, size=path.stat().st_size))
    return files


def plan_chunks(
    files: list[LocalFile],
    max_files: int = DEFAULT_CHUNK_FILES,
    max_bytes: int = DEFAULT_CHUNK_BYTES,
) -> list[list[LocalFile]]:
    """Split files into upload chunks, keeping their order.

    A chunk closes when adding the next file would exceed ``max_files`` or
    ``max_bytes``. Oversized files travel alone.
    """
    chunks: list[list[LocalFile]] = []
    current: list[LocalFile] = []
    current_bytes = 0
    for f in files:
        if current and (len(current) >= max_files or current_bytes + f.size > max_bytes):
            chunks.append(current)
            current, current_bytes = [], 0
        current.append(f)
        current_bytes += f.size
    if current:
        chunks.append(current)
    return chunks


class SiteUploader:
    """Uploads a site folder to a Launchpad Sites service."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        *,
        max_files: int = DEFAULT_CHUNK_FILES,
        max_bytes: int = DEFAULT_CHUNK_BYTES,
        attempts: int = MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_files = max_files
        self.max_bytes = max_bytes
        self.attempts = max(1, attempts)
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT)
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}

    async def __aenter__(self) -> SiteUploader:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def upload_folder(
        self,
        folder: Path,
        site_name: str | None = None,
        site_id: str | None = None,
    ) -> UploadReport:
        """Upload every file of ``folder`` and finalize the site.

        Raises:
            NotADirectoryError: ``folder`` is not a directory.
            UploadFailedError: A chunk got no usable response after all
                attempts, or the server rejected the request outright.
        """
        files = collect_files(folder)
        if not files:
            raise UploadFailedError(f"No files to upload in {folder}")

        site_id = site_id or generate_site_id()
        chunks = plan_chunks(files, self.max_files, self.max_bytes)
        _LOG.info("Uploading %d files from %s as %s in %d chunks", len(files), folder, site_id, len(chunks))

        failed: list[str] = []
        for number, chunk in enumerate(chunks, start=1):
            failed.extend(await self.send_chunk(site_id, number, len(chunks), chunk, site_name))

        result = await self.finalize(site_id, site_name, len(files))
        site = result.get("site") or {}
        return UploadReport(
            site_id=site_id,
            url=site.get("url"),
            chunks=len(chunks),
            files_total=len(files),
            failed_paths=failed,
            complete=bool(result.get("complete", True)),
            site=site,
        )

    async def send_chunk(
        self,
        site_id: str,
        number: int,
        total: int,
        files: list[LocalFile],
        site_name: str | None = None,
    ) -> list[str]:
        """Send one chunk, retrying failed files.

        Returns:
            Paths that still failed after the last attempt.
        """
        pending = files
        last_error: Exception | None = None
        answered = False

        for attempt in range(1, self.attempts + 1):
            try:
                body = await self._post_chunk(site_id, number, total, pending, site_name)
            except httpx.HTTPError as e:
                last_error = e
                _LOG.warning("Chunk %d/%d attempt %d failed: %s", number, total, attempt, e)
            except UploadFailedError as e:
                if not e.retryable:
                    raise
                last_error = e
                _LOG.warning("Chunk %d/%d attempt %d failed: %s", number, total, attempt, e)
            else:
                answered = True
                failed_paths = {f["path"] for f in body.get("failedFiles", [])}
                if not failed_paths:
                    _LOG.info("Chunk %d/%d uploaded (%d files)", number, total, len(pending))
                    return []
                pending = [f for f in pending if f.path in failed_paths]
                _LOG.warning(
                    "Chunk %d/%d attempt %d: %d files failed", number, total, attempt, len(pending)
                )

            if attempt < self.attempts:
                await self._sleep(2.0 * attempt)

        if not answered:
            raise UploadFailedError(
                f"Chunk {number}/{total} failed after {self.attempts} attempts: {last_error}"
            )
        return [f.path for f in pending]

    async def _post_chunk(
        self,
        site_id: str,
        number: int,
        total: int,
        files: list[LocalFile],
        site_name: str | None,
    ) -> dict:
        data = {"siteId": site_id, "chunkNumber": str(number), "totalChunks": str(total)}
        if site_name:
            data["siteName"] = site_name
        parts = [
            ("files", (f.path, f.source.read_bytes(), content_type_for(f.path)))
            for f in files
        ]
        response = await self._client.post(
            f"{self.base_url}/sites/upload-folder",
            data=data,
            files=parts,
            headers=self._headers,
        )
        return self._check(response)

    async def finalize(self, site_id: str, site_name: str | None, total_files: int) -> dict:
        """Finalize an upload; retried like a chunk since finalize is idempotent."""
        payload = {"siteId": site_id, "siteName": site_name, "totalFiles": total_files}
        last_error: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                response = await self._client.post(
                    f"{self.base_url}/sites/finalize-upload",
                    json=payload,
                    headers=self._headers,
                )
                return self._check(response)
            except httpx.HTTPError as e:
                last_error = e
                _LOG.warning("Finalize attempt %d failed: %s", attempt, e)
            except UploadFailedError as e:
                if not e.retryable:
                    raise
                last_error = e
                _LOG.warning("Finalize attempt %d failed: %s", attempt, e)
            if attempt < self.attempts:
                await self._sleep(2.0 * attempt)
        raise UploadFailedError(f"Finalize failed after {self.attempts} attempts: {last_error}")

    @staticmethod
    def _check(response: httpx.Response) -> dict:
        if response.status_code < 400:
            return response.json()
        detail = response.text
        try:
            detail = response.json().get("message", detail)
        except ValueError:
            pass
        raise UploadFailedError(
            f"Server returned {response.status_code}: {detail}",
            retryable=response.status_code >= 500,
        )
