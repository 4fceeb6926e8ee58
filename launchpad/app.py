"""Launchpad Sites - chunked static site uploads and proxied serving.

This FastAPI service provides two groups of routes:

1. **Upload**: Assemble a pre-built site bundle into the blob store
   - POST /sites/upload-folder - Upload one chunk of files (multipart)
   - POST /sites/finalize-upload - Create/update the site record
   - POST /sites/upload - Upload and finalize a zip archive of the site
   - GET /sites - List sites for the caller
   - GET /sites/{site_id} - Site record
   - PUT /sites/{site_id} - Rename a site or change its status
   - GET /sites/{site_id}/files - Stored files with public URLs
   - DELETE /sites/{site_id} - Remove a site and its files

2. **Serving**: Unauthenticated, permissive CSP
   - GET /sites/{site_id}/raw - Rewritten entry document
   - GET /sites/{site_id}/proxy/{path} - Any asset or client-side route

Security:
    - Owner tokens are optional unless LAUNCHPAD_REQUIRE_AUTH is set
    - Upload and request paths are checked for traversal
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import zipfile
from dataclasses import dataclass

from fastapi import Depends, FastAPI, File, Form, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from . import __version__, auth, config
from .blob_store import BlobStore, create_blob_store
from .errors import (
    AuthenticationError,
    LaunchpadError,
    PayloadTooLargeError,
    SiteNotFoundError,
    UploadValidationError,
)
from .proxy import SERVING_HEADERS, ProxyResponse, SiteProxy
from .sessions import SessionStore, create_session_store
from .site_registry import Site, SiteRegistry, SiteStatus
from .uploads import UploadFile as SiteFile
from .uploads import UploadSessionManager

_LOG = logging.getLogger(__name__)

_SERVING_PATH: re.Pattern = re.compile(r"^/sites/[^/]+/(?:raw|proxy)(?:/|$)")
"""Paths that serve site content and get SERVING_HEADERS."""


# =============================================================================
# Services
# =============================================================================


@dataclass
class Services:
    """Everything the routes need, built once per app."""

    store: BlobStore
    registry: SiteRegistry
    sessions: SessionStore
    manager: UploadSessionManager
    proxy: SiteProxy

    @classmethod
    def build(
        cls,
        store: BlobStore,
        registry: SiteRegistry,
        sessions: SessionStore,
        **manager_options,
    ) -> Services:
        return cls(
            store=store,
            registry=registry,
            sessions=sessions,
            manager=UploadSessionManager(store, registry, sessions, **manager_options),
            proxy=SiteProxy(store, registry=registry),
        )

    @classmethod
    def from_config(cls) -> Services:
        return cls.build(create_blob_store(), SiteRegistry(config.DB_PATH), create_session_store())

    async def close(self) -> None:
        await self.store.close()
        self.registry.close()


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_owner(authorization: str | None = Header(None)) -> str | None:
    """Owner id from the Authorization header (None for anonymous)."""
    return auth.owner_from_header(authorization)


# =============================================================================
# Request Models
# =============================================================================


class FinalizeRequest(BaseModel):
    """Request body for finalizing an upload.

    Attributes:
        siteId: Storage folder key returned by the upload route.
        siteName: Display name for the site.
        totalFiles: Number of files the client sent, for diagnostics.
    """

    siteId: str
    siteName: str | None = None
    totalFiles: int | None = None


class SiteUpdateRequest(BaseModel):
    """Request body for updating a site; omitted fields are kept."""

    name: str | None = None
    status: SiteStatus | None = None


# =============================================================================
# Response Helpers
# =============================================================================


def site_payload(site: Site) -> dict:
    payload = site.to_dict()
    payload["url"] = site.entry_url
    return payload


def proxy_response(result: ProxyResponse) -> Response:
    return Response(
        content=result.body,
        status_code=result.status_code,
        media_type=result.content_type,
        headers=result.headers,
    )


def check_owner(site: Site | None, owner_id: str | None) -> None:
    """Refuse changes to another owner's site when auth is enforced."""
    if site is None or site.owner_id is None or not config.REQUIRE_AUTH:
        return
    if owner_id != site.owner_id:
        raise AuthenticationError("This site belongs to another owner")


# =============================================================================
# Application
# =============================================================================


def create_app(services: Services | None = None) -> FastAPI:
    """Build the FastAPI app.

    Args:
        services: Pre-built services (tests inject local stores here). When
            None they are built from config on startup.
    """
    app = FastAPI(title="Launchpad Sites", version=__version__)
    app.state.services = services
    app.state.sweeper = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def serving_headers(request: Request, call_next):
        response = await call_next(request)
        if _SERVING_PATH.match(request.url.path):
            for name, value in SERVING_HEADERS.items():
                response.headers[name] = value
        return response

    @app.exception_handler(LaunchpadError)
    async def launchpad_error(request: Request, exc: LaunchpadError) -> JSONResponse:
        if exc.status_code >= 500:
            _LOG.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            {"error": exc.error, "message": str(exc)},
            status_code=exc.status_code,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @app.on_event("startup")
    async def startup() -> None:
        """Build services if none were injected and start the session sweeper."""
        if app.state.services is None:
            app.state.services = Services.from_config()
        app.state.sweeper = asyncio.create_task(app.state.services.manager.run_sweeper())
        _LOG.info("Launchpad Sites started (storage=%s)", config.STORAGE_BACKEND)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        sweeper = app.state.sweeper
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        if app.state.services is not None:
            await app.state.services.close()

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health(services: Services = Depends(get_services)) -> dict:
        """Health check endpoint for monitoring and load balancers."""
        return {
            "status": "healthy",
            "storage": config.STORAGE_BACKEND,
            "sites_count": len(services.registry.list_sites()),
            "uploads_in_progress": len(await services.sessions.list_all()),
        }

    # -------------------------------------------------------------------------
    # Upload
    # -------------------------------------------------------------------------

    @app.post("/sites/upload-folder", status_code=201)
    async def upload_folder(
        files: list[UploadFile] | None = File(None),
        siteName: str | None = Form(None),
        siteId: str | None = Form(None),
        chunkNumber: int | None = Form(None),
        totalChunks: int | None = Form(None),
        owner_id: str | None = Depends(get_owner),
        services: Services = Depends(get_services),
    ) -> dict:
        """Upload one batch of files; the filename of each part is its relative path."""
        batch = []
        for upload in files or []:
            # Starlette spools parts to disk; contents are read when written
            if upload.size is not None and upload.size > config.MAX_FILE_SIZE:
                raise PayloadTooLargeError(
                    f"{upload.filename} exceeds {config.MAX_FILE_SIZE // (1024 * 1024)} MB"
                )
            batch.append(SiteFile(path=upload.filename or "", reader=upload.read, size=upload.size))

        check_owner(services.registry.get(siteId) if siteId else None, owner_id)

        result = await services.manager.begin_or_continue(
            siteId or None,
            chunkNumber,
            totalChunks,
            batch,
            owner_id=owner_id,
            site_name=siteName,
        )

        if result.is_chunked:
            message = f"Chunk {result.chunk_number}/{result.total_chunks} uploaded successfully"
        else:
            message = "Files uploaded successfully"
        if result.failed:
            message = f"{message} ({len(result.failed)} files failed)"

        response = {
            "success": not result.failed,
            "message": message,
            "siteId": result.site_id,
            "siteName": siteName,
            "filesReceived": result.files_received,
            "filesWritten": result.files_written,
            "totalFilesWritten": result.session_files_written,
            "failed": len(result.failed),
            "failedFiles": [r.to_dict() for r in result.failed],
            "site": {
                "id": result.site_id,
                "name": siteName,
                "url": services.manager.entry_url(result.site_id),
            },
        }
        if result.is_chunked:
            response["chunk"] = {
                "number": result.chunk_number,
                "total": result.total_chunks,
                "received": result.chunks_received,
                "complete": result.complete,
            }
        return response

    @app.post("/sites/finalize-upload", status_code=201)
    async def finalize_upload(
        request: FinalizeRequest,
        owner_id: str | None = Depends(get_owner),
        services: Services = Depends(get_services),
    ) -> dict:
        """Create or update the site record for an uploaded folder."""
        check_owner(services.registry.get(request.siteId), owner_id)
        result = await services.manager.finalize(
            request.siteId,
            site_name=request.siteName,
            total_files_hint=request.totalFiles,
            owner_id=owner_id,
        )
        failed = result.site.status == SiteStatus.FAILED
        return {
            "success": not failed,
            "message": "Site has no files" if failed else "Site created successfully",
            "site": site_payload(result.site),
            "complete": result.complete,
            "missingChunks": result.missing_chunks,
            "filesCount": result.files_count,
        }

    @app.post("/sites/upload", status_code=201)
    async def upload_archive(
        zipFile: UploadFile | None = File(None),
        siteName: str | None = Form(None),
        siteId: str | None = Form(None),
        owner_id: str | None = Depends(get_owner),
        services: Services = Depends(get_services),
    ) -> dict:
        """Upload a whole site as one zip archive and finalize it."""
        if zipFile is None:
            raise UploadValidationError("No file uploaded")
        if zipFile.size is not None and zipFile.size > config.MAX_ARCHIVE_SIZE:
            raise PayloadTooLargeError(
                f"{zipFile.filename} exceeds {config.MAX_ARCHIVE_SIZE // (1024 * 1024)} MB"
            )
        check_owner(services.registry.get(siteId) if siteId else None, owner_id)

        _LOG.info("Received site archive %s (%s bytes)", zipFile.filename, zipFile.size)
        try:
            archive = await asyncio.to_thread(zipfile.ZipFile, zipFile.file)
        except zipfile.BadZipFile as e:
            raise UploadValidationError(f"{zipFile.filename} is not a valid zip archive") from e

        with archive:
            batch, final = await services.manager.upload_archive(
                archive, siteId or None, owner_id=owner_id, site_name=siteName
            )

        return {
            "success": not batch.failed and final.site.status != SiteStatus.FAILED,
            "message": f"Extracted {batch.files_written} of {batch.files_received} files",
            "siteId": batch.site_id,
            "filesReceived": batch.files_received,
            "filesWritten": batch.files_written,
            "failed": len(batch.failed),
            "failedFiles": [r.to_dict() for r in batch.failed],
            "site": site_payload(final.site),
        }

    # -------------------------------------------------------------------------
    # Site Records
    # -------------------------------------------------------------------------

    @app.get("/sites")
    async def list_sites(
        owner_id: str | None = Depends(get_owner),
        services: Services = Depends(get_services),
    ) -> dict:
        """List sites, limited to the caller's own when a token is sent."""
        sites = services.registry.list_sites(owner_id)
        return {"sites": [site_payload(site) for site in sites]}

    @app.get("/sites/{site_id}")
    async def get_site(site_id: str, services: Services = Depends(get_services)) -> dict:
        site = services.registry.get(site_id)
        if site is None:
            raise SiteNotFoundError(f"Site with ID {site_id} not found")
        return {"site": site_payload(site)}

    @app.get("/sites/{site_id}/files")
    async def list_site_files(site_id: str, services: Services = Depends(get_services)) -> dict:
        """List a site's stored files with their public URLs."""
        folder = services.manager.folder_for(site_id)
        infos = await services.manager.list_files(site_id)
        return {
            "siteId": folder,
            "files": [
                {
                    "path": info.key[len(folder) + 1:],
                    "key": info.key,
                    "size": info.size,
                    "contentType": info.content_type,
                    "updatedAt": info.updated_at,
                    "url": services.store.public_url(info.key),
                }
                for info in infos
            ],
        }

    @app.put("/sites/{site_id}")
    async def update_site(
        site_id: str,
        request: SiteUpdateRequest,
        owner_id: str | None = Depends(get_owner),
        services: Services = Depends(get_services),
    ) -> dict:
        """Rename a site or change its status."""
        check_owner(services.registry.get(site_id), owner_id)
        site = services.manager.update_site(site_id, name=request.name, status=request.status)
        return {"site": site_payload(site)}

    @app.delete("/sites/{site_id}")
    async def delete_site(
        site_id: str,
        owner_id: str | None = Depends(get_owner),
        services: Services = Depends(get_services),
    ) -> dict:
        """Delete a site record together with its stored files."""
        check_owner(services.registry.get(site_id), owner_id)
        removed = await services.manager.delete_site(site_id)
        return {"success": True, "message": f"Site '{site_id}' deleted", "filesDeleted": removed}

    # -------------------------------------------------------------------------
    # Serving
    # -------------------------------------------------------------------------

    @app.get("/sites/{site_id}/raw")
    async def serve_raw(site_id: str, services: Services = Depends(get_services)) -> Response:
        """Serve the rewritten entry document."""
        return proxy_response(await services.proxy.serve_entry(site_id))

    @app.get("/sites/{site_id}/proxy")
    async def serve_proxy_root(site_id: str, services: Services = Depends(get_services)) -> Response:
        return proxy_response(await services.proxy.serve_entry(site_id))

    @app.get("/sites/{site_id}/proxy/{path:path}")
    async def serve_proxy(
        site_id: str,
        path: str,
        services: Services = Depends(get_services),
    ) -> Response:
        """Serve any stored asset, or the entry document for client-side routes."""
        return proxy_response(await services.proxy.serve(site_id, path))

    return app
