"""Request-facing serving of uploaded sites.

Each request runs RECEIVE -> RESOLVE -> REWRITE (entry document only) ->
CONTENT-TYPE -> STREAM. Only the entry document is decoded and rewritten;
every other file, text or not, is returned as the stored bytes.

Served sites are arbitrary third-party content, so the serving routes get
a permissive Content-Security-Policy and CORS headers (SERVING_HEADERS).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .blob_store import BlobStore
from .content_types import content_type_for
from .resolver import AssetResolver
from .rewriter import HtmlRewriter, RewriteContext
from .site_registry import SiteRegistry

_LOG = logging.getLogger(__name__)

SERVING_HEADERS: dict[str, str] = {
    "Content-Security-Policy": (
        "default-src * 'unsafe-inline' 'unsafe-eval' data: blob:; "
        "script-src * 'unsafe-inline' 'unsafe-eval'; "
        "style-src * 'unsafe-inline'; "
        "img-src * data: blob:;"
    ),
    "Access-Control-Allow-Origin": "*",
    "Origin-Agent-Cluster": "?0",
}
"""Headers applied to every /raw and /proxy response."""


@dataclass
class ProxyResponse:
    """What to send back for one proxied request.

    Attributes:
        body: Rewritten HTML for the entry document, stored bytes otherwise.
        content_type: MIME type from the content-type table.
        status_code: HTTP status.
        key: Blob key that was served.
        strategy: Resolver strategy that found the key.
        headers: Extra response headers.
    """

    body: str | bytes
    content_type: str
    status_code: int = 200
    key: str = ""
    strategy: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def is_text(self) -> bool:
        return isinstance(self.body, str)


class SiteProxy:
    """Composes resolver, content-type table and rewriter to serve a site."""

    def __init__(
        self,
        store: BlobStore,
        resolver: AssetResolver | None = None,
        rewriter: HtmlRewriter | None = None,
        registry: SiteRegistry | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver or AssetResolver(store)
        self.rewriter = rewriter or HtmlRewriter()
        self.registry = registry

    def folder_for(self, site_id: str) -> str:
        """Storage folder for a site id; registry UUIDs map to their display id."""
        if self.registry is not None:
            site = self.registry.get(site_id)
            if site is not None:
                return site.display_id
        return site_id

    async def serve(self, site_id: str, path: str = "") -> ProxyResponse:
        """Answer a GET for one path of a site.

        Raises:
            AssetNotFoundError: Missing file with an extension (404).
            SiteNotFoundError: No entry document for the site (404).
            InvalidPathError: Traversal attempt (403).
            StorageError: Backend failure (500).
        """
        folder = self.folder_for(site_id)
        result = await self.resolver.resolve(folder, path)
        content_type = content_type_for(result.relative_path)

        headers = {"X-Resolved-Strategy": result.strategy}
        if result.spa_fallback:
            headers["Cache-Control"] = "no-cache"

        if not (result.is_entry_document and content_type == "text/html"):
            return ProxyResponse(
                body=result.data,
                content_type=content_type,
                key=result.key,
                strategy=result.strategy,
                headers=headers,
            )

        files = await result.snapshot.paths() if result.snapshot is not None else []
        context = RewriteContext.for_site(site_id, files)
        html = result.data.decode("utf-8", errors="replace")
        headers["Cache-Control"] = "no-cache"

        return ProxyResponse(
            body=self.rewriter.rewrite(html, context).html,
            content_type=content_type,
            key=result.key,
            strategy=result.strategy,
            headers=headers,
        )

    async def serve_entry(self, site_id: str) -> ProxyResponse:
        """The rewritten entry document, as served by the /raw route."""
        return await self.serve(site_id, "")
