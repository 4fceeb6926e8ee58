"""Map requested paths to stored objects.

Bundlers put assets in different places than the entry document's markup
says, so a request is answered by probing an ordered list of candidate
keys and stopping at the first one that exists. Each step is a strategy
object; the order is data, so strategies can be added, removed or
reordered without touching the probe loop.

Default order:
    entry_document       "" -> index.html
    exact                {path}
    basename             {basename}
    strip_assets_prefix  assets/x.js -> x.js
    bundle_root          {folder of index.html}/{path}
    directory_index      docs -> docs/index.html, docs.html
    dist_folder          dist/{path}, dist/assets/{basename}
    same_extension       any stored file with the extension (low confidence)
    spa_fallback         extensionless route -> index.html

A path with an extension that no strategy finds is a 404. It is never
answered with the entry document.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum

from . import config
from .blob_store import BlobStore
from .content_types import extension_of
from .errors import AssetNotFoundError, BlobNotFoundError, InvalidPathError, SiteNotFoundError

_LOG = logging.getLogger(__name__)

_HASH_SUFFIX: re.Pattern = re.compile(r"-(?=[a-z_]*[A-Z0-9])[A-Za-z0-9_]{8,}$")
"""Trailing content hash as emitted by Vite/Rollup ("index-BfD3x2ab").

Requires a digit or capital so plain words ("my-component") survive.
"""


class Confidence(StrEnum):
    EXACT = "exact"
    FALLBACK = "fallback"
    LOW = "low"


def hashless_stem(path: str) -> str:
    """Filename stem with any bundler content hash removed.

    "main.abc123.js" -> "main", "index-BfD3x2ab.css" -> "index",
    "hero-banner-9f8e7d6c.png" -> "hero-banner".
    """
    name = path.rsplit("/", 1)[-1]
    stem = name.split(".", 1)[0]
    return _HASH_SUFFIX.sub("", stem) or stem


def normalize_request_path(path: str) -> str:
    """Strip query string, fragment and leading slashes from a request path.

    A trailing slash is kept so directory requests stay recognisable.

    Raises:
        InvalidPathError: The path contains a ".." segment.
    """
    path = path.split("?", 1)[0].split("#", 1)[0].replace("\\", "/")
    segments = path.split("/")
    if ".." in segments:
        raise InvalidPathError(f"Path traversal in request: {path!r}")
    cleaned = "/".join(s for s in segments if s not in ("", "."))
    if cleaned and path.endswith("/"):
        cleaned += "/"
    return cleaned


# =============================================================================
# Request and Snapshot
# =============================================================================


@dataclass
class ResolveRequest:
    """One path lookup against one site folder."""

    folder: str
    path: str
    entry_document: str = "index.html"

    @property
    def clean_path(self) -> str:
        return self.path.rstrip("/")

    @property
    def basename(self) -> str:
        return self.clean_path.rsplit("/", 1)[-1]

    @property
    def extension(self) -> str:
        return extension_of(self.clean_path)

    @property
    def is_route(self) -> bool:
        """Extensionless paths are client-side routes or directories, not files."""
        return bool(self.clean_path) and not self.extension


class SiteSnapshot:
    """Lazy listing of a site's stored files, taken at most once per request."""

    def __init__(self, store: BlobStore, folder: str, entry_document: str = "index.html") -> None:
        self.store = store
        self.folder = folder
        self.entry_document = entry_document
        self._paths: list[str] | None = None

    @property
    def loaded(self) -> bool:
        return self._paths is not None

    async def paths(self) -> list[str]:
        """Stored paths relative to the site folder, sorted."""
        if self._paths is None:
            prefix = f"{self.folder}/"
            infos = await self.store.list(self.folder)
            self._paths = sorted(
                info.key[len(prefix):] for info in infos if info.key.startswith(prefix)
            )
        return self._paths

    async def entry_dir(self) -> str:
        """Folder holding the shallowest entry document, "" for the site root."""
        entries = [
            p for p in await self.paths()
            if p == self.entry_document or p.endswith(f"/{self.entry_document}")
        ]
        if not entries:
            return ""
        shallowest = min(entries, key=lambda p: (p.count("/"), p))
        return shallowest.rpartition("/")[0]


@dataclass
class ResolveResult:
    """A resolved stored object.

    Attributes:
        key: Full blob key that was read.
        relative_path: Key relative to the site folder.
        strategy: Name of the strategy that found it.
        confidence: How much the match can be trusted.
        data: Object bytes.
        is_entry_document: The object is the site's entry HTML.
        spa_fallback: The entry document answered a client-side route.
        tried: Relative paths probed without success, in order.
        snapshot: The request's lazy site listing, reusable by the caller.
    """

    key: str
    relative_path: str
    strategy: str
    confidence: Confidence
    data: bytes
    is_entry_document: bool = False
    spa_fallback: bool = False
    tried: list[str] = field(default_factory=list)
    snapshot: SiteSnapshot | None = field(default=None, repr=False)


# =============================================================================
# Strategies
# =============================================================================


class ResolveStrategy:
    """One step of the fallback search.

    ``candidates`` yields relative paths to probe, in order. Yielding
    nothing means the strategy does not apply. Generators are consumed
    lazily, so a strategy that needs the site listing only triggers it
    when every earlier probe missed.
    """

    name: str = ""
    confidence: Confidence = Confidence.FALLBACK
    serves_entry: bool = False

    def candidates(self, request: ResolveRequest, snapshot: SiteSnapshot) -> AsyncIterator[str]:
        raise NotImplementedError


class EntryDocumentStrategy(ResolveStrategy):
    """The bare site root is the entry document."""

    name = "entry_document"
    confidence = Confidence.EXACT
    serves_entry = True

    def applies(self, request: ResolveRequest) -> bool:
        return not request.clean_path

    async def candidates(self, request, snapshot):
        if not self.applies(request):
            return
        entry = request.entry_document
        yield entry
        if entry.endswith(".html"):
            yield entry[:-1]
        # Bundles uploaded with their build folder keep index.html one level down
        entry_dir = await snapshot.entry_dir()
        if entry_dir:
            yield f"{entry_dir}/{entry}"


class ExactStrategy(ResolveStrategy):
    name = "exact"
    confidence = Confidence.EXACT

    async def candidates(self, request, snapshot):
        if request.clean_path:
            yield request.clean_path


class BasenameStrategy(ResolveStrategy):
    """Bundlers that flatten assets to the root while markup keeps nested paths."""

    name = "basename"

    async def candidates(self, request, snapshot):
        if "/" in request.clean_path:
            yield request.basename


class StripAssetsPrefixStrategy(ResolveStrategy):
    name = "strip_assets_prefix"

    def __init__(self, prefixes: tuple[str, ...] = ("assets/", "static/")) -> None:
        self.prefixes = prefixes

    async def candidates(self, request, snapshot):
        for prefix in self.prefixes:
            if request.clean_path.startswith(prefix) and len(request.clean_path) > len(prefix):
                yield request.clean_path[len(prefix):]


class BundleRootStrategy(ResolveStrategy):
    """Sites whose entry document sits in a subfolder ("build/index.html")."""

    name = "bundle_root"

    async def candidates(self, request, snapshot):
        if not request.clean_path:
            return
        entry_dir = await snapshot.entry_dir()
        if entry_dir and not request.clean_path.startswith(f"{entry_dir}/"):
            yield f"{entry_dir}/{request.clean_path}"


class DirectoryIndexStrategy(ResolveStrategy):
    """Pretty URLs: "docs" and "docs/" serve docs/index.html or docs.html."""

    name = "directory_index"

    async def candidates(self, request, snapshot):
        if request.is_route:
            yield f"{request.clean_path}/index.html"
            yield f"{request.clean_path}.html"


class DistFolderStrategy(ResolveStrategy):
    """Bundles uploaded together with their dist/ output folder."""

    name = "dist_folder"

    async def candidates(self, request, snapshot):
        if request.clean_path and not request.clean_path.startswith("dist/"):
            yield f"dist/{request.clean_path}"
            yield f"dist/assets/{request.basename}"


class SameExtensionStrategy(ResolveStrategy):
    """Last resort: any stored file sharing the extension.

    Files with the same hashless stem come first, so "main.js" finds
    "main.abc123.js" before "vendor.def456.js".
    """

    name = "same_extension"
    confidence = Confidence.LOW

    async def candidates(self, request, snapshot):
        ext = request.extension
        if not ext:
            return
        stem = hashless_stem(request.basename)
        matches = [p for p in await snapshot.paths() if extension_of(p) == ext]
        matches.sort(key=lambda p: (hashless_stem(p) != stem, p.count("/"), p))
        for path in matches:
            yield path


class SpaFallbackStrategy(EntryDocumentStrategy):
    """Client-side routes ("dashboard/settings") get the entry document."""

    name = "spa_fallback"
    confidence = Confidence.FALLBACK

    def applies(self, request: ResolveRequest) -> bool:
        return request.is_route


DEFAULT_STRATEGIES: tuple[type[ResolveStrategy], ...] = (
    EntryDocumentStrategy,
    ExactStrategy,
    BasenameStrategy,
    StripAssetsPrefixStrategy,
    BundleRootStrategy,
    DirectoryIndexStrategy,
    DistFolderStrategy,
    SameExtensionStrategy,
    SpaFallbackStrategy,
)


def default_strategies() -> list[ResolveStrategy]:
    return [cls() for cls in DEFAULT_STRATEGIES]


# =============================================================================
# Resolver
# =============================================================================


class AssetResolver:
    """Probes strategies in order and returns the first stored hit."""

    def __init__(
        self,
        store: BlobStore,
        strategies: list[ResolveStrategy] | None = None,
        entry_document: str | None = None,
    ) -> None:
        self.store = store
        self.strategies = strategies if strategies is not None else default_strategies()
        self.entry_document = entry_document or config.ENTRY_DOCUMENT

    async def resolve(self, folder: str, requested_path: str = "") -> ResolveResult:
        """Find the stored object answering a request.

        Args:
            folder: Storage folder of the site.
            requested_path: Path below the proxy prefix; "" for the entry document.

        Raises:
            InvalidPathError: The path contains "..".
            AssetNotFoundError: Nothing matched a path with an extension.
            SiteNotFoundError: Nothing matched and the entry document is missing.
            StorageError: The blob store failed.
        """
        request = ResolveRequest(
            folder=folder,
            path=normalize_request_path(requested_path),
            entry_document=self.entry_document,
        )
        snapshot = SiteSnapshot(self.store, folder, self.entry_document)
        tried: list[str] = []

        for strategy in self.strategies:
            async for relative in strategy.candidates(request, snapshot):
                if relative in tried:
                    continue
                key = f"{folder}/{relative}"
                try:
                    data = await self.store.get(key)
                except BlobNotFoundError:
                    tried.append(relative)
                    continue
                return await self._hit(request, snapshot, strategy, key, relative, data, tried)

        if request.extension:
            _LOG.info("No stored file for %s/%s (tried %d keys)", folder, request.path, len(tried))
            raise AssetNotFoundError(request.path, tried)
        _LOG.info("No entry document for site %s", folder)
        raise SiteNotFoundError(f"Site {folder} has no {self.entry_document}")

    async def _hit(
        self,
        request: ResolveRequest,
        snapshot: SiteSnapshot,
        strategy: ResolveStrategy,
        key: str,
        relative: str,
        data: bytes,
        tried: list[str],
    ) -> ResolveResult:
        if strategy.confidence == Confidence.LOW:
            _LOG.warning(
                "Low-confidence match for %s/%s: serving %s (%s)",
                request.folder, request.path, relative, strategy.name,
            )
        elif strategy.name not in (ExactStrategy.name, EntryDocumentStrategy.name):
            _LOG.info("Resolved %s/%s -> %s via %s", request.folder, request.path, relative, strategy.name)

        is_entry = strategy.serves_entry or relative == self.entry_document
        if not is_entry and snapshot.loaded:
            entry_dir = await snapshot.entry_dir()
            is_entry = bool(entry_dir) and relative == f"{entry_dir}/{self.entry_document}"

        return ResolveResult(
            key=key,
            relative_path=relative,
            strategy=strategy.name,
            confidence=strategy.confidence,
            data=data,
            is_entry_document=is_entry,
            spa_fallback=isinstance(strategy, SpaFallbackStrategy),
            tried=list(tried),
            snapshot=snapshot,
        )
