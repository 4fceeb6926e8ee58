"""Entry document rewriting for sites served under a path prefix.

Uploaded entry documents reference their assets as root-relative paths
("/static/js/main.abc.js", "/assets/index-BfD3x2ab.js") that break once the
site is served from ``/sites/{id}/proxy/``. The rewriter detects which
bundler produced the document and applies that bundler's rules:

- Every document gets ``<base href="/sites/{id}/proxy/">`` after ``<head>``.
- CRA documents get their /static, main.*, chunk, manifest and favicon
  references prefixed, and ``defer`` on external scripts.
- Vite documents get JS/CSS references mapped onto the stored bundle files
  and image references mapped onto their hashed stored names, plus a CSS
  override block and a small runtime fixer script.

All rules are regular-expression substitutions on src/href attributes and
are best effort. Every substitution is logged; references that cannot be
matched are left alone. Rewriting is idempotent: rewritten values start
with the proxy prefix and are skipped, and injected blocks carry marker
attributes that are checked before injecting.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

from .content_types import extension_of
from .resolver import hashless_stem

_LOG = logging.getLogger(__name__)

OVERRIDES_MARKER = "data-launchpad-asset-overrides"
FIXER_MARKER = "data-launchpad-asset-fixer"

_ATTR_RE = re.compile(
    r"""(?<![\w-])(?P<attr>src|href)(?P<eq>\s*=\s*)(?P<q>["'])(?P<value>.*?)(?P=q)""",
    re.IGNORECASE | re.DOTALL,
)
_HEAD_OPEN_RE = re.compile(r"<head(?:\s[^>]*)?>", re.IGNORECASE)
_HTML_OPEN_RE = re.compile(r"<html(?:\s[^>]*)?>", re.IGNORECASE)
_HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.IGNORECASE)
_BODY_OPEN_RE = re.compile(r"<body(?:\s[^>]*)?>", re.IGNORECASE)
_BASE_RE = re.compile(r"<base[\s>/]", re.IGNORECASE)
_SCRIPT_OPEN_RE = re.compile(r"<script\b(?P<attrs>[^>]*)>", re.IGNORECASE)

_EXTERNAL_PREFIXES = ("http:", "https:", "//", "data:", "blob:", "mailto:", "tel:", "javascript:", "#")

_CRA_MARKERS = ("/static/js/", "/static/css/")
_VITE_HASHED_RE = re.compile(r"/assets/[^\"'\s>]+-[A-Za-z0-9_]{6,}\.(?:js|css)\b")

_CRA_PATHS = (
    re.compile(r"^/static/(?:js|css|media)/[^\"']+$"),
    re.compile(r"^/main\.[^/]+$"),
    re.compile(r"^/\d+\.[^/]+\.chunk\.(?:js|css)$"),
    re.compile(r"^/(?:manifest\.json|favicon\.ico|logo\d*\.png)$"),
)

_VITE_BUNDLE_EXTS = frozenset({"js", "mjs", "css"})
_VITE_ASSET_EXTS = frozenset({
    "png", "jpg", "jpeg", "gif", "svg", "webp", "avif", "ico",
    "woff", "woff2", "ttf", "otf", "eot",
})
_IMAGE_EXTS = frozenset({"png", "jpg", "jpeg", "gif", "svg", "webp", "avif", "ico"})
_CSS_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


class BundlerKind(StrEnum):
    CRA = "cra"
    VITE = "vite"
    GENERIC = "generic"


def detect_bundler(html: str) -> BundlerKind:
    """Identify the bundler convention an entry document was built with."""
    if any(marker in html for marker in _CRA_MARKERS):
        return BundlerKind.CRA
    if "/assets/index-" in html or _VITE_HASHED_RE.search(html):
        return BundlerKind.VITE
    return BundlerKind.GENERIC


# =============================================================================
# Types
# =============================================================================


@dataclass
class Substitution:
    """One rewritten reference (or injected element)."""

    attribute: str
    original: str
    replacement: str
    reason: str


@dataclass
class RewriteContext:
    """What the rewriter knows about the site being served.

    Attributes:
        site_id: Site the document belongs to.
        proxy_prefix: URL prefix assets are served under, ending in "/".
        available_files: Stored paths relative to the site folder.
    """

    site_id: str
    proxy_prefix: str
    available_files: list[str] = field(default_factory=list)

    @classmethod
    def for_site(cls, site_id: str, available_files: list[str] | None = None) -> RewriteContext:
        return cls(
            site_id=site_id,
            proxy_prefix=f"/sites/{site_id}/proxy/",
            available_files=list(available_files or []),
        )

    def files_with_extension(self, ext: str) -> list[str]:
        return [f for f in self.available_files if extension_of(f) == ext]


@dataclass
class RewriteResult:
    html: str
    bundler: BundlerKind
    substitutions: list[Substitution] = field(default_factory=list)
    base_injected: bool = False

    @property
    def changed(self) -> bool:
        return self.base_injected or bool(self.substitutions)


# =============================================================================
# Helpers
# =============================================================================


def inject_base(html: str, href: str) -> tuple[str, bool]:
    """Insert ``<base href>`` right after the opening head tag.

    Documents that already declare a base are returned unchanged. Without a
    head tag the element goes after ``<html>``, or at the very start.
    """
    if _BASE_RE.search(html):
        return html, False
    tag = f'<base href="{href}">'
    match = _HEAD_OPEN_RE.search(html) or _HTML_OPEN_RE.search(html)
    if match is None:
        return tag + html, True
    return html[:match.end()] + tag + html[match.end():], True


def insert_head_block(html: str, block: str) -> str:
    """Insert markup just before ``</head>`` (or before ``<body>``, or at the end)."""
    match = _HEAD_CLOSE_RE.search(html) or _BODY_OPEN_RE.search(html)
    if match is None:
        return html + block
    return html[:match.start()] + block + html[match.start():]


def is_local_reference(value: str, proxy_prefix: str) -> bool:
    """True for references that point into the uploaded bundle and are not rewritten yet."""
    value = value.strip()
    if not value or value.startswith(proxy_prefix):
        return False
    return not value.lower().startswith(_EXTERNAL_PREFIXES)


def rewrite_attributes(
    html: str,
    replace: Callable[[str, str], tuple[str, str] | None],
    substitutions: list[Substitution],
) -> str:
    """Apply ``replace(attr, value)`` to every src/href attribute.

    ``replace`` returns ``(new_value, reason)`` or None to leave the
    attribute alone.
    """

    def substitute(match: re.Match) -> str:
        attr, value, quote = match.group("attr"), match.group("value"), match.group("q")
        replaced = replace(attr.lower(), value)
        if replaced is None:
            return match.group(0)
        new_value, reason = replaced
        if quote in new_value or new_value == value:
            return match.group(0)
        substitutions.append(Substitution(attr.lower(), value, new_value, reason))
        return f"{attr}{match.group('eq')}{quote}{new_value}{quote}"

    return _ATTR_RE.sub(substitute, html)


def _split_suffix(value: str) -> tuple[str, str]:
    """Split "a.js?v=1#x" into ("a.js", "?v=1#x")."""
    for i, ch in enumerate(value):
        if ch in "?#":
            return value[:i], value[i:]
    return value, ""


# =============================================================================
# Strategies
# =============================================================================


class RewriteStrategy:
    """Rewrite rules for one bundler convention.

    The base tag is common to every strategy; subclasses add their own
    reference rules in ``rewrite_references``.
    """

    kind: BundlerKind = BundlerKind.GENERIC

    def rewrite(self, html: str, context: RewriteContext) -> RewriteResult:
        result = RewriteResult(html=html, bundler=self.kind)
        result.html, result.base_injected = inject_base(html, context.proxy_prefix)
        result.html = self.rewrite_references(result.html, context, result.substitutions)
        return result

    def rewrite_references(
        self, html: str, context: RewriteContext, substitutions: list[Substitution]
    ) -> str:
        return html


class GenericRewriteStrategy(RewriteStrategy):
    """Base tag only; relative references then resolve under the proxy."""

    kind = BundlerKind.GENERIC


class CraRewriteStrategy(RewriteStrategy):
    """Create React App builds.

    CRA emits root-relative paths (homepage "/"), which a base tag cannot
    fix, so those references are prefixed explicitly.
    """

    kind = BundlerKind.CRA

    def rewrite_references(self, html, context, substitutions):
        def replace(attr: str, value: str) -> tuple[str, str] | None:
            path, suffix = _split_suffix(value.strip())
            if not is_local_reference(path, context.proxy_prefix) or not path.startswith("/"):
                return None
            if any(pattern.match(path) for pattern in _CRA_PATHS):
                return f"{context.proxy_prefix}{path.lstrip('/')}{suffix}", "cra_root_relative"
            return None

        html = rewrite_attributes(html, replace, substitutions)
        return self._defer_scripts(html, substitutions)

    @staticmethod
    def _defer_scripts(html: str, substitutions: list[Substitution]) -> str:
        def add_defer(match: re.Match) -> str:
            attrs = match.group("attrs")
            lowered = attrs.lower()
            if "src" not in lowered or re.search(r"\b(?:defer|async)\b", lowered):
                return match.group(0)
            if re.search(r"""\btype\s*=\s*["']?module""", lowered):
                return match.group(0)
            src = re.search(r"""\bsrc\s*=\s*["']([^"']*)""", attrs, re.IGNORECASE)
            substitutions.append(Substitution("defer", src.group(1) if src else "", "defer", "cra_defer"))
            body = attrs.rstrip()
            if body.endswith("/"):
                return f"<script{body[:-1].rstrip()} defer/>"
            return f"<script{body} defer>"

        return _SCRIPT_OPEN_RE.sub(add_defer, html)


class ViteRewriteStrategy(RewriteStrategy):
    """Vite builds.

    Known limitation: when a referenced bundle is not stored under its own
    name, the first stored file with the same extension is used. This is
    right for single-bundle builds and ambiguous for code-split ones.
    """

    kind = BundlerKind.VITE

    def rewrite_references(self, html, context, substitutions):
        def replace(attr: str, value: str) -> tuple[str, str] | None:
            path, suffix = _split_suffix(value.strip())
            if not is_local_reference(path, context.proxy_prefix):
                return None
            ext = extension_of(path)
            if ext in _VITE_BUNDLE_EXTS:
                match = self._match_bundle(path, ext, context)
            elif ext in _VITE_ASSET_EXTS:
                match = self._match_asset(path, ext, context)
            else:
                return None
            if match is None:
                _LOG.debug("No stored file matches %s=%r in site %s", attr, value, context.site_id)
                return None
            stored, reason = match
            return f"{context.proxy_prefix}{stored}{suffix}", reason

        html = rewrite_attributes(html, replace, substitutions)
        html = self._inject_overrides(html, context, substitutions)
        return self._inject_fixer(html, context, substitutions)

    @staticmethod
    def _lookup(path: str, candidates: list[str]) -> tuple[str, str] | None:
        relative = path.lstrip("/")
        if relative in candidates:
            return relative, "vite_exact"
        basename = relative.rsplit("/", 1)[-1]
        same_name = [c for c in candidates if c.rsplit("/", 1)[-1] == basename]
        if same_name:
            return min(same_name, key=lambda c: (c.count("/"), c)), "vite_basename"
        return None

    def _match_bundle(self, path: str, ext: str, context: RewriteContext) -> tuple[str, str] | None:
        # Only assets/ or single-segment root references are bundle outputs
        relative = path.lstrip("/")
        if not relative.startswith("assets/") and "/" in relative:
            return None
        candidates = context.files_with_extension(ext)
        found = self._lookup(path, candidates)
        if found is not None:
            return found
        if candidates:
            _LOG.warning(
                "Site %s: %s not stored, using first %s file %s (single-bundle assumption)",
                context.site_id, path, ext, candidates[0],
            )
            return candidates[0], "vite_first_of_extension"
        return None

    def _match_asset(self, path: str, ext: str, context: RewriteContext) -> tuple[str, str] | None:
        candidates = context.files_with_extension(ext)
        found = self._lookup(path, candidates)
        if found is not None:
            return found
        stem = hashless_stem(path)
        same_stem = [c for c in candidates if hashless_stem(c) == stem]
        if len(same_stem) == 1:
            return same_stem[0], "vite_hashless_stem"
        if len(same_stem) > 1:
            _LOG.debug("Ambiguous stem %r for %s: %s", stem, path, same_stem)
        return None

    @staticmethod
    def _inject_overrides(html: str, context: RewriteContext, substitutions: list[Substitution]) -> str:
        if OVERRIDES_MARKER in html:
            return html
        rules = []
        seen: set[str] = set()
        for image in context.available_files:
            if extension_of(image) not in _IMAGE_EXTS:
                continue
            stem = hashless_stem(image)
            if stem in seen or not _CSS_IDENT_RE.match(stem):
                continue
            seen.add(stem)
            rules.append(
                f'.{stem}, #{stem} {{ background-image: url("{context.proxy_prefix}{image}") !important; }}'
            )
        if not rules:
            return html
        block = f"<style {OVERRIDES_MARKER}>\n" + "\n".join(rules) + "\n</style>\n"
        substitutions.append(Substitution("style", "", f"{len(rules)} background overrides", "vite_overrides"))
        return insert_head_block(html, block)

    @staticmethod
    def _inject_fixer(html: str, context: RewriteContext, substitutions: list[Substitution]) -> str:
        if FIXER_MARKER in html:
            return html
        prefix = context.proxy_prefix
        script = (
            f"<script {FIXER_MARKER}>\n"
            "document.addEventListener('DOMContentLoaded', function () {\n"
            "  document.querySelectorAll('img[src^=\"/assets/\"]').forEach(function (img) {\n"
            f"    img.setAttribute('src', '{prefix}assets/' + img.getAttribute('src').slice(8));\n"
            "  });\n"
            "  document.querySelectorAll('[style*=\"/assets/\"]').forEach(function (el) {\n"
            "    el.setAttribute('style', el.getAttribute('style')"
            f".replace(/([(\"'\\s])\\/assets\\//g, '$1{prefix}assets/'));\n"
            "  });\n"
            "});\n"
            "</script>\n"
        )
        substitutions.append(Substitution("script", "", "asset fixer", "vite_fixer"))
        return insert_head_block(html, script)


STRATEGIES: dict[BundlerKind, RewriteStrategy] = {
    BundlerKind.CRA: CraRewriteStrategy(),
    BundlerKind.VITE: ViteRewriteStrategy(),
    BundlerKind.GENERIC: GenericRewriteStrategy(),
}


class HtmlRewriter:
    """Picks the strategy for a document's bundler and applies it."""

    def __init__(self, strategies: dict[BundlerKind, RewriteStrategy] | None = None) -> None:
        self.strategies = dict(strategies or STRATEGIES)

    def rewrite(self, html: str, context: RewriteContext) -> RewriteResult:
        bundler = detect_bundler(html)
        strategy = self.strategies.get(bundler) or self.strategies[BundlerKind.GENERIC]
        result = strategy.rewrite(html, context)

        if result.base_injected:
            _LOG.info("Site %s: injected <base href=%r>", context.site_id, context.proxy_prefix)
        for sub in result.substitutions:
            _LOG.info(
                "Site %s: %s %r -> %r (%s)",
                context.site_id, sub.attribute, sub.original, sub.replacement, sub.reason,
            )
        _LOG.info(
            "Rewrote entry document for %s as %s (%d substitutions)",
            context.site_id, bundler, len(result.substitutions),
        )
        return result
