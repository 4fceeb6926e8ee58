"""Extension to MIME type mapping for served site files.

Generic sniffers regularly report ``.js`` as ``text/plain`` and browsers then
refuse to execute the script, so the table below always wins. The
``mimetypes`` module is only consulted for extensions the table does not
know.
"""

from __future__ import annotations

import mimetypes

DEFAULT_CONTENT_TYPE: str = "application/octet-stream"

CONTENT_TYPES: dict[str, str] = {
    # Documents and code
    "html": "text/html",
    "htm": "text/html",
    "css": "text/css",
    "js": "application/javascript",
    "mjs": "application/javascript",
    "json": "application/json",
    "map": "application/json",
    "webmanifest": "application/manifest+json",
    "xml": "application/xml",
    "txt": "text/plain",
    "pdf": "application/pdf",
    "wasm": "application/wasm",
    # Images
    "svg": "image/svg+xml",
    "ico": "image/x-icon",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "avif": "image/avif",
    # Fonts
    "woff": "font/woff",
    "woff2": "font/woff2",
    "ttf": "font/ttf",
    "otf": "font/otf",
    "eot": "application/vnd.ms-fontobject",
    # Media
    "mp3": "audio/mpeg",
    "mp4": "video/mp4",
    "webm": "video/webm",
}
"""Forced MIME types for the extensions that matter for browser execution."""

def extension_of(path: str) -> str:
    """Return the lowercase extension of the last path segment, or ``""``.

    Dotfiles such as ``.htaccess`` have no extension.
    """
    name = path.rstrip("/").rsplit("/", 1)[-1]
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem:
        return ""
    return ext.lower()


def content_type_for(path: str) -> str:
    """Map a file path to the MIME type it must be served with."""
    ext = extension_of(path)
    if not ext:
        return DEFAULT_CONTENT_TYPE
    forced = CONTENT_TYPES.get(ext)
    if forced:
        return forced
    guessed, _ = mimetypes.guess_type(f"file.{ext}")
    return guessed or DEFAULT_CONTENT_TYPE
