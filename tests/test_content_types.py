"""Tests for the extension to MIME type table."""

from unittest.mock import patch

import pytest

from launchpad.content_types import (
    DEFAULT_CONTENT_TYPE,
    content_type_for,
    extension_of,
)


class TestExtensionOf:
    """Tests for extension_of."""

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("index.html", "html"),
            ("static/js/main.abc123.js", "js"),
            ("assets/Logo.PNG", "png"),
            ("dashboard/settings", ""),
            (".htaccess", ""),
            ("dir.d/file", ""),
            ("", ""),
        ],
    )
    def test_extension(self, path, expected):
        """Lowercase extension of the last segment, empty when there is none."""
        assert extension_of(path) == expected


class TestContentTypeFor:
    """Tests for content_type_for."""

    def test_javascript_is_forced(self):
        """.js is always application/javascript, whatever mimetypes thinks."""
        with patch("launchpad.content_types.mimetypes.guess_type", return_value=("text/plain", None)):
            assert content_type_for("app.js") == "application/javascript"

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("index.html", "text/html"),
            ("page.htm", "text/html"),
            ("style.css", "text/css"),
            ("data.json", "application/json"),
            ("logo.svg", "image/svg+xml"),
            ("favicon.ico", "image/x-icon"),
            ("font.woff", "font/woff"),
            ("font.woff2", "font/woff2"),
            ("font.ttf", "font/ttf"),
            ("font.eot", "application/vnd.ms-fontobject"),
            ("a.png", "image/png"),
            ("a.jpg", "image/jpeg"),
            ("a.jpeg", "image/jpeg"),
            ("a.gif", "image/gif"),
            ("a.webp", "image/webp"),
        ],
    )
    def test_required_overrides(self, path, expected):
        """The table covers the types browsers care about."""
        assert content_type_for(path) == expected

    def test_unknown_extension_falls_back(self):
        """Unknown extensions are application/octet-stream."""
        assert content_type_for("blob.zzzunknown") == DEFAULT_CONTENT_TYPE

    def test_no_extension_falls_back(self):
        """Extensionless paths are application/octet-stream."""
        assert content_type_for("LICENSE") == DEFAULT_CONTENT_TYPE

    def test_uppercase_extension(self):
        """Lookup is case-insensitive."""
        assert content_type_for("INDEX.HTML") == "text/html"
