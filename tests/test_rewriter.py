"""Tests for bundler detection and entry document rewriting."""

import logging

import pytest

from launchpad.rewriter import (
    FIXER_MARKER,
    OVERRIDES_MARKER,
    BundlerKind,
    HtmlRewriter,
    RewriteContext,
    detect_bundler,
    inject_base,
    insert_head_block,
    is_local_reference,
)

PREFIX = "/sites/s1/proxy/"

CRA_HTML = (
    '<!doctype html><html lang="en"><head><meta charset="utf-8"/>'
    '<link rel="icon" href="/favicon.ico"/>'
    '<link rel="manifest" href="/manifest.json"/>'
    '<script defer="defer" src="/static/js/main.abc123.js"></script>'
    '<link href="/static/css/main.def456.css" rel="stylesheet">'
    '</head><body><div id="root"></div>'
    '<script src="/static/js/runtime.js"></script>'
    '<a href="https://example.com/">external</a>'
    '</body></html>'
)

VITE_HTML = (
    '<!doctype html><html><head>'
    '<script type="module" crossorigin src="/assets/index-BfD3x2ab.js"></script>'
    '<link rel="modulepreload" href="/assets/vendor-Ab12Cd34.js">'
    '<link rel="stylesheet" href="/assets/index-Cc9Dd8Ee.css">'
    '</head><body><div id="app"></div><img src="/assets/hero.png" alt="hero"></body></html>'
)

VITE_FILES = [
    "index.html",
    "assets/index-BfD3x2ab.js",
    "assets/vendor-Ab12Cd34.js",
    "assets/index-Cc9Dd8Ee.css",
    "assets/hero-9f8e7d6c.png",
]


@pytest.fixture
def rewriter():
    return HtmlRewriter()


class TestDetectBundler:
    """Tests for detect_bundler."""

    def test_cra(self):
        """/static/js/ marks a Create React App build."""
        assert detect_bundler(CRA_HTML) == BundlerKind.CRA

    def test_vite(self):
        """/assets/index- marks a Vite build."""
        assert detect_bundler(VITE_HTML) == BundlerKind.VITE

    def test_vite_hashed_without_index(self):
        """Any hashed /assets/ bundle also marks Vite."""
        html = '<script type="module" src="/assets/app-1a2b3c4d.js"></script>'
        assert detect_bundler(html) == BundlerKind.VITE

    def test_generic(self):
        """Anything else is generic."""
        assert detect_bundler("<html><head></head><body><script src='app.js'></script></body></html>") == BundlerKind.GENERIC


class TestHelpers:
    """Tests for the markup helpers."""

    def test_inject_base_after_head(self):
        """The base tag goes right after the opening head tag."""
        html, injected = inject_base('<html><head lang="en"><title>x</title></head></html>', PREFIX)
        assert injected
        assert html == f'<html><head lang="en"><base href="{PREFIX}"><title>x</title></head></html>'

    def test_inject_base_without_head(self):
        """Without a head the base tag follows <html>, or starts the document."""
        assert inject_base("<html><body></body></html>", PREFIX)[0].startswith(
            f'<html><base href="{PREFIX}">'
        )
        assert inject_base("<p>hi</p>", PREFIX)[0] == f'<base href="{PREFIX}"><p>hi</p>'

    def test_inject_base_keeps_existing(self):
        """Documents that declare a base are left alone."""
        html = '<html><head><base href="/custom/"></head></html>'
        assert inject_base(html, PREFIX) == (html, False)

    def test_header_does_not_match_head(self):
        """<header> is not mistaken for <head>."""
        html, _ = inject_base("<html><body><header>x</header></body></html>", PREFIX)
        assert "<header>x</header>" in html
        assert html.startswith(f'<html><base href="{PREFIX}">')

    def test_insert_head_block(self):
        """Blocks are inserted before </head>."""
        assert insert_head_block("<head><title>x</title></head>", "<style></style>") == (
            "<head><title>x</title><style></style></head>"
        )

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("/static/js/main.js", True),
            ("img/logo.png", True),
            ("https://cdn.example.com/a.js", False),
            ("//cdn.example.com/a.js", False),
            ("data:image/png;base64,xyz", False),
            ("#section", False),
            ("mailto:me@example.com", False),
            (f"{PREFIX}static/js/main.js", False),
            ("", False),
        ],
    )
    def test_is_local_reference(self, value, expected):
        """Only unrewritten references into the bundle are local."""
        assert is_local_reference(value, PREFIX) is expected


class TestCraRewrite:
    """Create React App documents."""

    def test_rewrites_root_relative_paths(self, rewriter):
        """Static bundles, manifest and favicon get the proxy prefix."""
        result = rewriter.rewrite(CRA_HTML, RewriteContext.for_site("s1"))

        assert result.bundler == BundlerKind.CRA
        assert result.base_injected
        assert f'<head><base href="{PREFIX}">' in result.html
        assert f'src="{PREFIX}static/js/main.abc123.js"' in result.html
        assert f'href="{PREFIX}static/css/main.def456.css"' in result.html
        assert f'href="{PREFIX}manifest.json"' in result.html
        assert f'href="{PREFIX}favicon.ico"' in result.html
        assert 'href="https://example.com/"' in result.html

    def test_adds_defer(self, rewriter):
        """Scripts without defer get it; existing defer is not duplicated."""
        html = rewriter.rewrite(CRA_HTML, RewriteContext.for_site("s1")).html

        assert f'<script src="{PREFIX}static/js/runtime.js" defer>' in html
        assert f'<script defer="defer" src="{PREFIX}static/js/main.abc123.js">' in html

    def test_keeps_query_suffix(self, rewriter):
        """Query strings survive the rewrite."""
        html = '<head></head><script src="/static/js/main.js?v=2"></script>'
        assert f'src="{PREFIX}static/js/main.js?v=2"' in rewriter.rewrite(html, RewriteContext.for_site("s1")).html

    def test_logs_substitutions(self, rewriter, caplog):
        """Every substitution is logged."""
        with caplog.at_level(logging.INFO, logger="launchpad.rewriter"):
            result = rewriter.rewrite(CRA_HTML, RewriteContext.for_site("s1"))
        for sub in result.substitutions:
            assert any(sub.reason in record.getMessage() for record in caplog.records)

    def test_idempotent(self, rewriter):
        """Rewriting a rewritten document changes nothing."""
        context = RewriteContext.for_site("s1")
        once = rewriter.rewrite(CRA_HTML, context)
        twice = rewriter.rewrite(once.html, context)

        assert twice.html == once.html
        assert not twice.changed


class TestViteRewrite:
    """Vite documents."""

    def test_maps_bundles_and_assets(self, rewriter):
        """JS/CSS bundles and images point at the stored files."""
        result = rewriter.rewrite(VITE_HTML, RewriteContext.for_site("s1", VITE_FILES))

        assert result.bundler == BundlerKind.VITE
        assert f'src="{PREFIX}assets/index-BfD3x2ab.js"' in result.html
        assert f'href="{PREFIX}assets/vendor-Ab12Cd34.js"' in result.html
        assert f'href="{PREFIX}assets/index-Cc9Dd8Ee.css"' in result.html
        assert f'src="{PREFIX}assets/hero-9f8e7d6c.png"' in result.html
        reasons = {sub.reason for sub in result.substitutions}
        assert {"vite_exact", "vite_hashless_stem", "vite_overrides", "vite_fixer"} <= reasons

    def test_injects_overrides_and_fixer(self, rewriter):
        """The override style and fixer script go inside the head."""
        html = rewriter.rewrite(VITE_HTML, RewriteContext.for_site("s1", VITE_FILES)).html
        head = html.split("</head>", 1)[0]

        assert f"<style {OVERRIDES_MARKER}>" in head
        assert f'.hero, #hero {{ background-image: url("{PREFIX}assets/hero-9f8e7d6c.png") !important; }}' in head
        assert f"<script {FIXER_MARKER}>" in head
        assert f"{PREFIX}assets/" in head.split(FIXER_MARKER, 1)[1]

    def test_missing_bundle_uses_first_of_extension(self, rewriter, caplog):
        """An unknown bundle name falls back to the stored file, with a warning."""
        html = '<head><script type="module" src="/assets/index-OldHash12.js"></script></head>'
        context = RewriteContext.for_site("s1", ["index.html", "assets/index-NewHash34.js"])

        with caplog.at_level(logging.WARNING, logger="launchpad.rewriter"):
            result = rewriter.rewrite(html, context)

        assert f'src="{PREFIX}assets/index-NewHash34.js"' in result.html
        assert any("single-bundle" in record.getMessage() for record in caplog.records)

    def test_unmatched_asset_left_alone(self, rewriter):
        """Images with no stored counterpart keep their reference."""
        html = '<head><script type="module" src="/assets/index-BfD3x2ab.js"></script></head><img src="/assets/missing.png">'
        result = rewriter.rewrite(html, RewriteContext.for_site("s1", VITE_FILES))
        assert 'src="/assets/missing.png"' in result.html

    def test_idempotent(self, rewriter):
        """A second pass injects nothing and rewrites nothing."""
        context = RewriteContext.for_site("s1", VITE_FILES)
        once = rewriter.rewrite(VITE_HTML, context)
        twice = rewriter.rewrite(once.html, context)

        assert twice.html == once.html
        assert once.html.count(OVERRIDES_MARKER) == 1
        assert once.html.count(FIXER_MARKER) == 1


class TestGenericRewrite:
    """Documents from unknown bundlers."""

    def test_base_only(self, rewriter):
        """Only the base tag is added; relative references resolve through it."""
        html = '<html><head><title>x</title></head><body><img src="img/a.png"><script src="app.js"></script></body></html>'
        result = rewriter.rewrite(html, RewriteContext.for_site("s1", ["index.html", "app.js"]))

        assert result.bundler == BundlerKind.GENERIC
        assert result.substitutions == []
        assert result.html == html.replace("<head>", f'<head><base href="{PREFIX}">')
