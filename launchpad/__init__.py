"""Launchpad Sites - chunked static site uploads served through a rewriting proxy."""

__version__ = "1.0.0"
