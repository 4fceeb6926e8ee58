"""Centralized configuration for the Launchpad sites service.

All settings are read once from the environment at import time. Directories
are not created here; the component that writes into a directory creates it
on first use.

Storage Layout (local backend):
    /data/launchpad/
    +-- sites/                 # Blob store root (one directory per bucket)
    |   +-- sites/             # Default bucket
    |       +-- site-1718.../  # One folder per uploaded site
    |           +-- index.html
    |           +-- static/js/main.abc123.js
    +-- launchpad.db           # Site registry and shared upload sessions

Environment Variables:
    LAUNCHPAD_DATA_DIR: Root data directory (default: /data/launchpad)
    STORAGE_BACKEND: "local" or "supabase" (default: local)
    SESSION_BACKEND: "memory" or "sqlite" (default: memory)
    SUPABASE_URL / SUPABASE_SERVICE_KEY: Credentials for the supabase backend
    BASE_URL: Public base URL of this service, used for entry URLs
    LAUNCHPAD_AUTH_SECRET: HMAC secret for owner tokens (empty disables auth)
"""

from __future__ import annotations

import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# Paths
# =============================================================================

DATA_DIR: Path = Path(os.environ.get("LAUNCHPAD_DATA_DIR", "/data/launchpad"))
"""Root directory for all Launchpad data."""

SITES_DIR: Path = Path(os.environ.get("SITES_DIR", str(DATA_DIR / "sites")))
"""Root directory of the local blob store."""

DB_PATH: Path = Path(os.environ.get("LAUNCHPAD_DB_PATH", str(DATA_DIR / "launchpad.db")))
"""SQLite database holding the site registry (and sessions when shared)."""

# =============================================================================
# Storage
# =============================================================================

STORAGE_BACKEND: str = os.environ.get("STORAGE_BACKEND", "local")
"""Blob store implementation: "local" or "supabase"."""

SESSION_BACKEND: str = os.environ.get("SESSION_BACKEND", "memory")
"""Upload session store: "memory" for one instance, "sqlite" when shared."""

BUCKET_NAME: str = os.environ.get("SITES_BUCKET", "sites")
"""Bucket (container) that holds every site folder."""

SUPABASE_URL: str = os.environ.get("SUPABASE_URL", "").rstrip("/")
"""Supabase project URL for the supabase storage backend."""

SUPABASE_KEY: str = os.environ.get("SUPABASE_SERVICE_KEY") or os.environ.get("SUPABASE_KEY", "")
"""Service key for Supabase Storage. The service key is needed to create buckets."""

BASE_URL: str = os.environ.get("BASE_URL", "http://localhost:3001").rstrip("/")
"""Public base URL of this service, used to build site entry URLs."""

# =============================================================================
# Upload Limits
# =============================================================================

MAX_FILE_SIZE: int = 150 * 1024 * 1024
"""Maximum size of a single uploaded file in bytes (150 MB)."""

MAX_FILES_PER_CHUNK: int = 200
"""Maximum number of files accepted in one upload request."""

MAX_ARCHIVE_SIZE: int = 500 * 1024 * 1024
"""Maximum size of an uploaded zip archive in bytes (500 MB)."""

MAX_ARCHIVE_FILES: int = 5000
"""Maximum number of members extracted from one zip archive."""

UPLOAD_CONCURRENCY: int = int(os.environ.get("UPLOAD_CONCURRENCY", "5"))
"""Maximum number of blob writes in flight for one chunk."""

SESSION_TTL: int = int(os.environ.get("UPLOAD_SESSION_TTL", str(6 * 60 * 60)))
"""Seconds after which an unfinished upload session is considered abandoned."""

SESSION_SWEEP_INTERVAL: int = 10 * 60
"""Seconds between sweeps for abandoned upload sessions."""

ENTRY_DOCUMENT: str = "index.html"
"""Entry document served for the site root and client-side routes."""

# =============================================================================
# Auth
# =============================================================================

AUTH_SECRET: str = os.environ.get("LAUNCHPAD_AUTH_SECRET", "")
"""Secret key for HMAC owner tokens. Keep this secure!"""

REQUIRE_AUTH: bool = _env_bool("LAUNCHPAD_REQUIRE_AUTH")
"""Reject uploads without a valid owner token instead of treating them as anonymous."""
