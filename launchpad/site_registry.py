"""Persistent site records backed by SQLite.

A site has two identifiers: ``id`` is a UUID owned by the registry, and
``display_id`` is the storage folder key the files were uploaded under
(``site-1718000000000``). Lookups accept either.

Thread-safe SQLite access uses one connection per thread and a lock around
schema initialisation.

Usage:
    registry = SiteRegistry(db_path)
    site = registry.upsert("site-1718", name="Portfolio", status="active")
    registry.get("site-1718") -> Site | None
    registry.list_sites(owner_id="user-1") -> list[Site]
    registry.delete(site.id) -> bool
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from . import config

_LOG = logging.getLogger(__name__)


class SiteStatus(StrEnum):
    """Lifecycle of a site record."""

    DRAFT = "draft"
    ACTIVE = "active"
    FAILED = "failed"


@dataclass
class Site:
    """A deployed static site.

    Attributes:
        id: Registry UUID.
        display_id: Storage folder key the files live under.
        name: Human-facing display name.
        owner_id: Owner reference, or None for anonymous uploads.
        status: One of SiteStatus.
        entry_url: Cached URL of the rewritten entry document.
        files_count: Number of files written by the last upload.
        created_at: ISO timestamp of creation.
        updated_at: ISO timestamp of the last change.
        last_deployed: ISO timestamp of the last finalize, or None.
    """

    id: str
    display_id: str
    name: str
    owner_id: str | None
    status: str
    entry_url: str | None
    files_count: int
    created_at: str
    updated_at: str
    last_deployed: str | None

    def to_dict(self) -> dict:
        return asdict(self)


def _now() -> str:
    return datetime.now(UTC).isoformat()


class SiteRegistry:
    """Thread-safe SQLite store of Site records."""

    def __init__(self, db_path: Path | None = None) -> None:
        """Initialize the registry.

        Args:
            db_path: Path to SQLite database. Uses LAUNCHPAD_DB_PATH or default.
        """
        self.db_path = Path(db_path or config.DB_PATH)
        self._local = threading.local()
        self._lock = threading.Lock()
        self._initialized = False

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create a connection for the current thread."""
        if getattr(self._local, "conn", None) is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._local.conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")

        if not self._initialized:
            with self._lock:
                if not self._initialized:
                    self._init_schema(self._local.conn)
                    self._initialized = True

        return self._local.conn

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS sites (
                id TEXT PRIMARY KEY,
                display_id TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                owner_id TEXT,
                status TEXT NOT NULL DEFAULT 'draft',
                entry_url TEXT,
                files_count INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_deployed TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_sites_owner ON sites(owner_id);
        """)
        conn.commit()
        _LOG.info("Site registry schema initialized at %s", self.db_path)

    @staticmethod
    def _row_to_site(row: sqlite3.Row) -> Site:
        return Site(
            id=row["id"],
            display_id=row["display_id"],
            name=row["name"],
            owner_id=row["owner_id"],
            status=row["status"],
            entry_url=row["entry_url"],
            files_count=row["files_count"] or 0,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_deployed=row["last_deployed"],
        )

    def get(self, site_id: str) -> Site | None:
        """Look up a site by registry UUID or by storage folder key."""
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM sites WHERE id = ? OR display_id = ? LIMIT 1",
            (site_id, site_id),
        ).fetchone()
        return self._row_to_site(row) if row else None

    def upsert(
        self,
        display_id: str,
        *,
        name: str | None = None,
        owner_id: str | None = None,
        status: str | None = None,
        entry_url: str | None = None,
        files_count: int | None = None,
        deployed: bool = False,
    ) -> Site:
        """Create the site for a storage folder, or update the supplied fields.

        Fields passed as None keep their stored value. A new record gets a
        fresh UUID, the name "Uploaded Site" unless one is given, and status
        draft unless one is given.

        Raises:
            ValueError: Unknown status value.
        """
        if status is not None:
            status = SiteStatus(status).value

        now = _now()
        conn = self._get_conn()
        with self._lock:
            existing = conn.execute(
                "SELECT * FROM sites WHERE display_id = ?", (display_id,)
            ).fetchone()

            if existing is None:
                site_uuid = str(uuid.uuid4())
                conn.execute(
                    """
                    INSERT INTO sites (
                        id, display_id, name, owner_id, status, entry_url,
                        files_count, created_at, updated_at, last_deployed
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        site_uuid,
                        display_id,
                        name or "Uploaded Site",
                        owner_id,
                        status or SiteStatus.DRAFT.value,
                        entry_url,
                        files_count or 0,
                        now,
                        now,
                        now if deployed else None,
                    ),
                )
                _LOG.info("Created site %s (%s)", display_id, site_uuid)
            else:
                conn.execute(
                    """
                    UPDATE sites SET
                        name = COALESCE(?, name),
                        owner_id = COALESCE(?, owner_id),
                        status = COALESCE(?, status),
                        entry_url = COALESCE(?, entry_url),
                        files_count = COALESCE(?, files_count),
                        updated_at = ?,
                        last_deployed = CASE WHEN ? THEN ? ELSE last_deployed END
                    WHERE display_id = ?
                    """,
                    (
                        name,
                        owner_id,
                        status,
                        entry_url,
                        files_count,
                        now,
                        int(deployed),
                        now,
                        display_id,
                    ),
                )
                _LOG.info("Updated site %s", display_id)
            conn.commit()

        return self.get(display_id)

    def list_sites(self, owner_id: str | None = None) -> list[Site]:
        """List sites, newest first. Filters by owner when one is given."""
        conn = self._get_conn()
        if owner_id is None:
            rows = conn.execute("SELECT * FROM sites ORDER BY created_at DESC").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM sites WHERE owner_id = ? ORDER BY created_at DESC",
                (owner_id,),
            ).fetchall()
        return [self._row_to_site(row) for row in rows]

    def delete(self, site_id: str) -> bool:
        """Delete a site record. Returns True if a record was removed.

        Callers must remove the site's blob subtree as well.
        """
        conn = self._get_conn()
        with self._lock:
            cursor = conn.execute(
                "DELETE FROM sites WHERE id = ? OR display_id = ?", (site_id, site_id)
            )
            conn.commit()
        return cursor.rowcount > 0

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
