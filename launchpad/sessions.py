"""Upload session state for chunked site uploads.

One session tracks one logical upload split across several requests. It only
ever grows: chunk numbers are added to ``received_chunks`` and written keys
to ``written_paths``. Keys are tracked rather than a bare counter so that a
retried chunk rewrites its files without counting them twice. The session
is discarded when the upload is finalized or when the sweeper finds no
chunk recorded for longer than SESSION_TTL.

Two stores implement the same async interface:

- ``InMemorySessionStore`` for a single-instance deployment.
- ``SqliteSessionStore`` for several workers sharing one database file.

The store is injected into the upload manager; nothing in this module is a
process-wide singleton.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from pathlib import Path

from . import config

_LOG = logging.getLogger(__name__)


@dataclass
class UploadSession:
    """Progress of one chunked upload.

    Attributes:
        site_id: Storage folder key the upload writes into.
        total_chunks: Number of chunks the client announced.
        received_chunks: Chunk numbers acknowledged so far.
        written_paths: Keys successfully written across all chunks.
        owner_id: Owner of the upload, or None for anonymous.
        site_name: Display name sent with the first chunk.
        created_at: Unix timestamp of the first chunk.
        last_activity: Unix timestamp of the latest recorded chunk; expiry
            is measured from here.
    """

    site_id: str
    total_chunks: int
    received_chunks: set[int] = field(default_factory=set)
    written_paths: set[str] = field(default_factory=set)
    owner_id: str | None = None
    site_name: str | None = None
    created_at: float = field(default_factory=time.time)
    last_activity: float | None = None

    def __post_init__(self) -> None:
        if self.last_activity is None:
            self.last_activity = self.created_at

    @property
    def files_written(self) -> int:
        return len(self.written_paths)

    @property
    def is_complete(self) -> bool:
        return len(self.received_chunks) >= self.total_chunks

    @property
    def missing_chunks(self) -> list[int]:
        return [n for n in range(1, self.total_chunks + 1) if n not in self.received_chunks]

    def is_expired(self, ttl: float, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) - self.last_activity > ttl

    def merge_chunk(
        self,
        chunk_number: int,
        total_chunks: int,
        written_keys: Iterable[str],
        chunk_complete: bool,
        owner_id: str | None = None,
        site_name: str | None = None,
        now: float | None = None,
    ) -> None:
        """Fold one chunk's outcome into the session. Progress only grows."""
        if total_chunks != self.total_chunks:
            _LOG.warning(
                "Site %s announced %d chunks, session expected %d; keeping the larger",
                self.site_id, total_chunks, self.total_chunks,
            )
            self.total_chunks = max(self.total_chunks, total_chunks)
        self.written_paths.update(written_keys)
        if chunk_complete:
            self.received_chunks.add(chunk_number)
        self.owner_id = self.owner_id or owner_id
        self.site_name = self.site_name or site_name
        self.last_activity = now if now is not None else time.time()


class SessionStore(ABC):
    """Keyed storage for in-flight upload sessions."""

    @abstractmethod
    async def record_chunk(
        self,
        site_id: str,
        chunk_number: int,
        total_chunks: int,
        written_keys: Iterable[str],
        chunk_complete: bool,
        owner_id: str | None = None,
        site_name: str | None = None,
    ) -> UploadSession:
        """Create or update a site's session with one chunk, atomically.

        Concurrent calls for the same site, from any process sharing the
        store, never lose each other's chunk numbers or written keys.

        Returns:
            The session as stored after the merge.
        """

    @abstractmethod
    async def get(self, site_id: str) -> UploadSession | None:
        """Return the session for a site, or None."""

    @abstractmethod
    async def put(self, session: UploadSession) -> None:
        """Insert or replace a session."""

    @abstractmethod
    async def delete(self, site_id: str) -> bool:
        """Remove a session. Returns True if one existed."""

    @abstractmethod
    async def list_all(self) -> list[UploadSession]:
        """Return every stored session (used by the sweeper)."""


class InMemorySessionStore(SessionStore):
    """Session store for a single process.

    Returns copies so callers cannot mutate stored state without ``put``.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, UploadSession] = {}

    @staticmethod
    def _copy(session: UploadSession) -> UploadSession:
        return replace(
            session,
            received_chunks=set(session.received_chunks),
            written_paths=set(session.written_paths),
        )

    async def get(self, site_id: str) -> UploadSession | None:
        session = self._sessions.get(site_id)
        return self._copy(session) if session else None

    async def put(self, session: UploadSession) -> None:
        self._sessions[session.site_id] = self._copy(session)

    async def record_chunk(
        self,
        site_id: str,
        chunk_number: int,
        total_chunks: int,
        written_keys: Iterable[str],
        chunk_complete: bool,
        owner_id: str | None = None,
        site_name: str | None = None,
    ) -> UploadSession:
        # No await between read and write, so this is atomic on the event loop
        session = self._sessions.get(site_id)
        if session is None:
            session = self._sessions[site_id] = UploadSession(
                site_id=site_id,
                total_chunks=total_chunks,
                owner_id=owner_id,
                site_name=site_name,
            )
        session.merge_chunk(chunk_number, total_chunks, written_keys, chunk_complete, owner_id, site_name)
        return self._copy(session)

    async def delete(self, site_id: str) -> bool:
        return self._sessions.pop(site_id, None) is not None

    async def list_all(self) -> list[UploadSession]:
        return [self._copy(s) for s in self._sessions.values()]

    def __len__(self) -> int:
        return len(self._sessions)


class SqliteSessionStore(SessionStore):
    """Session store shared between processes through an SQLite file."""

    def __init__(self, db_path: Path | None = None) -> None:
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
                # Transactions are opened explicitly (BEGIN IMMEDIATE)
                isolation_level=None,
            )
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")

        if not self._initialized:
            with self._lock:
                if not self._initialized:
                    self._local.conn.execute("""
                        CREATE TABLE IF NOT EXISTS upload_sessions (
                            site_id TEXT PRIMARY KEY,
                            total_chunks INTEGER NOT NULL,
                            received_chunks TEXT NOT NULL DEFAULT '[]',
                            written_paths TEXT NOT NULL DEFAULT '[]',
                            owner_id TEXT,
                            site_name TEXT,
                            created_at REAL NOT NULL,
                            last_activity REAL
                        )
                    """)
                    try:
                        self._local.conn.execute(
                            "ALTER TABLE upload_sessions ADD COLUMN last_activity REAL"
                        )
                        _LOG.info("Added column last_activity to upload_sessions")
                    except sqlite3.OperationalError:
                        pass  # Column already exists
                    self._local.conn.commit()
                    self._initialized = True

        return self._local.conn

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> UploadSession:
        try:
            chunks = set(json.loads(row["received_chunks"]))
            paths = set(json.loads(row["written_paths"]))
        except (json.JSONDecodeError, TypeError):
            _LOG.warning("Corrupt progress for session %s, resetting", row["site_id"])
            chunks, paths = set(), set()
        return UploadSession(
            site_id=row["site_id"],
            total_chunks=row["total_chunks"],
            received_chunks=chunks,
            written_paths=paths,
            owner_id=row["owner_id"],
            site_name=row["site_name"],
            created_at=row["created_at"],
            last_activity=row["last_activity"],
        )

    def _get_sync(self, site_id: str) -> UploadSession | None:
        row = self._get_conn().execute(
            "SELECT * FROM upload_sessions WHERE site_id = ?", (site_id,)
        ).fetchone()
        return self._row_to_session(row) if row else None

    @staticmethod
    def _write_row(conn: sqlite3.Connection, session: UploadSession) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO upload_sessions (
                site_id, total_chunks, received_chunks, written_paths,
                owner_id, site_name, created_at, last_activity
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.site_id,
                session.total_chunks,
                json.dumps(sorted(session.received_chunks)),
                json.dumps(sorted(session.written_paths)),
                session.owner_id,
                session.site_name,
                session.created_at,
                session.last_activity,
            ),
        )

    def _put_sync(self, session: UploadSession) -> None:
        self._write_row(self._get_conn(), session)

    def _record_chunk_sync(
        self,
        site_id: str,
        chunk_number: int,
        total_chunks: int,
        written_keys: list[str],
        chunk_complete: bool,
        owner_id: str | None,
        site_name: str | None,
    ) -> UploadSession:
        conn = self._get_conn()
        # Take the write lock before reading so other processes wait for the merge
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute(
                "SELECT * FROM upload_sessions WHERE site_id = ?", (site_id,)
            ).fetchone()
            if row is None:
                session = UploadSession(
                    site_id=site_id,
                    total_chunks=total_chunks,
                    owner_id=owner_id,
                    site_name=site_name,
                )
            else:
                session = self._row_to_session(row)
            session.merge_chunk(chunk_number, total_chunks, written_keys, chunk_complete, owner_id, site_name)
            self._write_row(conn, session)
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        return session

    def _delete_sync(self, site_id: str) -> bool:
        conn = self._get_conn()
        cursor = conn.execute("DELETE FROM upload_sessions WHERE site_id = ?", (site_id,))
        conn.commit()
        return cursor.rowcount > 0

    def _list_sync(self) -> list[UploadSession]:
        rows = self._get_conn().execute("SELECT * FROM upload_sessions").fetchall()
        return [self._row_to_session(row) for row in rows]

    async def get(self, site_id: str) -> UploadSession | None:
        return await asyncio.to_thread(self._get_sync, site_id)

    async def put(self, session: UploadSession) -> None:
        await asyncio.to_thread(self._put_sync, session)

    async def record_chunk(
        self,
        site_id: str,
        chunk_number: int,
        total_chunks: int,
        written_keys: Iterable[str],
        chunk_complete: bool,
        owner_id: str | None = None,
        site_name: str | None = None,
    ) -> UploadSession:
        return await asyncio.to_thread(
            self._record_chunk_sync,
            site_id, chunk_number, total_chunks, list(written_keys),
            chunk_complete, owner_id, site_name,
        )

    async def delete(self, site_id: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, site_id)

    async def list_all(self) -> list[UploadSession]:
        return await asyncio.to_thread(self._list_sync)


def create_session_store() -> SessionStore:
    """Build the session store selected by SESSION_BACKEND."""
    if config.SESSION_BACKEND == "sqlite":
        _LOG.info("Using shared SQLite upload sessions at %s", config.DB_PATH)
        return SqliteSessionStore(config.DB_PATH)
    return InMemorySessionStore()
