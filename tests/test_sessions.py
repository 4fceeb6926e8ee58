"""Tests for upload session state and its stores."""

import asyncio
import sqlite3
import time

import pytest

from launchpad.sessions import InMemorySessionStore, SqliteSessionStore, UploadSession


@pytest.fixture(params=["memory", "sqlite"])
def session_store(request, tmp_path):
    """Both session store implementations."""
    if request.param == "memory":
        return InMemorySessionStore()
    return SqliteSessionStore(db_path=tmp_path / "sessions.db")


class TestUploadSession:
    """Tests for UploadSession properties."""

    def test_completeness(self):
        """A session is complete once every chunk number is received."""
        session = UploadSession(site_id="site-1", total_chunks=3, received_chunks={1, 3})
        assert not session.is_complete
        assert session.missing_chunks == [2]

        session.received_chunks.add(2)
        assert session.is_complete
        assert session.missing_chunks == []

    def test_files_written_counts_distinct_paths(self):
        """Rewriting a path does not count twice."""
        session = UploadSession(site_id="site-1", total_chunks=1)
        session.written_paths.update({"site-1/a.js", "site-1/b.js"})
        session.written_paths.add("site-1/a.js")
        assert session.files_written == 2

    def test_expiry(self):
        """Sessions older than the TTL are expired."""
        session = UploadSession(site_id="site-1", total_chunks=1, created_at=1000.0)
        assert not session.is_expired(ttl=60, now=1050.0)
        assert session.is_expired(ttl=60, now=1061.0)

    def test_expiry_follows_activity(self):
        """A session busy past the TTL since creation is not expired."""
        session = UploadSession(site_id="site-1", total_chunks=9, created_at=1000.0)
        session.merge_chunk(5, 9, ["site-1/e.js"], True, now=5000.0)

        assert session.last_activity == 5000.0
        assert not session.is_expired(ttl=60, now=5050.0)
        assert session.is_expired(ttl=60, now=5061.0)

    def test_merge_chunk_only_grows(self):
        """Merging adds keys and chunk numbers and keeps the larger total."""
        session = UploadSession(site_id="site-1", total_chunks=2, received_chunks={1}, written_paths={"site-1/a.js"})

        session.merge_chunk(3, 4, ["site-1/c.js"], True)
        session.merge_chunk(2, 2, ["site-1/b.js"], False)

        assert session.received_chunks == {1, 3}
        assert session.written_paths == {"site-1/a.js", "site-1/b.js", "site-1/c.js"}
        assert session.total_chunks == 4


class TestSessionStores:
    """Behaviour shared by the in-memory and SQLite stores."""

    @pytest.mark.asyncio
    async def test_get_missing(self, session_store):
        """get returns None for unknown sites."""
        assert await session_store.get("site-1") is None

    @pytest.mark.asyncio
    async def test_put_and_get(self, session_store):
        """put stores a session that get returns."""
        session = UploadSession(
            site_id="site-1",
            total_chunks=2,
            received_chunks={1},
            written_paths={"site-1/index.html"},
            owner_id="user-1",
            site_name="Portfolio",
            created_at=time.time(),
        )
        await session_store.put(session)

        loaded = await session_store.get("site-1")
        assert loaded == session

    @pytest.mark.asyncio
    async def test_returned_session_is_a_copy(self, session_store):
        """Mutating a loaded session does not change the store without put."""
        await session_store.put(UploadSession(site_id="site-1", total_chunks=2))
        loaded = await session_store.get("site-1")
        loaded.received_chunks.add(1)

        assert (await session_store.get("site-1")).received_chunks == set()

    @pytest.mark.asyncio
    async def test_delete(self, session_store):
        """delete removes a session and reports whether one existed."""
        await session_store.put(UploadSession(site_id="site-1", total_chunks=1))
        assert await session_store.delete("site-1") is True
        assert await session_store.delete("site-1") is False
        assert await session_store.get("site-1") is None

    @pytest.mark.asyncio
    async def test_record_chunk_creates_session(self, session_store):
        """The first recorded chunk creates the session with its metadata."""
        session = await session_store.record_chunk(
            "site-1", 1, 3, ["site-1/index.html"], chunk_complete=True, owner_id="user-1", site_name="Portfolio"
        )

        assert session.received_chunks == {1}
        assert session.owner_id == "user-1"
        assert await session_store.get("site-1") == session

    @pytest.mark.asyncio
    async def test_record_chunk_merges(self, session_store):
        """Later chunks add to what is stored; a partial chunk adds only its keys."""
        await session_store.record_chunk("site-1", 1, 3, ["site-1/a.js"], chunk_complete=True)
        await session_store.record_chunk("site-1", 2, 3, ["site-1/b.js"], chunk_complete=False, site_name="Late")
        session = await session_store.record_chunk("site-1", 3, 3, ["site-1/c.js"], chunk_complete=True)

        assert session.received_chunks == {1, 3}
        assert session.files_written == 3
        assert session.site_name == "Late"
        assert (await session_store.get("site-1")).missing_chunks == [2]

    @pytest.mark.asyncio
    async def test_list_all(self, session_store):
        """list_all returns every session."""
        await session_store.put(UploadSession(site_id="site-1", total_chunks=1))
        await session_store.put(UploadSession(site_id="site-2", total_chunks=4))
        sites = {s.site_id for s in await session_store.list_all()}
        assert sites == {"site-1", "site-2"}


class TestSqliteSessionStore:
    """SQLite-specific behaviour."""

    @pytest.mark.asyncio
    async def test_shared_between_instances(self, tmp_path):
        """Two stores on one file see the same sessions."""
        db_path = tmp_path / "shared.db"
        await SqliteSessionStore(db_path).put(UploadSession(site_id="site-1", total_chunks=3, received_chunks={2}))

        loaded = await SqliteSessionStore(db_path).get("site-1")
        assert loaded.received_chunks == {2}

    @pytest.mark.asyncio
    async def test_corrupt_progress_resets(self, tmp_path):
        """Unreadable progress columns load as an empty session."""
        db_path = tmp_path / "corrupt.db"
        store = SqliteSessionStore(db_path)
        await store.put(UploadSession(site_id="site-1", total_chunks=2, received_chunks={1}))

        conn = sqlite3.connect(db_path)
        conn.execute("UPDATE upload_sessions SET received_chunks = 'not json'")
        conn.commit()
        conn.close()

        loaded = await store.get("site-1")
        assert loaded.received_chunks == set()
        assert loaded.total_chunks == 2

    @pytest.mark.asyncio
    async def test_concurrent_chunks_from_two_stores(self, tmp_path):
        """Chunks recorded through separate stores on one file are all kept."""
        db_path = tmp_path / "shared.db"
        stores = [SqliteSessionStore(db_path), SqliteSessionStore(db_path)]

        await asyncio.gather(*(
            stores[n % 2].record_chunk("site-1", n, 20, [f"site-1/f{n}.js"], chunk_complete=True)
            for n in range(1, 21)
        ))

        session = await stores[0].get("site-1")
        assert session.received_chunks == set(range(1, 21))
        assert session.files_written == 20
        assert session.is_complete

    @pytest.mark.asyncio
    async def test_adds_activity_column_to_old_tables(self, tmp_path):
        """Tables created without last_activity are migrated on first use."""
        db_path = tmp_path / "old.db"
        conn = sqlite3.connect(db_path)
        conn.execute("""
            CREATE TABLE upload_sessions (
                site_id TEXT PRIMARY KEY,
                total_chunks INTEGER NOT NULL,
                received_chunks TEXT NOT NULL DEFAULT '[]',
                written_paths TEXT NOT NULL DEFAULT '[]',
                owner_id TEXT,
                site_name TEXT,
                created_at REAL NOT NULL
            )
        """)
        conn.execute("INSERT INTO upload_sessions (site_id, total_chunks, created_at) VALUES ('site-1', 2, 1000.0)")
        conn.commit()
        conn.close()

        loaded = await SqliteSessionStore(db_path).get("site-1")

        assert loaded.last_activity == 1000.0
