"""Shared fixtures: local blob store, registry and session store in tmp_path."""

import asyncio

import pytest

from launchpad.blob_store import LocalBlobStore
from launchpad.sessions import InMemorySessionStore
from launchpad.site_registry import SiteRegistry
from launchpad.uploads import UploadSessionManager

BASE_URL = "http://testserver"


@pytest.fixture
def store(tmp_path):
    """Create a LocalBlobStore rooted in a temporary directory."""
    return LocalBlobStore(tmp_path / "blobs", bucket="sites", base_url=BASE_URL)


@pytest.fixture
def registry(tmp_path):
    """Create a SiteRegistry with a temporary database."""
    registry = SiteRegistry(db_path=tmp_path / "launchpad.db")
    yield registry
    registry.close()


@pytest.fixture
def sessions():
    return InMemorySessionStore()


@pytest.fixture
def manager(store, registry, sessions):
    """Create an UploadSessionManager over the temporary stores."""
    return UploadSessionManager(store, registry, sessions, base_url=BASE_URL, concurrency=5)


@pytest.fixture
def put_files(store):
    """Write {relative_path: bytes} into a site folder synchronously."""

    def _put(site_id: str, files: dict[str, bytes]) -> None:
        async def write_all():
            await store.ensure_bucket()
            for path, data in files.items():
                await store.put(f"{site_id}/{path}", data)

        asyncio.run(write_all())

    return _put
