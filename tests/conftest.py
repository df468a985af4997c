from __future__ import annotations

import hashlib
from pathlib import Path
from typing import AsyncIterator, Optional

import pytest
from fastapi.testclient import TestClient

from blackroad_cdn.common.settings import GatewaySettings
from blackroad_cdn.gateway.app import create_app
from blackroad_cdn.gateway.side_cache import CachedMetadata, MetadataCache
from blackroad_cdn.gateway.store import (
    ObjectMetadata,
    ObjectStore,
    StoredObject,
    StoreMiss,
    StoreUnavailableError,
    etag_matches,
)


class FakeObjectStore(ObjectStore):
    """In-memory store recording every call it receives."""

    def __init__(self, chunk_size: int = 4) -> None:
        self.objects: dict[str, tuple[bytes, str, Optional[str]]] = {}
        self.get_calls: list[tuple[str, Optional[str]]] = []
        self.head_calls: list[tuple[str, Optional[str]]] = []
        self.released: list[str] = []
        self.unavailable = False
        self._chunk_size = chunk_size

    def put(self, key: str, data: bytes, content_type: Optional[str] = None, etag: Optional[str] = None) -> str:
        etag = etag or f'"{hashlib.sha256(data).hexdigest()[:16]}"'
        self.objects[key] = (data, etag, content_type)
        return etag

    async def _chunks(self, data: bytes) -> AsyncIterator[bytes]:
        for offset in range(0, len(data), self._chunk_size):
            yield data[offset : offset + self._chunk_size]

    async def get(self, key: str, match_etag: Optional[str] = None):
        self.get_calls.append((key, match_etag))
        if self.unavailable:
            raise StoreUnavailableError("fake store down")
        entry = self.objects.get(key)
        if entry is None:
            return StoreMiss.NOT_FOUND
        data, etag, content_type = entry
        if etag_matches(match_etag, etag):
            return StoreMiss.NOT_MODIFIED
        return StoredObject(
            size=len(data),
            etag=etag,
            content_type=content_type,
            body=self._chunks(data),
            release=lambda: self.released.append(key),
        )

    async def head(self, key: str, match_etag: Optional[str] = None):
        self.head_calls.append((key, match_etag))
        if self.unavailable:
            raise StoreUnavailableError("fake store down")
        entry = self.objects.get(key)
        if entry is None:
            return StoreMiss.NOT_FOUND
        data, etag, content_type = entry
        if etag_matches(match_etag, etag):
            return StoreMiss.NOT_MODIFIED
        return ObjectMetadata(size=len(data), etag=etag, content_type=content_type)

    def describe(self) -> dict[str, object]:
        return {"backend": "fake", "objects": len(self.objects)}


class FakeMetadataCache(MetadataCache):
    def __init__(self) -> None:
        self.entries: dict[str, CachedMetadata] = {}
        self.lookups: list[str] = []
        self.closed = False

    async def lookup(self, key: str) -> Optional[CachedMetadata]:
        self.lookups.append(key)
        return self.entries.get(key)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings() -> GatewaySettings:
    return GatewaySettings(_env_file=None, metrics_token="metrics-secret")


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def side_cache() -> FakeMetadataCache:
    return FakeMetadataCache()


@pytest.fixture
def client(settings: GatewaySettings, store: FakeObjectStore, side_cache: FakeMetadataCache) -> TestClient:
    app = create_app(settings=settings, store=store, side_cache=side_cache)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def unbound_client(settings: GatewaySettings) -> TestClient:
    app = create_app(settings=settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def media_dir(tmp_path: Path) -> Path:
    root = tmp_path / "media"
    (root / "images").mkdir(parents=True)
    (root / "images" / "logo.png").write_bytes(b"\x89PNG-fake")
    (root / "weights.bin").write_bytes(b"\x00" * 10)
    return root
