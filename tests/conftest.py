from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from galaxycache.common.settings import ProxySettings
from galaxycache.storage.blobs import BlobStore
from galaxycache.storage.metadata import MetadataStore, create_engine


UPSTREAM_URL = "https://galaxy.example/"
GITHUB_URL = "https://github.example"
PUBLIC_BASE_URL = "http://proxy.test"
REPOSITORY = "my-repo"


@pytest.fixture
def settings(tmp_path: Path) -> ProxySettings:
    return ProxySettings(
        repository_name=REPOSITORY,
        public_base_url=PUBLIC_BASE_URL,
        upstream_url=UPSTREAM_URL,
        github_url=GITHUB_URL,
        storage_path=tmp_path / "blobs",
        uploads_path=tmp_path / "uploads",
        metadata_database_url=(tmp_path / "metadata.db").as_posix(),
        metadata_max_age_seconds=3600,
        log_level="DEBUG",
    )


@pytest.fixture
def blob_store(settings: ProxySettings) -> BlobStore:
    return BlobStore(settings.storage_path, settings.uploads_path)


@pytest_asyncio.fixture
async def store(settings: ProxySettings, blob_store: BlobStore):
    engine = create_engine(settings.metadata_database_url)
    metadata_store = MetadataStore(engine, blob_store, settings.hash_algorithms)
    await metadata_store.ensure_schema()
    try:
        yield metadata_store
    finally:
        await engine.dispose()
