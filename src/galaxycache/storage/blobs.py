"""Content-addressable blob storage on the local filesystem."""

from __future__ import annotations

import asyncio
import hashlib
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional, Sequence
from uuid import uuid4

import structlog


LOGGER = structlog.get_logger("galaxycache.blobs")

CHUNK_SIZE = 1024 * 1024


class BlobIntegrityError(RuntimeError):
    """Raised when stored blob bytes disagree with the digest they are addressed by."""


@dataclass
class TempBlob:
    """Bytes staged on disk with their digests, waiting to be committed."""

    path: Path
    algorithms: Sequence[str]
    hashers: dict[str, "hashlib._Hash"] = field(default_factory=dict)
    size: int = 0
    handle: Optional[BinaryIO] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.hashers:
            self.hashers = {name: hashlib.new(name) for name in self.algorithms}

    async def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        if self.handle is None:
            raise ValueError(f"Temp blob {self.path.name} is closed for writing")
        await asyncio.to_thread(self.handle.write, chunk)
        for hasher in self.hashers.values():
            hasher.update(chunk)
        self.size += len(chunk)

    @property
    def hashes(self) -> dict[str, str]:
        return {name: hasher.hexdigest() for name, hasher in self.hashers.items()}

    @property
    def blob_ref(self) -> str:
        primary = self.algorithms[0]
        return f"{primary}:{self.hashers[primary].hexdigest()}"


async def iter_file(path: Path) -> AsyncIterator[bytes]:
    loop = asyncio.get_running_loop()
    with path.open("rb") as handle:
        while True:
            data = await loop.run_in_executor(None, handle.read, CHUNK_SIZE)
            if not data:
                break
            yield data


class BlobStore:
    """Immutable blobs addressed as ``<algorithm>:<hex digest>``.

    Bytes are first staged as a temp blob under ``uploads_path`` while every
    configured digest is computed, then moved into place by ``commit``. The
    temp file is always removed when the staging scope exits.
    """

    def __init__(self, storage_path: Path, uploads_path: Path) -> None:
        self._storage_path = Path(storage_path)
        self._uploads_path = Path(uploads_path)

    @property
    def storage_path(self) -> Path:
        return self._storage_path

    @asynccontextmanager
    async def temp_blob(self, source: AsyncIterator[bytes], algorithms: Sequence[str]) -> AsyncIterator[TempBlob]:
        self._uploads_path.mkdir(parents=True, exist_ok=True)
        path = self._uploads_path / f"{uuid4().hex}.upload"
        staged = TempBlob(path=path, algorithms=tuple(algorithms), handle=path.open("wb"))
        try:
            try:
                async for chunk in source:
                    await staged.append(chunk)
            finally:
                staged.handle.close()
                staged.handle = None
                aclose = getattr(source, "aclose", None)
                if aclose is not None:
                    await aclose()
            yield staged
        finally:
            path.unlink(missing_ok=True)

    def blob_path(self, blob_ref: str) -> Path:
        algorithm, _, value = blob_ref.partition(":")
        if not value or algorithm not in hashlib.algorithms_guaranteed:
            raise BlobIntegrityError(f"Malformed blob reference: {blob_ref!r}")
        if any(ch not in "0123456789abcdef" for ch in value):
            raise BlobIntegrityError(f"Malformed blob reference: {blob_ref!r}")
        return self._storage_path / algorithm / value[:2] / value

    async def commit(self, staged: TempBlob) -> str:
        blob_ref = staged.blob_ref
        target = self.blob_path(blob_ref)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            await self.verify(blob_ref)
            LOGGER.debug("blob_deduplicated", blob_ref=blob_ref, size=staged.size)
            return blob_ref
        await asyncio.to_thread(os.replace, staged.path, target)
        LOGGER.debug("blob_committed", blob_ref=blob_ref, size=staged.size)
        return blob_ref

    def exists(self, blob_ref: str) -> bool:
        return self.blob_path(blob_ref).exists()

    async def verify(self, blob_ref: str) -> None:
        algorithm, _, expected = blob_ref.partition(":")
        path = self.blob_path(blob_ref)
        hasher = hashlib.new(algorithm)
        async for chunk in iter_file(path):
            hasher.update(chunk)
        if hasher.hexdigest() != expected:
            raise BlobIntegrityError(f"Stored blob {blob_ref} failed integrity check")

    def open(self, blob_ref: str) -> AsyncIterator[bytes]:
        path = self.blob_path(blob_ref)
        if not path.exists():
            raise BlobIntegrityError(f"Blob {blob_ref} has no stored content")
        return iter_file(path)
