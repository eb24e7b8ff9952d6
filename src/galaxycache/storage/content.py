"""Descriptors handed from storage and upstream to the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Optional


@dataclass(frozen=True)
class CacheInfo:
    """Freshness metadata for a stored asset."""

    last_verified: datetime
    validator: Optional[str] = None


@dataclass
class Content:
    content_type: str
    opener: Callable[[], AsyncIterator[bytes]]
    size: Optional[int] = None
    last_modified: Optional[datetime] = None
    hashes: dict[str, str] = field(default_factory=dict)
    asset_name: Optional[str] = None
    cache_info: Optional[CacheInfo] = None
    closer: Optional[Callable[[], Awaitable[None]]] = None

    @property
    def etag(self) -> Optional[str]:
        digest = self.hashes.get("sha1") or next(iter(self.hashes.values()), None)
        return f'"{digest}"' if digest else None

    def iter_bytes(self) -> AsyncIterator[bytes]:
        return self.opener()

    async def read(self) -> bytes:
        chunks = [chunk async for chunk in self.iter_bytes()]
        return b"".join(chunks)

    async def close(self) -> None:
        if self.closer is not None:
            await self.closer()
