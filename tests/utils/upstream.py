"""Fake upstream galaxy and byte-stream helpers shared by tests."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx


async def byte_stream(*parts: bytes):
    for part in parts:
        yield part


class TrackingStream:
    """Async byte iterator that records whether it was closed, optionally failing mid-stream."""

    def __init__(self, parts: list[bytes], fail_after: Optional[int] = None) -> None:
        self._parts = list(parts)
        self._fail_after = fail_after
        self._served = 0
        self.closed = False

    def __aiter__(self) -> "TrackingStream":
        return self

    async def __anext__(self) -> bytes:
        if self._fail_after is not None and self._served >= self._fail_after:
            raise ConnectionError("upstream connection dropped")
        if not self._parts:
            raise StopAsyncIteration
        self._served += 1
        return self._parts.pop(0)

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class UpstreamDocument:
    body: bytes
    content_type: str = "application/json"
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    status_code: int = 200


@dataclass
class FakeGalaxy:
    """httpx.MockTransport handler serving canned documents keyed by absolute URL."""

    documents: dict[str, UpstreamDocument] = field(default_factory=dict)
    calls: Counter = field(default_factory=Counter)
    requests: list[httpx.Request] = field(default_factory=list)
    failing: bool = False
    on_request: Optional[Callable[[httpx.Request], None]] = None

    def add(self, url: str, body: bytes, **kwargs) -> UpstreamDocument:
        document = UpstreamDocument(body=body, **kwargs)
        self.documents[url] = document
        return document

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls[str(request.url)] += 1
        self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)
        if self.failing:
            raise httpx.ConnectError("upstream unreachable", request=request)
        document = self.documents.get(str(request.url))
        if document is None:
            return httpx.Response(404, text="not found")
        if document.etag and request.headers.get("if-none-match") == document.etag:
            return httpx.Response(304, headers={"ETag": document.etag})
        headers = {"Content-Type": document.content_type}
        if document.etag:
            headers["ETag"] = document.etag
        if document.last_modified:
            headers["Last-Modified"] = document.last_modified
        return httpx.Response(document.status_code, content=document.body, headers=headers)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())
