"""httpx client for fetching content from the upstream galaxy and GitHub."""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import AsyncIterator, Optional

import httpx
import structlog


LOGGER = structlog.get_logger("galaxycache.upstream")

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class UpstreamError(RuntimeError):
    """The upstream could not be reached or answered with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_http_date(value: datetime) -> str:
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


class UpstreamResponse:
    """A streaming upstream response; the connection is released by ``aclose``."""

    def __init__(self, response: Optional[httpx.Response], url: str) -> None:
        self._response = response
        self.url = url

    @property
    def not_modified(self) -> bool:
        return self._response is None

    @property
    def content_type(self) -> str:
        if self._response is None:
            return DEFAULT_CONTENT_TYPE
        return self._response.headers.get("content-type", DEFAULT_CONTENT_TYPE)

    @property
    def etag(self) -> Optional[str]:
        return self._response.headers.get("etag") if self._response is not None else None

    @property
    def last_modified(self) -> Optional[datetime]:
        if self._response is None:
            return None
        return parse_http_date(self._response.headers.get("last-modified"))

    @property
    def attributes(self) -> dict[str, object]:
        return {"etag": self.etag, "last_modified": self.last_modified}

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        if self._response is None:
            return
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._response is not None and not self._response.is_closed:
            await self._response.aclose()

    async def __aenter__(self) -> "UpstreamResponse":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


class UpstreamClient:
    def __init__(self, http: httpx.AsyncClient, upstream_url: str, github_url: str) -> None:
        self._http = http
        self._bases = {
            "upstream": upstream_url if upstream_url.endswith("/") else upstream_url + "/",
            "github": github_url.rstrip("/") + "/",
        }

    def url_for(self, uri: str, origin: str = "upstream") -> str:
        try:
            base = self._bases[origin]
        except KeyError as exc:
            raise UpstreamError(f"Unknown upstream origin {origin!r}") from exc
        return base + uri.lstrip("/")

    async def fetch(
        self,
        uri: str,
        *,
        origin: str = "upstream",
        validator: Optional[str] = None,
        last_modified: Optional[datetime] = None,
    ) -> UpstreamResponse:
        """GET ``uri`` from the origin, conditionally when a validator or date is supplied.

        A 304 answer yields an ``UpstreamResponse`` with ``not_modified`` set and no body.
        """

        url = self.url_for(uri, origin)
        headers: dict[str, str] = {}
        if validator:
            headers["If-None-Match"] = validator
        if last_modified is not None:
            headers["If-Modified-Since"] = format_http_date(last_modified)
        LOGGER.debug("upstream_request", url=url, conditional=bool(headers))
        request = self._http.build_request("GET", url, headers=headers)
        try:
            response = await self._http.send(request, stream=True, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Upstream request to {url} failed: {exc}") from exc

        if response.status_code == httpx.codes.NOT_MODIFIED:
            await response.aclose()
            return UpstreamResponse(None, url)
        if response.status_code >= 400:
            await response.aclose()
            raise UpstreamError(
                f"Upstream answered {response.status_code} for {url}",
                status_code=response.status_code,
            )
        return UpstreamResponse(response, url)
