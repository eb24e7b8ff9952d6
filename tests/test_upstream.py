from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from galaxycache.proxy.upstream import UpstreamClient, UpstreamError, format_http_date, parse_http_date
from tests.utils.upstream import FakeGalaxy


@pytest.mark.asyncio
async def test_fetch_streams_body_and_exposes_validators() -> None:
    galaxy = FakeGalaxy()
    galaxy.add("https://galaxy.example/api/v1/roles/?name=x", b"{}", etag='"e1"', last_modified="Tue, 02 Jan 2024 03:04:05 GMT")
    async with httpx.AsyncClient(transport=galaxy.transport()) as http:
        client = UpstreamClient(http, "https://galaxy.example", "https://github.example")
        response = await client.fetch("api/v1/roles/?name=x")
        body = b"".join([chunk async for chunk in response.iter_bytes()])

    assert body == b"{}"
    assert response.attributes == {
        "etag": '"e1"',
        "last_modified": datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
    }
    assert "if-none-match" not in galaxy.requests[0].headers


@pytest.mark.asyncio
async def test_conditional_fetch_reports_not_modified() -> None:
    galaxy = FakeGalaxy()
    galaxy.add("https://galaxy.example/api/", b"{}", etag='"e1"')
    async with httpx.AsyncClient(transport=galaxy.transport()) as http:
        client = UpstreamClient(http, "https://galaxy.example/", "https://github.example")
        response = await client.fetch("api/", validator='"e1"')

    assert response.not_modified
    assert [chunk async for chunk in response.iter_bytes()] == []


@pytest.mark.asyncio
async def test_error_status_raises_upstream_error() -> None:
    async with httpx.AsyncClient(transport=FakeGalaxy().transport()) as http:
        client = UpstreamClient(http, "https://galaxy.example/", "https://github.example")
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch("api/missing/")

    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_transport_failure_raises_upstream_error() -> None:
    galaxy = FakeGalaxy(failing=True)
    async with httpx.AsyncClient(transport=galaxy.transport()) as http:
        client = UpstreamClient(http, "https://galaxy.example/", "https://github.example")
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch("api/")

    assert exc_info.value.status_code is None


def test_url_for_selects_origin() -> None:
    client = UpstreamClient(httpx.AsyncClient(), "https://galaxy.example/", "https://github.example/")
    assert client.url_for("download/a-b-1.tar.gz") == "https://galaxy.example/download/a-b-1.tar.gz"
    assert client.url_for("acme/web/archive/1.tar.gz", "github") == "https://github.example/acme/web/archive/1.tar.gz"
    with pytest.raises(UpstreamError):
        client.url_for("x", "ftp")


def test_http_dates() -> None:
    moment = datetime(2024, 6, 3, 8, 30, tzinfo=timezone.utc)
    assert format_http_date(moment) == "Mon, 03 Jun 2024 08:30:00 GMT"
    assert parse_http_date("Mon, 03 Jun 2024 08:30:00 GMT") == moment
    assert parse_http_date("not a date") is None
    assert parse_http_date(None) is None
