from __future__ import annotations

import json

import pytest

from galaxycache.proxy.rewrite import (
    JsonContentReplacer,
    JsonPrependReplacer,
    ReplacerStream,
    RewriteTargets,
    StringReplacer,
    no_rewrite,
    rewrite_stream,
    role_version_list_rewrite,
    upstream_url_rewrite,
)
from tests.utils.upstream import TrackingStream, byte_stream


TARGETS = RewriteTargets(
    upstream_url="https://galaxy.example/",
    repository_url="http://proxy.test/repository/my-repo",
    repository_path="/repository/my-repo",
    github_url="https://github.example",
)


def _split(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


async def _collect(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


@pytest.mark.asyncio
@pytest.mark.parametrize("chunk_size", [1, 3, 7, 64, 4096])
async def test_upstream_url_rewrite_replaces_every_occurrence(chunk_size: int) -> None:
    body = json.dumps(
        {
            "next": "https://galaxy.example/api/v1/roles/?page=2",
            "results": [
                {"url": "https://galaxy.example/api/v1/roles/1/"},
                {"url": "https://galaxy.example/api/v1/roles/2/", "summary": "plain text"},
            ],
        }
    ).encode()

    output = await _collect(rewrite_stream(upstream_url_rewrite(TARGETS), byte_stream(*_split(body, chunk_size))))

    assert output.count(b"https://galaxy.example/") == 0
    assert output.count(b"http://proxy.test/repository/my-repo/") == 3
    assert json.loads(output)["next"] == "http://proxy.test/repository/my-repo/api/v1/roles/?page=2"


@pytest.mark.asyncio
async def test_string_replacer_handles_partial_match_at_stream_end() -> None:
    replacer = StringReplacer("https://galaxy.example/", "X/")
    output = await _collect(ReplacerStream(replacer).rewrite(byte_stream(b"see https://galaxy.exa")))
    assert output == b"see https://galaxy.exa"


def test_string_replacer_rejects_empty_target() -> None:
    with pytest.raises(ValueError):
        StringReplacer("", "anything")


@pytest.mark.asyncio
async def test_role_version_list_prepends_repository_path_to_next_link() -> None:
    body = b'{"count": 12, "next_link": "/api/v2/roles/?page=2", "results": []}'

    output = await _collect(rewrite_stream(role_version_list_rewrite(TARGETS), byte_stream(body)))

    assert json.loads(output)["next_link"] == "/repository/my-repo/api/v2/roles/?page=2"


@pytest.mark.asyncio
@pytest.mark.parametrize("chunk_size", [1, 2, 5, 1024])
async def test_role_version_list_rewrites_download_urls_only(chunk_size: int) -> None:
    payload = {
        "next_link": None,
        "results": [
            {
                "name": "1.0.0",
                "download_url": "https://github.example/acme/nginx/archive/1.0.0.tar.gz",
                "source": "https://github.example/acme/nginx",
            },
            {
                "name": "1.1.0",
                "download_url": "https://github.example/acme/nginx/archive/1.1.0.tar.gz",
            },
        ],
    }
    body = json.dumps(payload).encode()

    output = await _collect(
        rewrite_stream(role_version_list_rewrite(TARGETS), byte_stream(*_split(body, chunk_size)))
    )
    parsed = json.loads(output)

    assert parsed["next_link"] is None
    assert [item["download_url"] for item in parsed["results"]] == [
        "http://proxy.test/repository/my-repo/download/acme/nginx/archive/1.0.0.tar.gz",
        "http://proxy.test/repository/my-repo/download/acme/nginx/archive/1.1.0.tar.gz",
    ]
    assert parsed["results"][0]["source"] == "https://github.example/acme/nginx"


@pytest.mark.asyncio
async def test_json_field_replacer_ignores_matching_text_in_other_members() -> None:
    body = b'{"description": "next_link: /api/", "next_link_hint": "/api/x", "next_link": "/api/y"}'

    output = await _collect(ReplacerStream(JsonPrependReplacer("next_link", "/repository/r")).rewrite(byte_stream(body)))
    parsed = json.loads(output)

    assert parsed == {
        "description": "next_link: /api/",
        "next_link_hint": "/api/x",
        "next_link": "/repository/r/api/y",
    }


@pytest.mark.asyncio
async def test_json_content_replacer_preserves_escaped_values() -> None:
    body = b'{"download_url": "https:\\/\\/github.example\\/a\\/b.tar.gz", "name": "quote \\" here"}'

    output = await _collect(
        ReplacerStream(JsonContentReplacer("download_url", "https://github.example", "http://proxy")).rewrite(
            byte_stream(body)
        )
    )
    parsed = json.loads(output)

    assert parsed["download_url"] == "http://proxy/a/b.tar.gz"
    assert parsed["name"] == 'quote " here'


@pytest.mark.asyncio
async def test_unchanged_field_values_are_emitted_verbatim() -> None:
    body = b'{"download_url": "https:\\/\\/elsewhere.example\\/x.tar.gz"}'

    output = await _collect(
        ReplacerStream(JsonContentReplacer("download_url", "https://github.example", "http://proxy")).rewrite(
            byte_stream(body)
        )
    )

    assert output == body


@pytest.mark.asyncio
async def test_non_string_field_values_are_left_alone() -> None:
    body = b'{"next_link": null, "nested": {"next_link": 3}}'

    output = await _collect(ReplacerStream(JsonPrependReplacer("next_link", "/repository/r")).rewrite(byte_stream(body)))

    assert output == body


@pytest.mark.asyncio
async def test_artifact_policy_passes_bytes_through_unchanged() -> None:
    archive = bytes(range(256)) * 64 + b"https://galaxy.example/ inside a tarball"

    output = await _collect(rewrite_stream(no_rewrite(TARGETS), byte_stream(*_split(archive, 1000))))

    assert no_rewrite(TARGETS) == []
    assert output == archive


@pytest.mark.asyncio
async def test_source_is_closed_when_consumer_stops_early() -> None:
    source = TrackingStream([b"https://galaxy.example/a", b"https://galaxy.example/b"])
    stream = rewrite_stream(upstream_url_rewrite(TARGETS), source)

    first = await stream.__anext__()
    await stream.aclose()

    assert first
    assert source.closed


@pytest.mark.asyncio
async def test_source_is_closed_when_upstream_fails_mid_stream() -> None:
    source = TrackingStream([b"https://galaxy.example/a", b"tail"], fail_after=1)

    with pytest.raises(ConnectionError):
        await _collect(rewrite_stream(upstream_url_rewrite(TARGETS), source))

    assert source.closed
