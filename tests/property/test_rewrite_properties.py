"""Property-based tests for the streaming body rewriters."""

from __future__ import annotations

import json

from hypothesis import given, strategies as st
from hypothesis.strategies import composite

from galaxycache.proxy.rewrite import JsonPrependReplacer, Replacer, StringReplacer


TARGET = "https://galaxy.example/"
REPLACEMENT = "http://proxy.test/repository/my-repo/"


def _run(replacer: Replacer, chunks: list[bytes]) -> bytes:
    output = b"".join(replacer.feed(chunk) for chunk in chunks)
    return output + replacer.flush()


@composite
def chunked(draw, data: bytes):
    cuts = draw(st.lists(st.integers(min_value=0, max_value=len(data)), max_size=12))
    bounds = sorted(set([0, len(data), *cuts]))
    return [data[start:end] for start, end in zip(bounds, bounds[1:])]


@composite
def bodies_with_targets(draw):
    fillers = draw(st.lists(st.text(alphabet="abc/:.{}\" hgtps", max_size=20), min_size=1, max_size=8))
    body = TARGET.join(fillers).encode()
    return body, draw(chunked(body))


@given(bodies_with_targets())
def test_string_replacer_matches_whole_body_replace(case) -> None:
    body, chunks = case
    output = _run(StringReplacer(TARGET, REPLACEMENT), chunks)
    assert output == body.replace(TARGET.encode(), REPLACEMENT.encode())


@composite
def link_documents(draw):
    links = draw(st.lists(st.text(max_size=30), min_size=1, max_size=5))
    others = draw(st.dictionaries(st.text(alphabet="abcdefgh_", min_size=1, max_size=12), st.text(max_size=20), max_size=4))
    others.pop("pages", None)
    document = {"pages": [{"next_link": link, **others} for link in links], **others}
    body = json.dumps(document, ensure_ascii=draw(st.booleans())).encode()
    return document, body, draw(chunked(body))


@given(link_documents())
def test_json_prepend_touches_only_the_named_field(case) -> None:
    document, _body, chunks = case
    output = _run(JsonPrependReplacer("next_link", "/repository/r"), chunks)

    expected = dict(document)
    expected["pages"] = [{**page, "next_link": "/repository/r" + page["next_link"]} for page in document["pages"]]
    assert json.loads(output) == expected
