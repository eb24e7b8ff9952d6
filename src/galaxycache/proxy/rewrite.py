"""Streaming rewriters that point upstream URLs in response bodies back at the proxy.

Every replacer is a small incremental filter: ``feed`` accepts the next chunk and
returns whatever output is already safe to emit, ``flush`` drains the remainder at
end of stream. Replacers hold per-stream state, so a fresh set is built for every
response. ``ReplacerStream`` chains them over an async byte iterator.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Sequence

import structlog


LOGGER = structlog.get_logger("galaxycache.rewrite")


@dataclass(frozen=True)
class RewriteTargets:
    """URLs a rewrite policy needs to know about for one repository."""

    upstream_url: str
    repository_url: str
    repository_path: str
    github_url: str


class Replacer:
    def feed(self, chunk: bytes) -> bytes:  # pragma: no cover - interface
        raise NotImplementedError

    def flush(self) -> bytes:  # pragma: no cover - interface
        raise NotImplementedError


class StringReplacer(Replacer):
    """Replaces every literal occurrence of ``target`` with ``replacement``.

    Holds back at most ``len(target) - 1`` bytes between chunks so matches that
    straddle a chunk boundary are still found.
    """

    def __init__(self, target: str, replacement: str) -> None:
        if not target:
            raise ValueError("replacement target must not be empty")
        self._target = target.encode("utf-8")
        self._replacement = replacement.encode("utf-8")
        self._pending = b""

    def feed(self, chunk: bytes) -> bytes:
        data = self._pending + chunk
        out = bytearray()
        start = 0
        while True:
            index = data.find(self._target, start)
            if index < 0:
                break
            out += data[start:index]
            out += self._replacement
            start = index + len(self._target)
        keep = min(len(data) - start, len(self._target) - 1)
        end = len(data) - keep
        out += data[start:end]
        self._pending = data[end:]
        return bytes(out)

    def flush(self) -> bytes:
        remainder, self._pending = self._pending, b""
        return remainder


# Scanner states for JsonFieldReplacer.
_OUTSIDE = 0
_IN_STRING = 1
_AFTER_STRING = 2
_EXPECT_VALUE = 3
_IN_VALUE = 4

_WHITESPACE = b" \t\r\n"
_QUOTE = ord('"')
_BACKSLASH = ord("\\")
_COLON = ord(":")


class JsonFieldReplacer(Replacer):
    """Rewrites the string value of every object member named ``field``.

    The body is scanned as JSON tokens rather than matched with patterns, so a
    similar substring in another member or inside a value is never touched.
    Only the raw text of the targeted value is buffered. Values that the
    transform leaves unchanged are emitted byte-for-byte as received.
    """

    def __init__(self, field: str, transform: Callable[[str], str]) -> None:
        self._field = field.encode("utf-8")
        self._transform = transform
        self._state = _OUTSIDE
        self._escaped = False
        self._key: bytearray | None = bytearray()
        self._value = bytearray()
        self._matched = False

    def feed(self, chunk: bytes) -> bytes:
        out = bytearray()
        index = 0
        length = len(chunk)
        while index < length:
            state = self._state
            if state == _OUTSIDE:
                quote = chunk.find(b'"', index)
                if quote < 0:
                    out += chunk[index:]
                    return bytes(out)
                out += chunk[index : quote + 1]
                index = quote + 1
                self._begin_string()
                continue

            byte = chunk[index]
            if state == _IN_STRING:
                out.append(byte)
                index += 1
                if self._escaped:
                    self._escaped = False
                    self._capture_key(byte)
                elif byte == _BACKSLASH:
                    self._escaped = True
                    self._capture_key(byte)
                elif byte == _QUOTE:
                    self._matched = self._key is not None and bytes(self._key) == self._field
                    self._state = _AFTER_STRING
                else:
                    self._capture_key(byte)
            elif state == _AFTER_STRING:
                if byte in _WHITESPACE:
                    out.append(byte)
                    index += 1
                elif byte == _COLON and self._matched:
                    out.append(byte)
                    index += 1
                    self._state = _EXPECT_VALUE
                else:
                    self._state = _OUTSIDE
            elif state == _EXPECT_VALUE:
                if byte in _WHITESPACE:
                    out.append(byte)
                    index += 1
                elif byte == _QUOTE:
                    out.append(byte)
                    index += 1
                    self._value.clear()
                    self._escaped = False
                    self._state = _IN_VALUE
                else:
                    # null, numbers and nested values are left alone
                    self._state = _OUTSIDE
            else:
                index += 1
                if self._escaped:
                    self._escaped = False
                    self._value.append(byte)
                elif byte == _BACKSLASH:
                    self._escaped = True
                    self._value.append(byte)
                elif byte == _QUOTE:
                    out += self._rewrite_value(bytes(self._value))
                    out.append(byte)
                    self._value.clear()
                    self._state = _OUTSIDE
                else:
                    self._value.append(byte)
        return bytes(out)

    def flush(self) -> bytes:
        # A truncated body leaves an unterminated value; emit it untouched.
        remainder = bytes(self._value) if self._state == _IN_VALUE else b""
        self._value.clear()
        self._state = _OUTSIDE
        return remainder

    def _begin_string(self) -> None:
        self._state = _IN_STRING
        self._escaped = False
        self._key = bytearray()
        self._matched = False

    def _capture_key(self, byte: int) -> None:
        if self._key is None:
            return
        if len(self._key) >= len(self._field):
            self._key = None
            return
        self._key.append(byte)

    def _rewrite_value(self, raw: bytes) -> bytes:
        try:
            value = json.loads(b'"' + raw + b'"')
        except ValueError:
            LOGGER.debug("json_field_undecodable", field=self._field.decode("utf-8"))
            return raw
        updated = self._transform(value)
        if updated == value:
            return raw
        return json.dumps(updated, ensure_ascii=False)[1:-1].encode("utf-8")


class JsonContentReplacer(JsonFieldReplacer):
    """Replaces ``target`` with ``replacement`` inside the named field's value."""

    def __init__(self, field: str, target: str, replacement: str) -> None:
        super().__init__(field, lambda value: value.replace(target, replacement))


class JsonPrependReplacer(JsonFieldReplacer):
    """Prefixes the named field's value with ``prefix``."""

    def __init__(self, field: str, prefix: str) -> None:
        super().__init__(field, lambda value: prefix + value)


class ReplacerStream:
    """Applies replacers in sequence over an async byte stream."""

    def __init__(self, *replacers: Replacer) -> None:
        self._replacers: Sequence[Replacer] = replacers

    async def rewrite(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        try:
            async for chunk in source:
                data = chunk
                for replacer in self._replacers:
                    data = replacer.feed(data)
                if data:
                    yield data
            tail = b""
            for replacer in self._replacers:
                tail = replacer.feed(tail) + replacer.flush()
            if tail:
                yield tail
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()


def no_rewrite(_targets: RewriteTargets) -> list[Replacer]:
    return []


def upstream_url_rewrite(targets: RewriteTargets) -> list[Replacer]:
    return [StringReplacer(targets.upstream_url, targets.repository_url + "/")]


def role_version_list_rewrite(targets: RewriteTargets) -> list[Replacer]:
    return [
        JsonPrependReplacer("next_link", targets.repository_path),
        JsonContentReplacer("download_url", targets.github_url, targets.repository_url + "/download"),
    ]


def rewrite_stream(replacers: Sequence[Replacer], source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Return ``source`` rewritten by ``replacers``; with none, the bytes pass through as-is."""

    return ReplacerStream(*replacers).rewrite(source)
