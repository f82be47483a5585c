"""Incremental reader for the NDJSON chat response body."""

from __future__ import annotations

import codecs
import json
import logging
from typing import Iterable, Iterator, List

from .preview import PreviewState


logger = logging.getLogger(__name__)


class StreamAborted(Exception):
    """The response body ended before the server closed it normally."""


class Utf8StreamDecoder:
    """Decode UTF-8 bytes arriving in arbitrary chunks.

    A multi-byte character split across two reads is held back until its
    remaining bytes arrive instead of being decoded as replacement text.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def decode(self, chunk: bytes) -> str:
        return self._decoder.decode(chunk, final=False)

    def finish(self) -> str:
        return self._decoder.decode(b"", final=True)


class NdjsonRecordReader:
    """Split decoded text into ``{"text": ...}`` records, yielding each fragment."""

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, text: str) -> List[str]:
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        return [frag for frag in (self._parse(line) for line in lines) if frag]

    def finish(self) -> List[str]:
        line, self._pending = self._pending, ""
        frag = self._parse(line)
        return [frag] if frag else []

    @staticmethod
    def _parse(line: str) -> str:
        line = line.strip()
        if not line:
            return ""
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed stream record (%d chars)", len(line))
            return ""
        if not isinstance(record, dict):
            return ""
        return str(record.get("text") or "")


def iter_fragments(chunks: Iterable[bytes]) -> Iterator[str]:
    decoder = Utf8StreamDecoder()
    reader = NdjsonRecordReader()
    for chunk in chunks:
        if not chunk:
            continue
        yield from reader.feed(decoder.decode(chunk))
    yield from reader.feed(decoder.finish())
    yield from reader.finish()


def consume_byte_stream(chunks: Iterable[bytes], state: PreviewState) -> Iterator[PreviewState]:
    """Yield the preview state after every fragment read from ``chunks``.

    ``state`` should already be reset for the turn (``begin_turn``). No
    extraction happens once the chunk iterable is exhausted.
    """
    for fragment in iter_fragments(chunks):
        state = state.advance(fragment)
        yield state
