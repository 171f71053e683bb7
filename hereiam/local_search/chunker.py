"""Split document text into bounded-size chunks.

Paragraph and page chunks are built the same way, only the size differs:
blank-line separated paragraphs are packed into a buffer until the next one
would overflow it, and any chunk that is still too big is re-packed sentence
by sentence. Every piece keeps its trailing separator, so the chunks of a
document are consecutive slices of it: joining them gives the text back and
``start_offset`` (the summed length of the previous chunks) is the real
character position in the source.

A single paragraph or sentence longer than the limit is emitted whole.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from .constants import GRANULARITIES, GRANULARITY_DOCUMENT, GRANULARITY_PAGE, GRANULARITY_PARAGRAPH

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")


@dataclass(frozen=True)
class TextChunk:
    text: str
    start_offset: int
    granularity: str = GRANULARITY_PARAGRAPH

    @property
    def end_offset(self) -> int:
        return self.start_offset + len(self.text)


def _split_keep(text: str, pattern: re.Pattern[str]) -> list[str]:
    """Split after each separator match, keeping the separator on the left piece.

    Whitespace-only pieces are folded into their neighbour so no piece is blank.
    """
    pieces: list[str] = []
    pos = 0
    for m in pattern.finditer(text):
        if m.end() > pos:
            pieces.append(text[pos : m.end()])
            pos = m.end()
    if pos < len(text):
        pieces.append(text[pos:])

    merged: list[str] = []
    carry = ""
    for piece in pieces:
        if not piece.strip():
            carry += piece
            continue
        merged.append(carry + piece)
        carry = ""
    if carry:
        if merged:
            merged[-1] += carry
        else:
            merged.append(carry)
    return merged


def _accumulate(pieces: Iterable[str], max_size: int) -> list[str]:
    out: list[str] = []
    buf = ""
    for piece in pieces:
        if buf and len(buf) + len(piece) > max_size:
            out.append(buf)
            buf = piece
        else:
            buf += piece
    if buf:
        out.append(buf)
    return out


def chunk_text(text: str, max_size: int, granularity: str = GRANULARITY_PARAGRAPH) -> list[TextChunk]:
    """Chunk ``text`` at one granularity.

    ``document`` always yields exactly one chunk (the whole input at offset 0).
    ``paragraph``/``page`` yield nothing for blank input.
    """
    if granularity == GRANULARITY_DOCUMENT:
        return [TextChunk(text=text, start_offset=0, granularity=granularity)]
    if granularity not in (GRANULARITY_PARAGRAPH, GRANULARITY_PAGE):
        raise ValueError(f"unknown granularity: {granularity!r}")
    if max_size <= 0:
        raise ValueError("max_size must be positive")
    if not text.strip():
        return []

    pieces: list[str] = []
    for block in _accumulate(_split_keep(text, _PARAGRAPH_BREAK), max_size):
        if len(block) <= max_size:
            pieces.append(block)
        else:
            pieces.extend(_accumulate(_split_keep(block, _SENTENCE_BREAK), max_size))

    chunks: list[TextChunk] = []
    offset = 0
    for piece in pieces:
        chunks.append(TextChunk(text=piece, start_offset=offset, granularity=granularity))
        offset += len(piece)
    return chunks


def chunk_document(
    text: str,
    granularities: Iterable[str],
    sizes: Mapping[str, int],
    max_chunks: Optional[int] = None,
) -> list[TextChunk]:
    """Chunk one document at every enabled granularity.

    Output order is fixed (paragraph, page, document) whatever order the
    granularities come in. ``max_chunks`` caps the chunks kept per granularity.
    """
    enabled = set(granularities)
    out: list[TextChunk] = []
    for level in GRANULARITIES:
        if level not in enabled:
            continue
        size = sizes.get(level, 0) if level == GRANULARITY_DOCUMENT else sizes[level]
        chunks = chunk_text(text, size, level)
        if max_chunks is not None:
            chunks = chunks[:max_chunks]
        out.extend(chunks)
    return out
