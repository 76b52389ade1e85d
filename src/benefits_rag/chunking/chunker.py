"""
Chunker - split document text into overlapping, bounded segments.

Single responsibility: text in, ordered chunks out. No I/O, no state.
Determinism is what makes chunk ids stable across reprocessing, so
nothing here may depend on time, randomness or dict ordering.

SPLITTING POLICY:
-----------------
1. Normalize whitespace (CRLF, repeated blanks, stacked blank lines)
2. Take a window of at most `max_chunk_size` characters
3. Break at the last paragraph break in the window, else the last
   sentence end, else the last whitespace, else hard-cut
4. Start the next window `overlap_size` characters before the break,
   moved forward to a word start (overlap never exceeds `overlap_size`)

Chunks are exact slices of the normalized text, so `merge_chunks`
reconstructs it losslessly from the spans.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Sequence

from benefits_rag.core.errors import InvalidInputError

_HORIZONTAL_WS = re.compile(r"[ \t\f\v]+")
_SPACE_AROUND_NEWLINE = re.compile(r" *\n *")
_STACKED_NEWLINES = re.compile(r"\n{3,}")
_SENTENCE_END = re.compile(r"[.!?][\"')\]]*\s")


# ---------------------------------------------------------------------------
# CONFIGURATION
# ---------------------------------------------------------------------------


@dataclass
class ChunkingConfig:
    """Chunking parameters.

    Environment Variables:
        RAG_CHUNK_MAX_SIZE: Maximum characters per chunk (default: 1000)
        RAG_CHUNK_OVERLAP: Characters shared between neighbours (default: 200)
    """

    max_chunk_size: int = 1000
    overlap_size: int = 200

    def __post_init__(self) -> None:
        validate_parameters(self.max_chunk_size, self.overlap_size)

    @classmethod
    def from_env(cls) -> "ChunkingConfig":
        """Load config from environment variables."""
        return cls(
            max_chunk_size=int(os.environ.get("RAG_CHUNK_MAX_SIZE", "1000")),
            overlap_size=int(os.environ.get("RAG_CHUNK_OVERLAP", "200")),
        )


@dataclass(frozen=True)
class TextChunk:
    """A chunk and its [start, end) span in the normalized text."""
    text: str
    start: int
    end: int


# ---------------------------------------------------------------------------
# PUBLIC API
# ---------------------------------------------------------------------------


def validate_parameters(max_chunk_size: int, overlap_size: int) -> None:
    if overlap_size < 0:
        raise InvalidInputError(f"overlap_size must be >= 0, got {overlap_size}")
    if max_chunk_size <= overlap_size:
        raise InvalidInputError(
            f"max_chunk_size ({max_chunk_size}) must be greater than overlap_size ({overlap_size})"
        )


def normalize_text(text: str) -> str:
    """Normalize whitespace while keeping paragraph structure."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HORIZONTAL_WS.sub(" ", text)
    text = _SPACE_AROUND_NEWLINE.sub("\n", text)
    text = _STACKED_NEWLINES.sub("\n\n", text)
    return text.strip()


def split_text(text: str, max_chunk_size: int, overlap_size: int) -> list[TextChunk]:
    """Split text into chunks, keeping each chunk's span."""
    validate_parameters(max_chunk_size, overlap_size)

    normalized = normalize_text(text or "")
    if not normalized:
        return []

    chunks: list[TextChunk] = []
    length = len(normalized)
    start = 0

    while start < length:
        end = min(start + max_chunk_size, length)
        if end < length:
            end = _find_break(normalized, start + overlap_size + 1, end)

        chunks.append(TextChunk(text=normalized[start:end], start=start, end=end))

        if end >= length:
            break
        start = _overlap_start(normalized, end - overlap_size, end)

    return chunks


def chunk_text(text: str, max_chunk_size: int, overlap_size: int) -> list[str]:
    """Split text into ordered chunk strings."""
    return [chunk.text for chunk in split_text(text, max_chunk_size, overlap_size)]


def merge_chunks(chunks: Sequence[TextChunk]) -> str:
    """Rebuild the normalized text from chunks, dropping the overlaps."""
    merged: list[str] = []
    covered = 0
    for chunk in chunks:
        if chunk.start > covered:
            raise InvalidInputError(
                f"Gap between chunks: text up to {covered} covered, next chunk starts at {chunk.start}"
            )
        merged.append(chunk.text[covered - chunk.start:])
        covered = max(covered, chunk.end)
    return "".join(merged)


# ---------------------------------------------------------------------------
# BOUNDARY SEARCH
# ---------------------------------------------------------------------------


def _find_break(text: str, min_end: int, max_end: int) -> int:
    """Pick the best end position in (min_end, max_end]."""
    window = text[min_end:max_end]

    paragraph = window.rfind("\n\n")
    if paragraph != -1:
        return min_end + paragraph + 2

    sentence_ends = list(_SENTENCE_END.finditer(window))
    if sentence_ends:
        return min_end + sentence_ends[-1].end()

    for i in range(len(window) - 1, -1, -1):
        if window[i].isspace():
            return min_end + i + 1

    return max_end


def _overlap_start(text: str, candidate: int, end: int) -> int:
    """Move the next chunk start forward to the beginning of a word."""
    pos = candidate
    if pos > 0 and not text[pos - 1].isspace():
        while pos < end and not text[pos].isspace():
            pos += 1
    while pos < end and text[pos].isspace():
        pos += 1
    return pos
