"""
Chunking module - deterministic, overlap-aware text splitting.
"""

from benefits_rag.chunking.chunker import (
    ChunkingConfig,
    TextChunk,
    chunk_text,
    split_text,
    merge_chunks,
    normalize_text,
    validate_parameters,
)

__all__ = [
    "ChunkingConfig",
    "TextChunk",
    "chunk_text",
    "split_text",
    "merge_chunks",
    "normalize_text",
    "validate_parameters",
]
