"""
Error taxonomy for the retrieval pipeline.

Every failure the pipeline can surface is one of these types, so callers
can tell "bad input" from "provider down" from "programming error" without
string matching on messages.

RECOVERY GUIDE:
---------------
- InvalidInputError          -> caller fixes the input
- EmbeddingUnavailableError  -> read path falls back to keyword search
- EmbeddingBatchError        -> orchestrator keeps `completed`, retries the rest
- DocumentProcessingError    -> caller retries the whole document
- TenantIsolationViolation   -> bug, never caught inside the pipeline
- IndexUnavailableError      -> read path falls back, write path fails
- StoreUnavailableError      -> side store unreachable
- SearchError                -> both vector and keyword search failed
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import numpy as np


class RagError(Exception):
    """Base class for all pipeline errors."""


class InvalidInputError(RagError, ValueError):
    """Empty or otherwise invalid text/parameters supplied by the caller."""


class EmbeddingUnavailableError(RagError):
    """The embedding provider is unconfigured or unreachable."""


class EmbeddingBatchError(RagError):
    """
    A batch embedding call failed partway through.

    Vectors for inputs before `start_index` are valid and available in
    `completed` (input order); inputs from `start_index` on are unprocessed.
    """

    def __init__(
        self,
        start_index: int,
        completed: list[np.ndarray] | None = None,
        message: str | None = None,
    ):
        self.start_index = start_index
        self.completed = completed or []
        super().__init__(message or f"Embedding batch starting at index {start_index} failed")


class DocumentProcessingError(RagError):
    """Unrecoverable failure at a named stage of document processing."""

    def __init__(self, document_id: str, stage: str, message: str | None = None):
        self.document_id = document_id
        self.stage = stage
        super().__init__(
            message or f"Processing of document {document_id!r} failed at stage {stage}"
        )


class TenantIsolationViolation(RagError):
    """A read or write was attempted without (or across) a tenant scope."""


class IndexUnavailableError(RagError):
    """The vector index backend could not be reached."""


class StoreUnavailableError(RagError):
    """The chunk side store could not be reached."""


class SearchError(RagError):
    """Search failed on both the vector path and the keyword fallback."""
