"""
Document models for the retrieval system.

Single responsibility: define the structure of chunks, search results
and source-document status records shared by stores, processor and
retriever.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import numpy as np


def make_chunk_id(document_id: str, chunk_index: int) -> str:
    """Deterministic chunk id; the same document and index always map to the same id."""
    return f"{document_id}_chunk_{chunk_index}"


@dataclass
class DocumentChunk:
    """
    A bounded text segment of a source document.

    `embedding` is None when embedding generation was skipped or failed;
    the chunk is still stored for keyword search and audit.
    """
    id: str
    document_id: str
    tenant_id: str
    content: str
    chunk_index: int
    embedding: np.ndarray | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str | None:
        return self.metadata.get("title")

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization (embedding omitted)."""
        return {
            "id": self.id,
            "document_id": self.document_id,
            "tenant_id": self.tenant_id,
            "content": self.content,
            "chunk_index": self.chunk_index,
            "metadata": self.metadata,
        }


@dataclass
class RetrievalResult:
    """A matched chunk with a higher-is-better similarity score."""
    chunk: DocumentChunk
    score: float

    def to_dict(self) -> dict:
        return {**self.chunk.to_dict(), "score": self.score}


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass
class DocumentRecord:
    """Processing status of a source document."""
    id: str
    tenant_id: str
    title: str = ""
    content: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    status: DocumentStatus = DocumentStatus.PENDING
    chunk_count: int = 0
    processed_at: datetime | None = None
    error: str | None = None
    failed_stage: str | None = None
