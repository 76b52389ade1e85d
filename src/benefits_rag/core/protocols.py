"""
Core protocols defining contracts for the retrieval pipeline.

All infrastructure components implement these protocols,
enabling dependency injection and easy testing.

PATTERN:
- Protocol defines the contract
- Multiple implementations possible (OpenAI / Postgres / in-memory)
- Factory functions for instantiation
- Test doubles for fast unit tests

The processor and retriever only ever see these protocols, never a
concrete SDK, so they stay backend-agnostic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal, Protocol, Sequence, runtime_checkable

import numpy as np

if TYPE_CHECKING:
    from benefits_rag.retrieval.document import DocumentChunk, DocumentRecord


ScoreMetric = Literal["cosine_similarity", "cosine_distance"]


# ---------------------------------------------------------------------------
# EMBEDDING PROVIDER PROTOCOL
# ---------------------------------------------------------------------------


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Contract for embedding generation.

    Implementations:
    - OpenAIEmbeddings (production, OpenAI or Azure OpenAI)
    - MockEmbeddings (testing/development)
    - NullEmbeddingProvider (unconfigured)
    """

    @property
    def dimensions(self) -> int:
        ...

    @property
    def available(self) -> bool:
        """False when the provider is known to be unusable."""
        ...

    async def embed(self, text: str) -> np.ndarray:
        """Generate embedding for a single text."""
        ...

    async def embed_batch(self, texts: Sequence[str]) -> list[np.ndarray]:
        """Generate embeddings for multiple texts, preserving input order."""
        ...


# ---------------------------------------------------------------------------
# VECTOR INDEX PROTOCOL
# ---------------------------------------------------------------------------


@dataclass
class VectorRecord:
    """A vector to be written to the index."""
    id: str
    vector: np.ndarray
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorMatch:
    """A raw hit from the index, scored in the index's native metric."""
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class IndexStats:
    """Per-tenant index statistics."""
    tenant_id: str
    total_vectors: int
    dimension: int


@runtime_checkable
class VectorIndex(Protocol):
    """
    Contract for tenant-scoped vector similarity search.

    Implementations:
    - PgVectorIndex (production with PostgreSQL + pgvector)
    - InMemoryVectorIndex (testing/development)
    """

    metric: ScoreMetric
    supports_filtered_delete: bool

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def upsert(self, tenant_id: str, records: Sequence[VectorRecord]) -> int:
        """Write records, replacing any with the same id. Returns count written."""
        ...

    async def query(
        self,
        tenant_id: str,
        vector: np.ndarray,
        top_k: int,
        filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        """Return at most `top_k` matches, best match first."""
        ...

    async def delete_by_document(self, tenant_id: str, document_id: str) -> None:
        """Delete every vector of a document (no-op without native support)."""
        ...

    async def delete_ids(self, tenant_id: str, ids: Sequence[str]) -> int:
        ...

    async def stats(self, tenant_id: str) -> IndexStats:
        ...


# ---------------------------------------------------------------------------
# CHUNK SIDE STORE PROTOCOL
# ---------------------------------------------------------------------------


@runtime_checkable
class ChunkStore(Protocol):
    """
    Contract for the chunk content store.

    The side store is the source of truth for chunk text; the vector
    index is a derived projection that can be rebuilt from it.

    Implementations:
    - PgChunkStore (production)
    - InMemoryChunkStore (testing/development)
    """

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def save_chunks(self, chunks: Sequence[DocumentChunk]) -> int:
        ...

    async def get_chunk(self, tenant_id: str, chunk_id: str) -> DocumentChunk | None:
        ...

    async def get_chunks(self, tenant_id: str, chunk_ids: Sequence[str]) -> dict[str, DocumentChunk]:
        ...

    async def list_chunk_ids(self, tenant_id: str, document_id: str) -> list[str]:
        ...

    async def delete_chunks(self, tenant_id: str, chunk_ids: Sequence[str]) -> int:
        ...

    async def delete_document_chunks(self, tenant_id: str, document_id: str) -> int:
        ...

    async def keyword_search(
        self,
        tenant_id: str,
        query: str,
        limit: int,
    ) -> list[tuple[DocumentChunk, float]]:
        """Keyword search, scores normalized to [0, 1], best first."""
        ...


# ---------------------------------------------------------------------------
# DOCUMENT REGISTRY PROTOCOL
# ---------------------------------------------------------------------------


@runtime_checkable
class DocumentRegistry(Protocol):
    """
    Contract for source-document processing status.

    Implementations:
    - PgDocumentRegistry (production)
    - InMemoryDocumentRegistry (testing/development)
    """

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def register(self, record: DocumentRecord) -> None:
        ...

    async def get(self, tenant_id: str, document_id: str) -> DocumentRecord | None:
        ...

    async def mark_processing(self, tenant_id: str, document_id: str) -> None:
        ...

    async def mark_processed(
        self,
        tenant_id: str,
        document_id: str,
        chunk_count: int,
        processed_at: datetime,
    ) -> None:
        ...

    async def mark_failed(
        self,
        tenant_id: str,
        document_id: str,
        stage: str,
        error: str,
    ) -> None:
        ...

    async def list_pending(self, tenant_id: str, limit: int) -> list[DocumentRecord]:
        ...

    async def delete(self, tenant_id: str, document_id: str) -> None:
        ...
