"""
Retrieval module - chunk storage, vector index and tenant-scoped search.

This module provides:
- DocumentChunk / RetrievalResult / DocumentRecord: the data model
- PgVectorIndex / InMemoryVectorIndex: vector index backends
- PgChunkStore / InMemoryChunkStore: chunk side store backends
- PgDocumentRegistry / InMemoryDocumentRegistry: document status
- Retriever: vector search with keyword fallback

ARCHITECTURE:
-------------
Every backend follows the same pattern:
1. Protocol defines the contract (in core.protocols)
2. Postgres implementation for production
3. In-memory implementation for tests and local development
4. Factory function for instantiation
"""

from benefits_rag.retrieval.document import (
    DocumentChunk,
    RetrievalResult,
    DocumentRecord,
    DocumentStatus,
    make_chunk_id,
)
from benefits_rag.retrieval.store import (
    VectorIndexConfig,
    PgVectorIndex,
    InMemoryVectorIndex,
    get_vector_index,
)
from benefits_rag.retrieval.chunk_store import (
    PgChunkStore,
    InMemoryChunkStore,
    get_chunk_store,
    extract_terms,
    rank_by_keywords,
)
from benefits_rag.retrieval.registry import (
    PgDocumentRegistry,
    InMemoryDocumentRegistry,
    get_document_registry,
)
from benefits_rag.retrieval.retriever import (
    Retriever,
    SearchResponse,
    build_context,
    normalize_score,
)

__all__ = [
    # Data model
    "DocumentChunk",
    "RetrievalResult",
    "DocumentRecord",
    "DocumentStatus",
    "make_chunk_id",
    # Vector index
    "VectorIndexConfig",
    "PgVectorIndex",
    "InMemoryVectorIndex",
    "get_vector_index",
    # Chunk store
    "PgChunkStore",
    "InMemoryChunkStore",
    "get_chunk_store",
    "extract_terms",
    "rank_by_keywords",
    # Registry
    "PgDocumentRegistry",
    "InMemoryDocumentRegistry",
    "get_document_registry",
    # Search
    "Retriever",
    "SearchResponse",
    "build_context",
    "normalize_score",
]
