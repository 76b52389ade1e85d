"""
Core module - shared protocols, errors and tenancy rules.

This module provides the foundational contracts that enable:
- Dependency injection throughout the codebase
- Easy testing with in-memory implementations
- Backend-agnostic processing and retrieval

USAGE:
------
from benefits_rag.core import VectorIndex, EmbeddingProvider

class MyVectorIndex:
    '''Implements VectorIndex protocol.'''
    ...
"""

from benefits_rag.core.errors import (
    RagError,
    InvalidInputError,
    EmbeddingUnavailableError,
    EmbeddingBatchError,
    DocumentProcessingError,
    TenantIsolationViolation,
    IndexUnavailableError,
    StoreUnavailableError,
    SearchError,
)
from benefits_rag.core.protocols import (
    # Protocols
    EmbeddingProvider,
    VectorIndex,
    ChunkStore,
    DocumentRegistry,
    # Data classes
    VectorRecord,
    VectorMatch,
    IndexStats,
    ScoreMetric,
)
from benefits_rag.core.tenancy import (
    TENANT_KEY,
    require_tenant,
    stamp_tenant,
    tenant_filter,
    matches_filter,
)

__all__ = [
    # Errors
    "RagError",
    "InvalidInputError",
    "EmbeddingUnavailableError",
    "EmbeddingBatchError",
    "DocumentProcessingError",
    "TenantIsolationViolation",
    "IndexUnavailableError",
    "StoreUnavailableError",
    "SearchError",
    # Protocols
    "EmbeddingProvider",
    "VectorIndex",
    "ChunkStore",
    "DocumentRegistry",
    # Data classes
    "VectorRecord",
    "VectorMatch",
    "IndexStats",
    "ScoreMetric",
    # Tenancy
    "TENANT_KEY",
    "require_tenant",
    "stamp_tenant",
    "tenant_filter",
    "matches_filter",
]
