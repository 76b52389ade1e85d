"""
Vector index implementations.

Pattern: Protocol -> Production impl -> Test double -> Factory

This module contains:
1. VectorIndexConfig - Configuration dataclass
2. PgVectorIndex - PostgreSQL with pgvector (production)
3. InMemoryVectorIndex - In-memory index (testing/development)
4. get_vector_index() - Factory function

TENANT ISOLATION:
-----------------
Write side: every record's metadata is stamped with its tenant, and the
record lives in that tenant's partition (namespace dict / tenant_id column).
Read side: every query filters on the tenant. A call without a tenant
raises TenantIsolationViolation before touching the backend.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np
from psycopg.types.json import Jsonb

from benefits_rag.core.errors import IndexUnavailableError, InvalidInputError
from benefits_rag.core.protocols import IndexStats, VectorMatch, VectorRecord
from benefits_rag.core.tenancy import (
    matches_filter,
    require_tenant,
    stamp_tenant,
    tenant_filter,
)
from benefits_rag.retrieval.postgres import PgBackend

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CONFIGURATION
# ---------------------------------------------------------------------------


@dataclass
class VectorIndexConfig:
    """Configuration for the vector index."""

    connection_string: str = "postgresql://localhost/benefits_rag"
    table_name: str = "rag_chunk_vectors"
    embedding_dim: int = 1536
    hnsw_m: int = 16
    hnsw_ef_construction: int = 64

    @classmethod
    def from_env(cls) -> "VectorIndexConfig":
        """Load config from environment variables."""
        return cls(
            connection_string=os.environ.get("DATABASE_URL", "postgresql://localhost/benefits_rag"),
            table_name=os.environ.get("RAG_VECTOR_TABLE", "rag_chunk_vectors"),
            embedding_dim=int(os.environ.get("EMBEDDING_DIMENSIONS") or 1536),
        )


def _prepare_records(tenant_id: str, records: Sequence[VectorRecord]) -> list[VectorRecord]:
    require_tenant(tenant_id)
    return [
        VectorRecord(id=r.id, vector=r.vector, metadata=stamp_tenant(tenant_id, r.metadata))
        for r in records
    ]


def _validate_top_k(top_k: int) -> None:
    if top_k < 1:
        raise InvalidInputError(f"top_k must be >= 1, got {top_k}")


# ---------------------------------------------------------------------------
# PGVECTOR INDEX (Production)
# ---------------------------------------------------------------------------


class PgVectorIndex(PgBackend):
    """
    PostgreSQL vector index using pgvector.

    Rows are keyed by (tenant_id, id) so an upsert with an existing id
    replaces the row. Scores are returned in pgvector's native cosine
    distance; the retriever converts them to similarity.
    """

    metric = "cosine_distance"
    supports_filtered_delete = True
    unavailable_error = IndexUnavailableError
    uses_vector = True

    def __init__(self, config: VectorIndexConfig):
        super().__init__(config.connection_string)
        self.config = config

    async def create_schema(self) -> None:
        """Create the vector table and indexes."""
        table = self.config.table_name
        await self._execute(
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                tenant_id TEXT NOT NULL,
                id TEXT NOT NULL,
                document_id TEXT,
                metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                embedding vector({self.config.embedding_dim}) NOT NULL,
                PRIMARY KEY (tenant_id, id)
            )
            """
        )

        # HNSW index for fast similarity search
        await self._execute(
            f"""
            CREATE INDEX IF NOT EXISTS {table}_embedding_idx
            ON {table}
            USING hnsw (embedding vector_cosine_ops)
            WITH (m = {self.config.hnsw_m}, ef_construction = {self.config.hnsw_ef_construction})
            """
        )

        await self._execute(
            f"""
            CREATE INDEX IF NOT EXISTS {table}_document_idx
            ON {table} (tenant_id, document_id)
            """
        )

    async def upsert(self, tenant_id: str, records: Sequence[VectorRecord]) -> int:
        prepared = _prepare_records(tenant_id, records)
        if not prepared:
            return 0

        rows = [
            (tenant_id, r.id, r.metadata.get("document_id"), Jsonb(r.metadata), np.asarray(r.vector))
            for r in prepared
        ]
        return await self._executemany(
            f"""
            INSERT INTO {self.config.table_name} (tenant_id, id, document_id, metadata, embedding)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (tenant_id, id) DO UPDATE SET
                document_id = EXCLUDED.document_id,
                metadata = EXCLUDED.metadata,
                embedding = EXCLUDED.embedding
            """,
            rows,
        )

    async def query(
        self,
        tenant_id: str,
        vector: np.ndarray,
        top_k: int,
        filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        _validate_top_k(top_k)
        scoped = tenant_filter(tenant_id, filter)

        cur = await self._execute(
            f"""
            SELECT id, metadata, embedding <=> %s AS distance
            FROM {self.config.table_name}
            WHERE tenant_id = %s AND metadata @> %s
            ORDER BY distance
            LIMIT %s
            """,
            (np.asarray(vector), tenant_id, Jsonb(scoped), top_k),
        )
        rows = await cur.fetchall()

        return [
            VectorMatch(id=row[0], score=float(row[2]), metadata=row[1] or {})
            for row in rows
        ]

    async def delete_by_document(self, tenant_id: str, document_id: str) -> None:
        require_tenant(tenant_id)
        await self._execute(
            f"DELETE FROM {self.config.table_name} WHERE tenant_id = %s AND document_id = %s",
            (tenant_id, document_id),
        )

    async def delete_ids(self, tenant_id: str, ids: Sequence[str]) -> int:
        require_tenant(tenant_id)
        if not ids:
            return 0
        cur = await self._execute(
            f"DELETE FROM {self.config.table_name} WHERE tenant_id = %s AND id = ANY(%s)",
            (tenant_id, list(ids)),
        )
        return cur.rowcount

    async def stats(self, tenant_id: str) -> IndexStats:
        require_tenant(tenant_id)
        cur = await self._execute(
            f"SELECT count(*) FROM {self.config.table_name} WHERE tenant_id = %s",
            (tenant_id,),
        )
        row = await cur.fetchone()
        return IndexStats(
            tenant_id=tenant_id,
            total_vectors=row[0] if row else 0,
            dimension=self.config.embedding_dim,
        )


# ---------------------------------------------------------------------------
# IN-MEMORY INDEX (Testing/Development)
# ---------------------------------------------------------------------------


class InMemoryVectorIndex:
    """
    In-memory vector index for development/testing.

    One namespace (dict) per tenant, cosine similarity scoring.
    Pass `filtered_delete=False` to behave like an id-only backend that
    cannot delete by metadata filter.
    """

    metric = "cosine_similarity"

    def __init__(self, filtered_delete: bool = True):
        self.supports_filtered_delete = filtered_delete
        self._namespaces: dict[str, dict[str, VectorRecord]] = {}
        self._dimension: int | None = None

    async def connect(self) -> None:
        """No-op for in-memory index."""
        pass

    async def close(self) -> None:
        """No-op for in-memory index."""
        pass

    async def create_schema(self) -> None:
        """No-op for in-memory index."""
        pass

    def _check_dimension(self, vector: np.ndarray, expected: int | None) -> int:
        size = int(np.asarray(vector).shape[-1])
        if expected is not None and size != expected:
            raise InvalidInputError(
                f"Vector dimension {size} does not match index dimension {expected}"
            )
        return size

    async def upsert(self, tenant_id: str, records: Sequence[VectorRecord]) -> int:
        prepared = _prepare_records(tenant_id, records)
        # All records are checked before any is written
        dimension = self._dimension
        for record in prepared:
            dimension = self._check_dimension(record.vector, dimension)
        self._dimension = dimension
        namespace = self._namespaces.setdefault(tenant_id, {})
        for record in prepared:
            namespace[record.id] = record
        return len(prepared)

    @staticmethod
    def _cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
        """Calculate cosine similarity between two vectors."""
        denom = np.linalg.norm(a) * np.linalg.norm(b)
        if denom == 0:
            return 0.0
        return float(np.dot(a, b) / denom)

    async def query(
        self,
        tenant_id: str,
        vector: np.ndarray,
        top_k: int,
        filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        _validate_top_k(top_k)
        scoped = tenant_filter(tenant_id, filter)
        if self._dimension is not None:
            self._check_dimension(vector, self._dimension)

        scored = [
            VectorMatch(
                id=record.id,
                score=self._cosine_similarity(vector, record.vector),
                metadata=dict(record.metadata),
            )
            for record in self._namespaces.get(tenant_id, {}).values()
            if matches_filter(record.metadata, scoped)
        ]

        # Sort by score descending
        scored.sort(key=lambda m: m.score, reverse=True)
        return scored[:top_k]

    async def delete_by_document(self, tenant_id: str, document_id: str) -> None:
        require_tenant(tenant_id)
        if not self.supports_filtered_delete:
            logger.warning(
                f"Vector index has no filtered delete; delete_by_document({document_id!r}) "
                "is a no-op, chunk ids must be deleted individually"
            )
            return
        namespace = self._namespaces.get(tenant_id, {})
        for record_id in [rid for rid, r in namespace.items() if r.metadata.get("document_id") == document_id]:
            del namespace[record_id]

    async def delete_ids(self, tenant_id: str, ids: Sequence[str]) -> int:
        require_tenant(tenant_id)
        namespace = self._namespaces.get(tenant_id, {})
        removed = 0
        for record_id in ids:
            if namespace.pop(record_id, None) is not None:
                removed += 1
        return removed

    async def stats(self, tenant_id: str) -> IndexStats:
        require_tenant(tenant_id)
        return IndexStats(
            tenant_id=tenant_id,
            total_vectors=len(self._namespaces.get(tenant_id, {})),
            dimension=self._dimension or 0,
        )


# ---------------------------------------------------------------------------
# FACTORY FUNCTION
# ---------------------------------------------------------------------------


def get_vector_index(
    use_postgres: bool = False,
    config: VectorIndexConfig | None = None,
) -> PgVectorIndex | InMemoryVectorIndex:
    """
    Factory function to get the appropriate vector index.

    Args:
        use_postgres: Use PostgreSQL index (default: False for dev)
        config: Index configuration (loaded from env if not provided)
    """
    if use_postgres:
        return PgVectorIndex(config or VectorIndexConfig.from_env())
    return InMemoryVectorIndex()
