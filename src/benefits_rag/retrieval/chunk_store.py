"""
Chunk side store - the source of truth for chunk content.

The vector index only holds vectors and light metadata; full chunk text
is resolved here by id. The store also serves the keyword fallback when
vector search is unavailable.

Pattern: Protocol (core.protocols.ChunkStore) -> PgChunkStore ->
InMemoryChunkStore -> get_chunk_store()
"""

from __future__ import annotations

import os
import re
from dataclasses import replace
from typing import Iterable, Sequence

from psycopg.types.json import Jsonb

from benefits_rag.core.errors import InvalidInputError, TenantIsolationViolation
from benefits_rag.core.tenancy import require_tenant
from benefits_rag.retrieval.document import DocumentChunk
from benefits_rag.retrieval.postgres import PgBackend

_TERM = re.compile(r"[a-z0-9]+")


# ---------------------------------------------------------------------------
# KEYWORD SCORING (shared by all stores)
# ---------------------------------------------------------------------------


def extract_terms(query: str) -> list[str]:
    """Lower-cased query terms longer than two characters, de-duplicated in order."""
    seen: dict[str, None] = {}
    for term in _TERM.findall(query.lower()):
        if len(term) > 2:
            seen.setdefault(term, None)
    return list(seen)


def rank_by_keywords(
    chunks: Iterable[DocumentChunk],
    terms: Sequence[str],
    limit: int,
) -> list[tuple[DocumentChunk, float]]:
    """
    Score chunks by total term occurrences, normalized by the best hit.

    Chunks with no occurrence are dropped.
    """
    if limit < 1:
        raise InvalidInputError(f"limit must be >= 1, got {limit}")
    if not terms:
        return []

    scored = []
    for chunk in chunks:
        content = chunk.content.lower()
        hits = sum(content.count(term) for term in terms)
        if hits > 0:
            scored.append((chunk, hits))

    if not scored:
        return []

    best = max(hits for _, hits in scored)
    scored.sort(key=lambda item: (-item[1], item[0].document_id, item[0].chunk_index))
    return [(chunk, hits / best) for chunk, hits in scored[:limit]]


def _check_tenant(tenant_id: str, chunk: DocumentChunk) -> None:
    if chunk.tenant_id != tenant_id:
        raise TenantIsolationViolation(
            f"Chunk {chunk.id!r} belongs to tenant {chunk.tenant_id!r}, not {tenant_id!r}"
        )


# ---------------------------------------------------------------------------
# POSTGRES STORE (Production)
# ---------------------------------------------------------------------------


class PgChunkStore(PgBackend):
    """Chunk store backed by a PostgreSQL table keyed by (tenant_id, id)."""

    def __init__(self, connection_string: str, table_name: str = "rag_document_chunks"):
        super().__init__(connection_string)
        self.table_name = table_name

    async def create_schema(self) -> None:
        await self._execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.table_name} (
                tenant_id TEXT NOT NULL,
                id TEXT NOT NULL,
                document_id TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                content TEXT NOT NULL,
                metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                PRIMARY KEY (tenant_id, id)
            )
            """
        )
        await self._execute(
            f"""
            CREATE INDEX IF NOT EXISTS {self.table_name}_document_idx
            ON {self.table_name} (tenant_id, document_id, chunk_index)
            """
        )

    @staticmethod
    def _row_to_chunk(row) -> DocumentChunk:
        return DocumentChunk(
            id=row[0],
            document_id=row[1],
            tenant_id=row[2],
            chunk_index=row[3],
            content=row[4],
            metadata=row[5] or {},
        )

    async def save_chunks(self, chunks: Sequence[DocumentChunk]) -> int:
        if not chunks:
            return 0
        rows = []
        for chunk in chunks:
            require_tenant(chunk.tenant_id)
            rows.append((
                chunk.tenant_id, chunk.id, chunk.document_id,
                chunk.chunk_index, chunk.content, Jsonb(chunk.metadata),
            ))
        return await self._executemany(
            f"""
            INSERT INTO {self.table_name} (tenant_id, id, document_id, chunk_index, content, metadata)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (tenant_id, id) DO UPDATE SET
                document_id = EXCLUDED.document_id,
                chunk_index = EXCLUDED.chunk_index,
                content = EXCLUDED.content,
                metadata = EXCLUDED.metadata
            """,
            rows,
        )

    async def get_chunk(self, tenant_id: str, chunk_id: str) -> DocumentChunk | None:
        found = await self.get_chunks(tenant_id, [chunk_id])
        return found.get(chunk_id)

    async def get_chunks(self, tenant_id: str, chunk_ids: Sequence[str]) -> dict[str, DocumentChunk]:
        require_tenant(tenant_id)
        if not chunk_ids:
            return {}
        cur = await self._execute(
            f"""
            SELECT id, document_id, tenant_id, chunk_index, content, metadata
            FROM {self.table_name}
            WHERE tenant_id = %s AND id = ANY(%s)
            """,
            (tenant_id, list(chunk_ids)),
        )
        return {row[0]: self._row_to_chunk(row) for row in await cur.fetchall()}

    async def list_chunk_ids(self, tenant_id: str, document_id: str) -> list[str]:
        require_tenant(tenant_id)
        cur = await self._execute(
            f"""
            SELECT id FROM {self.table_name}
            WHERE tenant_id = %s AND document_id = %s
            ORDER BY chunk_index
            """,
            (tenant_id, document_id),
        )
        return [row[0] for row in await cur.fetchall()]

    async def delete_chunks(self, tenant_id: str, chunk_ids: Sequence[str]) -> int:
        require_tenant(tenant_id)
        if not chunk_ids:
            return 0
        cur = await self._execute(
            f"DELETE FROM {self.table_name} WHERE tenant_id = %s AND id = ANY(%s)",
            (tenant_id, list(chunk_ids)),
        )
        return cur.rowcount

    async def delete_document_chunks(self, tenant_id: str, document_id: str) -> int:
        require_tenant(tenant_id)
        cur = await self._execute(
            f"DELETE FROM {self.table_name} WHERE tenant_id = %s AND document_id = %s",
            (tenant_id, document_id),
        )
        return cur.rowcount

    async def keyword_search(
        self,
        tenant_id: str,
        query: str,
        limit: int,
    ) -> list[tuple[DocumentChunk, float]]:
        require_tenant(tenant_id)
        terms = extract_terms(query)
        if not terms:
            return []

        # ILIKE narrows candidates; ranking happens in Python so both stores score identically
        cur = await self._execute(
            f"""
            SELECT id, document_id, tenant_id, chunk_index, content, metadata
            FROM {self.table_name}
            WHERE tenant_id = %s AND content ILIKE ANY(%s)
            """,
            (tenant_id, [f"%{term}%" for term in terms]),
        )
        candidates = [self._row_to_chunk(row) for row in await cur.fetchall()]
        return rank_by_keywords(candidates, terms, limit)


# ---------------------------------------------------------------------------
# IN-MEMORY STORE (Testing/Development)
# ---------------------------------------------------------------------------


class InMemoryChunkStore:
    """In-memory chunk store, one dict per tenant."""

    def __init__(self):
        self._chunks: dict[str, dict[str, DocumentChunk]] = {}

    async def connect(self) -> None:
        """No-op for in-memory store."""
        pass

    async def close(self) -> None:
        """No-op for in-memory store."""
        pass

    async def create_schema(self) -> None:
        """No-op for in-memory store."""
        pass

    async def save_chunks(self, chunks: Sequence[DocumentChunk]) -> int:
        for chunk in chunks:
            require_tenant(chunk.tenant_id)
            # Stored without the vector; the index owns vectors
            self._chunks.setdefault(chunk.tenant_id, {})[chunk.id] = replace(
                chunk, embedding=None, metadata=dict(chunk.metadata)
            )
        return len(chunks)

    async def get_chunk(self, tenant_id: str, chunk_id: str) -> DocumentChunk | None:
        require_tenant(tenant_id)
        chunk = self._chunks.get(tenant_id, {}).get(chunk_id)
        if chunk is not None:
            _check_tenant(tenant_id, chunk)
        return chunk

    async def get_chunks(self, tenant_id: str, chunk_ids: Sequence[str]) -> dict[str, DocumentChunk]:
        require_tenant(tenant_id)
        tenant_chunks = self._chunks.get(tenant_id, {})
        return {cid: tenant_chunks[cid] for cid in chunk_ids if cid in tenant_chunks}

    async def list_chunk_ids(self, tenant_id: str, document_id: str) -> list[str]:
        require_tenant(tenant_id)
        owned = [c for c in self._chunks.get(tenant_id, {}).values() if c.document_id == document_id]
        return [c.id for c in sorted(owned, key=lambda c: c.chunk_index)]

    async def delete_chunks(self, tenant_id: str, chunk_ids: Sequence[str]) -> int:
        require_tenant(tenant_id)
        tenant_chunks = self._chunks.get(tenant_id, {})
        return sum(1 for cid in chunk_ids if tenant_chunks.pop(cid, None) is not None)

    async def delete_document_chunks(self, tenant_id: str, document_id: str) -> int:
        return await self.delete_chunks(tenant_id, await self.list_chunk_ids(tenant_id, document_id))

    async def keyword_search(
        self,
        tenant_id: str,
        query: str,
        limit: int,
    ) -> list[tuple[DocumentChunk, float]]:
        require_tenant(tenant_id)
        return rank_by_keywords(self._chunks.get(tenant_id, {}).values(), extract_terms(query), limit)


# ---------------------------------------------------------------------------
# FACTORY FUNCTION
# ---------------------------------------------------------------------------


def get_chunk_store(
    use_postgres: bool = False,
    connection_string: str | None = None,
) -> PgChunkStore | InMemoryChunkStore:
    """Factory function to get the appropriate chunk store."""
    if use_postgres:
        return PgChunkStore(
            connection_string or os.environ.get("DATABASE_URL", "postgresql://localhost/benefits_rag"),
            table_name=os.environ.get("RAG_CHUNK_TABLE", "rag_document_chunks"),
        )
    return InMemoryChunkStore()
