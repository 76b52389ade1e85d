"""
Document registry - processing status of source documents.

The ingestion side registers documents here (pending); the processor
moves them through processing -> processed | failed and records the
chunk count and timestamp once the vectors are in the index.

Pattern: Protocol (core.protocols.DocumentRegistry) -> PgDocumentRegistry ->
InMemoryDocumentRegistry -> get_document_registry()
"""

from __future__ import annotations

import os
from dataclasses import replace
from datetime import datetime

from psycopg.types.json import Jsonb

from benefits_rag.core.errors import InvalidInputError
from benefits_rag.core.tenancy import require_tenant
from benefits_rag.retrieval.document import DocumentRecord, DocumentStatus
from benefits_rag.retrieval.postgres import PgBackend

RETRYABLE_STATUSES = (DocumentStatus.PENDING, DocumentStatus.FAILED)


# ---------------------------------------------------------------------------
# POSTGRES REGISTRY (Production)
# ---------------------------------------------------------------------------


class PgDocumentRegistry(PgBackend):
    """Registry backed by a PostgreSQL table keyed by (tenant_id, id)."""

    _COLUMNS = "id, tenant_id, title, content, metadata, status, chunk_count, processed_at, error, failed_stage"

    def __init__(self, connection_string: str, table_name: str = "rag_documents"):
        super().__init__(connection_string)
        self.table_name = table_name

    async def create_schema(self) -> None:
        await self._execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.table_name} (
                tenant_id TEXT NOT NULL,
                id TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                content TEXT NOT NULL DEFAULT '',
                metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                status TEXT NOT NULL DEFAULT 'pending',
                chunk_count INTEGER NOT NULL DEFAULT 0,
                processed_at TIMESTAMPTZ,
                error TEXT,
                failed_stage TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                PRIMARY KEY (tenant_id, id)
            )
            """
        )

    @staticmethod
    def _row_to_record(row) -> DocumentRecord:
        return DocumentRecord(
            id=row[0],
            tenant_id=row[1],
            title=row[2],
            content=row[3],
            metadata=row[4] or {},
            status=DocumentStatus(row[5]),
            chunk_count=row[6],
            processed_at=row[7],
            error=row[8],
            failed_stage=row[9],
        )

    async def register(self, record: DocumentRecord) -> None:
        require_tenant(record.tenant_id)
        await self._execute(
            f"""
            INSERT INTO {self.table_name} (tenant_id, id, title, content, metadata, status)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (tenant_id, id) DO UPDATE SET
                title = EXCLUDED.title,
                content = EXCLUDED.content,
                metadata = EXCLUDED.metadata,
                status = EXCLUDED.status,
                error = NULL,
                failed_stage = NULL
            """,
            (
                record.tenant_id, record.id, record.title, record.content,
                Jsonb(record.metadata), record.status.value,
            ),
        )

    async def get(self, tenant_id: str, document_id: str) -> DocumentRecord | None:
        require_tenant(tenant_id)
        cur = await self._execute(
            f"SELECT {self._COLUMNS} FROM {self.table_name} WHERE tenant_id = %s AND id = %s",
            (tenant_id, document_id),
        )
        row = await cur.fetchone()
        return self._row_to_record(row) if row else None

    async def mark_processing(self, tenant_id: str, document_id: str) -> None:
        require_tenant(tenant_id)
        await self._execute(
            f"UPDATE {self.table_name} SET status = %s WHERE tenant_id = %s AND id = %s",
            (DocumentStatus.PROCESSING.value, tenant_id, document_id),
        )

    async def mark_processed(
        self,
        tenant_id: str,
        document_id: str,
        chunk_count: int,
        processed_at: datetime,
    ) -> None:
        require_tenant(tenant_id)
        await self._execute(
            f"""
            UPDATE {self.table_name}
            SET status = %s, chunk_count = %s, processed_at = %s, error = NULL, failed_stage = NULL
            WHERE tenant_id = %s AND id = %s
            """,
            (DocumentStatus.PROCESSED.value, chunk_count, processed_at, tenant_id, document_id),
        )

    async def mark_failed(self, tenant_id: str, document_id: str, stage: str, error: str) -> None:
        require_tenant(tenant_id)
        await self._execute(
            f"""
            UPDATE {self.table_name}
            SET status = %s, error = %s, failed_stage = %s
            WHERE tenant_id = %s AND id = %s
            """,
            (DocumentStatus.FAILED.value, error, stage, tenant_id, document_id),
        )

    async def list_pending(self, tenant_id: str, limit: int) -> list[DocumentRecord]:
        require_tenant(tenant_id)
        cur = await self._execute(
            f"""
            SELECT {self._COLUMNS} FROM {self.table_name}
            WHERE tenant_id = %s AND status = ANY(%s)
            ORDER BY created_at
            LIMIT %s
            """,
            (tenant_id, [s.value for s in RETRYABLE_STATUSES], limit),
        )
        return [self._row_to_record(row) for row in await cur.fetchall()]

    async def delete(self, tenant_id: str, document_id: str) -> None:
        require_tenant(tenant_id)
        await self._execute(
            f"DELETE FROM {self.table_name} WHERE tenant_id = %s AND id = %s",
            (tenant_id, document_id),
        )


# ---------------------------------------------------------------------------
# IN-MEMORY REGISTRY (Testing/Development)
# ---------------------------------------------------------------------------


class InMemoryDocumentRegistry:
    """In-memory registry; records keep registration order for list_pending."""

    def __init__(self):
        self._records: dict[tuple[str, str], DocumentRecord] = {}

    async def connect(self) -> None:
        """No-op for in-memory registry."""
        pass

    async def close(self) -> None:
        """No-op for in-memory registry."""
        pass

    async def create_schema(self) -> None:
        """No-op for in-memory registry."""
        pass

    async def register(self, record: DocumentRecord) -> None:
        require_tenant(record.tenant_id)
        self._records[(record.tenant_id, record.id)] = replace(record, metadata=dict(record.metadata))

    async def get(self, tenant_id: str, document_id: str) -> DocumentRecord | None:
        require_tenant(tenant_id)
        return self._records.get((tenant_id, document_id))

    def _update(self, tenant_id: str, document_id: str, **changes) -> None:
        require_tenant(tenant_id)
        key = (tenant_id, document_id)
        if key in self._records:
            self._records[key] = replace(self._records[key], **changes)

    async def mark_processing(self, tenant_id: str, document_id: str) -> None:
        self._update(tenant_id, document_id, status=DocumentStatus.PROCESSING)

    async def mark_processed(
        self,
        tenant_id: str,
        document_id: str,
        chunk_count: int,
        processed_at: datetime,
    ) -> None:
        self._update(
            tenant_id,
            document_id,
            status=DocumentStatus.PROCESSED,
            chunk_count=chunk_count,
            processed_at=processed_at,
            error=None,
            failed_stage=None,
        )

    async def mark_failed(self, tenant_id: str, document_id: str, stage: str, error: str) -> None:
        self._update(
            tenant_id,
            document_id,
            status=DocumentStatus.FAILED,
            error=error,
            failed_stage=stage,
        )

    async def list_pending(self, tenant_id: str, limit: int) -> list[DocumentRecord]:
        require_tenant(tenant_id)
        if limit < 1:
            raise InvalidInputError(f"limit must be >= 1, got {limit}")
        pending = [
            record for (tenant, _), record in self._records.items()
            if tenant == tenant_id and record.status in RETRYABLE_STATUSES
        ]
        return pending[:limit]

    async def delete(self, tenant_id: str, document_id: str) -> None:
        require_tenant(tenant_id)
        self._records.pop((tenant_id, document_id), None)


# ---------------------------------------------------------------------------
# FACTORY FUNCTION
# ---------------------------------------------------------------------------


def get_document_registry(
    use_postgres: bool = False,
    connection_string: str | None = None,
) -> PgDocumentRegistry | InMemoryDocumentRegistry:
    """Factory function to get the appropriate document registry."""
    if use_postgres:
        return PgDocumentRegistry(
            connection_string or os.environ.get("DATABASE_URL", "postgresql://localhost/benefits_rag"),
            table_name=os.environ.get("RAG_DOCUMENT_TABLE", "rag_documents"),
        )
    return InMemoryDocumentRegistry()
