"""
Document processor - turns a source document into stored chunks and
tenant-scoped vectors.

STATE MACHINE:
--------------
PENDING -> CHUNKING -> EMBEDDING -> UPSERTING -> COMPLETED

Every stage before COMPLETED may move to FAILED instead. CHUNKING and
EMBEDDING may skip straight to COMPLETED when there is nothing to embed
or index.

- CHUNKING: split the normalized text; zero chunks completes immediately
- EMBEDDING: embed every chunk, persist all chunks to the side store
  whether or not their embedding succeeded
- UPSERTING: write the embedded chunks to the vector index in one call
- COMPLETED: the registry records chunk_count and processed_at

Failures inside a stage surface as DocumentProcessingError(document_id,
stage) and the registry records the document as failed. The processor
never retries on its own; chunk ids are deterministic, so re-running a
document overwrites instead of duplicating.

Caller bugs (blank tenant, invalid metadata) are rejected before the run
starts and never recorded as a processing failure. Inside a run only
TenantIsolationViolation escapes unwrapped.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator

import numpy as np
from pydantic import ValidationError

from benefits_rag.chunking import ChunkingConfig, TextChunk, split_text
from benefits_rag.core.errors import (
    DocumentProcessingError,
    EmbeddingBatchError,
    InvalidInputError,
    RagError,
    TenantIsolationViolation,
)
from benefits_rag.core.protocols import (
    ChunkStore,
    DocumentRegistry,
    EmbeddingProvider,
    VectorIndex,
    VectorRecord,
)
from benefits_rag.core.tenancy import TENANT_KEY, require_tenant
from benefits_rag.observability.attributes import (
    RAG_CHUNK_COUNT,
    RAG_EMBEDDED_COUNT,
    RAG_STAGE,
    RAG_VECTORS_UPSERTED,
    processing_attributes,
)
from benefits_rag.observability.tracer import TracerProtocol, get_tracer
from benefits_rag.retrieval.document import (
    DocumentChunk,
    DocumentRecord,
    DocumentStatus,
    make_chunk_id,
)
from benefits_rag.schemas.documents import DocumentMetadata

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# STATE MACHINE
# ---------------------------------------------------------------------------


class ProcessingStage(str, Enum):
    PENDING = "pending"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    UPSERTING = "upserting"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[ProcessingStage, tuple[ProcessingStage, ...]] = {
    ProcessingStage.PENDING: (ProcessingStage.CHUNKING, ProcessingStage.FAILED),
    ProcessingStage.CHUNKING: (
        ProcessingStage.EMBEDDING,
        ProcessingStage.COMPLETED,  # empty document
        ProcessingStage.FAILED,
    ),
    ProcessingStage.EMBEDDING: (
        ProcessingStage.UPSERTING,
        ProcessingStage.COMPLETED,  # nothing was embedded
        ProcessingStage.FAILED,
    ),
    ProcessingStage.UPSERTING: (ProcessingStage.COMPLETED, ProcessingStage.FAILED),
    ProcessingStage.COMPLETED: (),
    ProcessingStage.FAILED: (),
}


@dataclass
class ProcessingRun:
    """One attempt at processing a document; only legal transitions are recorded."""
    document_id: str
    tenant_id: str
    stage: ProcessingStage = ProcessingStage.PENDING
    history: list[ProcessingStage] = field(default_factory=lambda: [ProcessingStage.PENDING])

    def advance(self, to: ProcessingStage) -> None:
        if to not in _TRANSITIONS[self.stage]:
            raise ValueError(f"Illegal processing transition {self.stage.value} -> {to.value}")
        self.stage = to
        self.history.append(to)

    @property
    def finished(self) -> bool:
        return self.stage in (ProcessingStage.COMPLETED, ProcessingStage.FAILED)


@dataclass
class ProcessingResult:
    """Outcome of a completed run."""
    document_id: str
    tenant_id: str
    stage: ProcessingStage
    chunk_count: int
    embedded_count: int
    vectors_upserted: int
    processed_at: datetime
    skipped_chunk_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "tenant_id": self.tenant_id,
            "stage": self.stage.value,
            "chunk_count": self.chunk_count,
            "embedded_count": self.embedded_count,
            "vectors_upserted": self.vectors_upserted,
            "processed_at": self.processed_at.isoformat(),
            "skipped_chunk_ids": self.skipped_chunk_ids,
        }


@dataclass
class PendingOutcome:
    """Per-document outcome of process_pending()."""
    document_id: str
    result: ProcessingResult | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None


# ---------------------------------------------------------------------------
# CONFIGURATION
# ---------------------------------------------------------------------------


@dataclass
class ProcessorConfig:
    """Processor settings.

    Environment Variables:
        RAG_STAGE_TIMEOUT: Seconds allowed per external stage call (default: 60)
        RAG_CHUNK_MAX_SIZE / RAG_CHUNK_OVERLAP: see ChunkingConfig
    """

    stage_timeout_seconds: float = 60.0
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)

    @classmethod
    def from_env(cls) -> "ProcessorConfig":
        """Load config from environment variables."""
        return cls(
            stage_timeout_seconds=float(os.environ.get("RAG_STAGE_TIMEOUT", "60")),
            chunking=ChunkingConfig.from_env(),
        )


def validate_metadata(metadata: DocumentMetadata | dict[str, Any] | None) -> DocumentMetadata:
    """Coerce caller metadata into DocumentMetadata, raising InvalidInputError."""
    if isinstance(metadata, DocumentMetadata):
        return metadata
    try:
        return DocumentMetadata.model_validate(metadata or {})
    except ValidationError as e:
        raise InvalidInputError(f"Invalid document metadata: {e}") from e


# ---------------------------------------------------------------------------
# PROCESSOR
# ---------------------------------------------------------------------------


class DocumentProcessor:
    """
    Orchestrates chunking, embedding and indexing for one document at a time.

    Runs for the same (tenant, document) are serialized by a per-document
    lock; runs for different documents proceed concurrently.
    """

    def __init__(
        self,
        embeddings: EmbeddingProvider,
        index: VectorIndex,
        chunk_store: ChunkStore,
        registry: DocumentRegistry,
        config: ProcessorConfig | None = None,
        tracer: TracerProtocol | None = None,
    ):
        self._embeddings = embeddings
        self._index = index
        self._chunk_store = chunk_store
        self._registry = registry
        self.config = config or ProcessorConfig()
        self._tracer = tracer or get_tracer()
        # (tenant, document) -> (lock, runs holding or waiting for it)
        self._locks: dict[tuple[str, str], tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _document_lock(self, tenant_id: str, document_id: str) -> AsyncIterator[None]:
        """Serialize runs for one document; the entry is dropped with its last user."""
        key = (tenant_id, document_id)
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users == 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    async def _bounded(self, awaitable):
        return await asyncio.wait_for(awaitable, self.config.stage_timeout_seconds)

    # -- public API ---------------------------------------------------------

    async def process_document(
        self,
        document_id: str,
        tenant_id: str,
        content: str,
        metadata: DocumentMetadata | dict[str, Any] | None = None,
    ) -> ProcessingResult:
        """
        Chunk, embed and index a document.

        Raises:
            TenantIsolationViolation: blank tenant
            InvalidInputError: blank document id or invalid metadata
            DocumentProcessingError: a stage failed; the registry records it
        """
        require_tenant(tenant_id)
        if not isinstance(document_id, str) or not document_id.strip():
            raise InvalidInputError("document_id is required")
        doc_metadata = validate_metadata(metadata)

        async with self._document_lock(tenant_id, document_id):
            return await self._process(document_id, tenant_id, content or "", doc_metadata)

    async def reprocess_document(
        self,
        document_id: str,
        tenant_id: str,
        content: str,
        metadata: DocumentMetadata | dict[str, Any] | None = None,
    ) -> ProcessingResult:
        """Remove every indexed and stored chunk of the document, then process it again."""
        require_tenant(tenant_id)
        if not isinstance(document_id, str) or not document_id.strip():
            raise InvalidInputError("document_id is required")
        doc_metadata = validate_metadata(metadata)

        async with self._document_lock(tenant_id, document_id):
            await self._delete_artifacts(tenant_id, document_id)
            return await self._process(document_id, tenant_id, content or "", doc_metadata)

    async def delete_document(self, tenant_id: str, document_id: str) -> int:
        """
        Remove a document's vectors, stored chunks and registry entry.

        Returns:
            Number of side-store chunks removed
        """
        require_tenant(tenant_id)
        async with self._document_lock(tenant_id, document_id):
            removed = await self._delete_artifacts(tenant_id, document_id)
            await self._registry.delete(tenant_id, document_id)
        logger.info(f"Deleted document {document_id!r} for tenant {tenant_id!r} ({removed} chunks)")
        return removed

    async def process_pending(self, tenant_id: str, limit: int = 50) -> list[PendingOutcome]:
        """
        Process registered documents that are pending or previously failed.

        Per-document failures are reported in the outcomes, not raised.
        """
        require_tenant(tenant_id)
        records = await self._registry.list_pending(tenant_id, limit)
        logger.info(f"Processing {len(records)} pending document(s) for tenant {tenant_id!r}")

        outcomes: list[PendingOutcome] = []
        for record in records:
            try:
                result = await self.process_document(
                    record.id, tenant_id, record.content, record.metadata
                )
                outcomes.append(PendingOutcome(document_id=record.id, result=result))
            except InvalidInputError as e:
                await self._registry.mark_failed(tenant_id, record.id, ProcessingStage.PENDING.value, str(e))
                outcomes.append(PendingOutcome(document_id=record.id, error=str(e)))
            except DocumentProcessingError as e:
                outcomes.append(PendingOutcome(document_id=record.id, error=str(e)))

        succeeded = sum(1 for o in outcomes if o.succeeded)
        logger.info(f"Pending run for tenant {tenant_id!r}: {succeeded}/{len(outcomes)} succeeded")
        return outcomes

    # -- run ----------------------------------------------------------------

    async def _process(
        self,
        document_id: str,
        tenant_id: str,
        content: str,
        metadata: DocumentMetadata,
    ) -> ProcessingResult:
        run = ProcessingRun(document_id=document_id, tenant_id=tenant_id)
        base_metadata = metadata.to_chunk_metadata()

        with self._tracer.start_span(
            "rag.process_document", attributes=processing_attributes(tenant_id, document_id)
        ) as span:
            try:
                await self._bounded(self._ensure_registered(tenant_id, document_id, content, base_metadata))

                run.advance(ProcessingStage.CHUNKING)
                span.set_attribute(RAG_STAGE, run.stage.value)
                chunks = self._build_chunks(document_id, tenant_id, content, base_metadata)
                span.set_attribute(RAG_CHUNK_COUNT, len(chunks))

                if not chunks:
                    logger.info(f"Document {document_id!r} has no text; nothing to index")
                    await self._bounded(self._remove_stale(tenant_id, document_id, keep=set()))
                    return await self._complete(run, span, chunk_count=0, embedded=0, upserted=0)

                run.advance(ProcessingStage.EMBEDDING)
                span.set_attribute(RAG_STAGE, run.stage.value)
                skipped = await self._bounded(self._embed_chunks(chunks))
                embedded = [c for c in chunks if c.embedding is not None]
                span.set_attribute(RAG_EMBEDDED_COUNT, len(embedded))

                # Side store first: chunks stay searchable by keyword even if indexing fails
                await self._bounded(self._chunk_store.save_chunks(chunks))
                await self._bounded(self._remove_stale(tenant_id, document_id, keep={c.id for c in chunks}))

                if not embedded:
                    if self._embeddings.available:
                        raise DocumentProcessingError(
                            document_id,
                            run.stage.value,
                            f"No chunk of document {document_id!r} could be embedded",
                        )
                    logger.warning(
                        f"Embedding provider unavailable; document {document_id!r} stored "
                        "for keyword search only"
                    )
                    return await self._complete(
                        run, span, chunk_count=len(chunks), embedded=0, upserted=0, skipped=skipped
                    )

                run.advance(ProcessingStage.UPSERTING)
                span.set_attribute(RAG_STAGE, run.stage.value)
                upserted = await self._bounded(self._upsert(tenant_id, embedded))
                span.set_attribute(RAG_VECTORS_UPSERTED, upserted)

                return await self._complete(
                    run, span, chunk_count=len(chunks), embedded=len(embedded),
                    upserted=upserted, skipped=skipped,
                )

            except TenantIsolationViolation:
                raise
            except DocumentProcessingError as e:
                await self._fail(run, span, e)
                raise
            except Exception as e:
                error = DocumentProcessingError(
                    document_id,
                    run.stage.value,
                    f"Processing of document {document_id!r} failed at stage {run.stage.value}: "
                    f"{type(e).__name__}: {e}",
                )
                await self._fail(run, span, error)
                raise error from e

    async def _ensure_registered(
        self,
        tenant_id: str,
        document_id: str,
        content: str,
        metadata: dict[str, Any],
    ) -> None:
        record = await self._registry.get(tenant_id, document_id)
        if record is None:
            await self._registry.register(
                DocumentRecord(
                    id=document_id,
                    tenant_id=tenant_id,
                    title=metadata.get("title") or "",
                    content=content,
                    metadata=metadata,
                    status=DocumentStatus.PROCESSING,
                )
            )
        else:
            await self._registry.mark_processing(tenant_id, document_id)

    def _build_chunks(
        self,
        document_id: str,
        tenant_id: str,
        content: str,
        base_metadata: dict[str, Any],
    ) -> list[DocumentChunk]:
        pieces: list[TextChunk] = split_text(
            content, self.config.chunking.max_chunk_size, self.config.chunking.overlap_size
        )
        return [
            DocumentChunk(
                id=make_chunk_id(document_id, i),
                document_id=document_id,
                tenant_id=tenant_id,
                content=piece.text,
                chunk_index=i,
                metadata={
                    **base_metadata,
                    "document_id": document_id,
                    TENANT_KEY: tenant_id,
                    "chunk_index": i,
                    "start_offset": piece.start,
                    "end_offset": piece.end,
                },
            )
            for i, piece in enumerate(pieces)
        ]

    async def _embed_chunks(self, chunks: list[DocumentChunk]) -> list[str]:
        """
        Attach embeddings in place.

        A failed batch keeps its completed prefix; the remainder is retried
        one chunk at a time. Returns the ids of chunks left without a vector.
        """
        if not self._embeddings.available:
            return [c.id for c in chunks]

        texts = [c.content for c in chunks]
        try:
            vectors: list[np.ndarray] = await self._embeddings.embed_batch(texts)
            remainder_start = len(vectors)
        except EmbeddingBatchError as e:
            vectors = list(e.completed)
            remainder_start = len(vectors)
            logger.warning(
                f"Batch embedding stopped at chunk {e.start_index}; "
                f"retrying {len(chunks) - remainder_start} chunk(s) individually"
            )
        except RagError as e:
            if isinstance(e, TenantIsolationViolation):
                raise
            vectors = []
            remainder_start = 0
            logger.warning(f"Batch embedding failed ({e}); retrying {len(chunks)} chunk(s) individually")

        for chunk, vector in zip(chunks, vectors):
            chunk.embedding = vector

        skipped: list[str] = []
        for chunk in chunks[remainder_start:]:
            try:
                chunk.embedding = await self._embeddings.embed(chunk.content)
            except RagError as e:
                if isinstance(e, TenantIsolationViolation):
                    raise
                logger.warning(f"Skipping chunk {chunk.id!r}: embedding failed ({e})")
                skipped.append(chunk.id)
        return skipped

    async def _upsert(self, tenant_id: str, embedded: list[DocumentChunk]) -> int:
        ordered = sorted(embedded, key=lambda c: c.chunk_index)
        records = [
            VectorRecord(id=c.id, vector=c.embedding, metadata=dict(c.metadata))
            for c in ordered
        ]
        return await self._index.upsert(tenant_id, records)

    async def _complete(
        self,
        run: ProcessingRun,
        span,
        chunk_count: int,
        embedded: int,
        upserted: int,
        skipped: list[str] | None = None,
    ) -> ProcessingResult:
        processed_at = datetime.now(timezone.utc)
        await self._bounded(
            self._registry.mark_processed(run.tenant_id, run.document_id, chunk_count, processed_at)
        )
        run.advance(ProcessingStage.COMPLETED)
        span.set_attribute(RAG_STAGE, run.stage.value)
        span.set_status("ok")

        logger.info(
            f"Processed document {run.document_id!r} for tenant {run.tenant_id!r}: "
            f"{chunk_count} chunks, {embedded} embedded, {upserted} vectors upserted"
        )
        return ProcessingResult(
            document_id=run.document_id,
            tenant_id=run.tenant_id,
            stage=run.stage,
            chunk_count=chunk_count,
            embedded_count=embedded,
            vectors_upserted=upserted,
            processed_at=processed_at,
            skipped_chunk_ids=skipped or [],
        )

    async def _fail(self, run: ProcessingRun, span, error: DocumentProcessingError) -> None:
        failed_stage = run.stage.value
        run.advance(ProcessingStage.FAILED)
        span.record_exception(error)
        span.set_status("error", str(error))
        logger.error(str(error))
        try:
            await self._bounded(
                self._registry.mark_failed(run.tenant_id, run.document_id, failed_stage, str(error))
            )
        except (RagError, asyncio.TimeoutError) as e:
            logger.error(f"Could not record failure of document {run.document_id!r}: {e}")

    # -- deletion -----------------------------------------------------------

    async def _known_chunk_ids(self, tenant_id: str, document_id: str) -> list[str]:
        ids = await self._chunk_store.list_chunk_ids(tenant_id, document_id)
        record = await self._registry.get(tenant_id, document_id)
        if record is not None:
            ids.extend(make_chunk_id(document_id, i) for i in range(record.chunk_count))
        return list(dict.fromkeys(ids))

    async def _delete_artifacts(self, tenant_id: str, document_id: str) -> int:
        if self._index.supports_filtered_delete:
            await self._index.delete_by_document(tenant_id, document_id)
        else:
            ids = await self._known_chunk_ids(tenant_id, document_id)
            logger.warning(
                f"Vector index cannot delete by document; removing {len(ids)} "
                f"enumerated chunk id(s) of {document_id!r}"
            )
            await self._index.delete_ids(tenant_id, ids)
        return await self._chunk_store.delete_document_chunks(tenant_id, document_id)

    async def _remove_stale(self, tenant_id: str, document_id: str, keep: set[str]) -> None:
        """Drop chunks left over from a longer previous version of the document."""
        stale = [
            cid for cid in await self._known_chunk_ids(tenant_id, document_id)
            if cid not in keep
        ]
        if not stale:
            return
        logger.debug(f"Removing {len(stale)} stale chunk(s) of {document_id!r}")
        await self._index.delete_ids(tenant_id, stale)
        await self._chunk_store.delete_chunks(tenant_id, stale)
