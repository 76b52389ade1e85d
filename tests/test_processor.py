"""
Unit Tests for the Document Processor

Tests the processing state machine end to end against in-memory
backends, with injected failures for each stage.

PATTERNS:
---------
1. In-memory backends, real MockEmbeddings
2. Small subclasses of the test doubles to inject stage failures
3. Assert on registry status as well as the raised error
"""

import asyncio
import logging
from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
import pytest

from benefits_rag.chunking import ChunkingConfig, chunk_text
from benefits_rag.core.errors import (
    DocumentProcessingError,
    EmbeddingBatchError,
    EmbeddingUnavailableError,
    IndexUnavailableError,
    InvalidInputError,
    TenantIsolationViolation,
)
from benefits_rag.core.protocols import VectorRecord
from benefits_rag.embeddings import MockEmbeddings, NullEmbeddingProvider
from benefits_rag.observability.attributes import RAG_CHUNK_COUNT, RAG_STAGE
from benefits_rag.observability.tracer import NoOpTracer
from benefits_rag.processing import (
    DocumentProcessor,
    ProcessingRun,
    ProcessingStage,
    ProcessorConfig,
)
from benefits_rag.retrieval.chunk_store import InMemoryChunkStore
from benefits_rag.retrieval.document import DocumentRecord, DocumentStatus
from benefits_rag.retrieval.registry import InMemoryDocumentRegistry
from benefits_rag.retrieval.store import InMemoryVectorIndex


# 1,199 characters -> 3 chunks at 500/100
EXAMPLE_TEXT = ("word " * 240).strip()
TENANT = "acme-corp"


# ---------------------------------------------------------------------------
# TEST DOUBLES
# ---------------------------------------------------------------------------


class PartialEmbeddings(MockEmbeddings):
    """Batch call stops at `fail_at`; single calls fail for `bad_texts`."""

    def __init__(self, fail_at: int, bad_texts=()):
        super().__init__()
        self.fail_at = fail_at
        self.bad_texts = set(bad_texts)
        self.single_calls = 0

    async def embed_batch(self, texts):
        completed = await super().embed_batch(texts[:self.fail_at])
        raise EmbeddingBatchError(self.fail_at, completed=completed)

    async def embed(self, text):
        self.single_calls += 1
        if text in self.bad_texts:
            raise EmbeddingUnavailableError("provider rejected input")
        return await super().embed(text)


class SlowEmbeddings(MockEmbeddings):
    async def embed_batch(self, texts):
        await asyncio.sleep(5)
        return await super().embed_batch(texts)


class RecordingIndex(InMemoryVectorIndex):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.upserted = []

    async def upsert(self, tenant_id, records):
        self.upserted.append(list(records))
        return await super().upsert(tenant_id, records)


class DownIndex(InMemoryVectorIndex):
    async def upsert(self, tenant_id, records):
        raise IndexUnavailableError("index unreachable")


class RejectingIndex(InMemoryVectorIndex):
    async def upsert(self, tenant_id, records):
        raise InvalidInputError("record rejected by index")


def _build(embeddings=None, index=None, stage_timeout=5.0, tracer=None):
    parts = SimpleNamespace(
        embeddings=embeddings or MockEmbeddings(),
        index=index if index is not None else RecordingIndex(),
        store=InMemoryChunkStore(),
        registry=InMemoryDocumentRegistry(),
    )
    parts.processor = DocumentProcessor(
        parts.embeddings,
        parts.index,
        parts.store,
        parts.registry,
        config=ProcessorConfig(
            stage_timeout_seconds=stage_timeout,
            chunking=ChunkingConfig(max_chunk_size=500, overlap_size=100),
        ),
        tracer=tracer or NoOpTracer(),
    )
    return parts


@pytest.fixture
def parts():
    return _build()


# ---------------------------------------------------------------------------
# HAPPY PATH
# ---------------------------------------------------------------------------


class TestProcessDocument:
    """Test a full successful run."""

    @pytest.mark.asyncio
    async def test_example_document(self, parts):
        result = await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT, {"title": "Health Plan"})

        assert result.stage is ProcessingStage.COMPLETED
        assert (result.chunk_count, result.embedded_count, result.vectors_upserted) == (3, 3, 3)
        assert await parts.store.list_chunk_ids(TENANT, "doc1") == [
            "doc1_chunk_0", "doc1_chunk_1", "doc1_chunk_2",
        ]
        stats = await parts.index.stats(TENANT)
        assert (stats.total_vectors, stats.dimension) == (3, 384)

    @pytest.mark.asyncio
    async def test_registry_marked_processed(self, parts):
        result = await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        record = await parts.registry.get(TENANT, "doc1")

        assert record.status is DocumentStatus.PROCESSED
        assert record.chunk_count == 3
        assert record.processed_at == result.processed_at

    @pytest.mark.asyncio
    async def test_chunk_metadata(self, parts):
        await parts.processor.process_document(
            "doc1", TENANT, EXAMPLE_TEXT, {"title": "Health Plan", "category": "health", "tags": ["ppo"]}
        )

        chunk = await parts.store.get_chunk(TENANT, "doc1_chunk_1")

        assert chunk.chunk_index == 1
        assert chunk.metadata["title"] == "Health Plan"
        assert chunk.metadata["category"] == "health"
        assert chunk.metadata["tags"] == ["ppo"]
        assert chunk.metadata["document_id"] == "doc1"
        assert chunk.metadata["tenant_id"] == TENANT
        assert (chunk.metadata["start_offset"], chunk.metadata["end_offset"]) == (400, 900)

    @pytest.mark.asyncio
    async def test_upsert_in_chunk_order(self, parts):
        await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        assert len(parts.index.upserted) == 1
        assert [r.metadata["chunk_index"] for r in parts.index.upserted[0]] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_empty_document_completes_with_zero_chunks(self, parts):
        result = await parts.processor.process_document("empty", TENANT, "  \n\n  ")

        assert result.stage is ProcessingStage.COMPLETED
        assert result.chunk_count == 0
        assert parts.index.upserted == []
        record = await parts.registry.get(TENANT, "empty")
        assert (record.status, record.chunk_count) == (DocumentStatus.PROCESSED, 0)

    @pytest.mark.asyncio
    async def test_existing_registry_record_is_updated(self, parts):
        await parts.registry.register(DocumentRecord(id="doc1", tenant_id=TENANT, title="Uploaded"))

        await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        record = await parts.registry.get(TENANT, "doc1")
        assert record.title == "Uploaded"
        assert record.status is DocumentStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_span_records_chunk_count(self):
        tracer = MagicMock()
        span = tracer.start_span.return_value.__enter__.return_value
        parts = _build(tracer=tracer)

        await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        assert tracer.start_span.call_args.args[0] == "rag.process_document"
        span.set_attribute.assert_any_call(RAG_CHUNK_COUNT, 3)
        span.set_attribute.assert_any_call(RAG_STAGE, "completed")


# ---------------------------------------------------------------------------
# IDEMPOTENCE
# ---------------------------------------------------------------------------


class TestIdempotence:
    """Re-running a document overwrites instead of duplicating."""

    @pytest.mark.asyncio
    async def test_processing_twice_keeps_counts(self, parts):
        await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)
        await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        assert (await parts.index.stats(TENANT)).total_vectors == 3
        assert len(await parts.store.list_chunk_ids(TENANT, "doc1")) == 3

    @pytest.mark.asyncio
    async def test_shorter_version_removes_stale_chunks(self, parts):
        await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)
        await parts.processor.process_document("doc1", TENANT, "The deductible is now $750.")

        assert await parts.store.list_chunk_ids(TENANT, "doc1") == ["doc1_chunk_0"]
        assert (await parts.index.stats(TENANT)).total_vectors == 1

    @pytest.mark.asyncio
    async def test_reprocess_document(self, parts):
        await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        result = await parts.processor.reprocess_document("doc1", TENANT, "Short replacement text.")

        assert result.chunk_count == 1
        assert await parts.store.list_chunk_ids(TENANT, "doc1") == ["doc1_chunk_0"]
        assert (await parts.index.stats(TENANT)).total_vectors == 1

    @pytest.mark.asyncio
    async def test_concurrent_runs_for_one_document(self, parts):
        results = await asyncio.gather(
            parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT),
            parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT),
        )

        assert all(r.stage is ProcessingStage.COMPLETED for r in results)
        assert (await parts.index.stats(TENANT)).total_vectors == 3
        assert parts.processor._locks == {}


class TestDocumentLocks:
    """Per-document locks live only while a run holds or waits for them."""

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, parts):
        await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)
        await parts.processor.delete_document(TENANT, "doc1")

        assert parts.processor._locks == {}

    @pytest.mark.asyncio
    async def test_lock_released_after_failed_run(self):
        parts = _build(index=DownIndex())

        with pytest.raises(DocumentProcessingError):
            await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        assert parts.processor._locks == {}

    @pytest.mark.asyncio
    async def test_many_documents_leave_no_locks(self, parts):
        await asyncio.gather(*(
            parts.processor.process_document(f"doc{i}", TENANT, "Dental cleanings twice a year.")
            for i in range(20)
        ))

        assert parts.processor._locks == {}


# ---------------------------------------------------------------------------
# PARTIAL AND FAILED RUNS
# ---------------------------------------------------------------------------


class TestEmbeddingFailures:
    """Test stage-local embedding failures."""

    @pytest.mark.asyncio
    async def test_partial_batch_keeps_completed_and_retries_rest(self):
        last_chunk = chunk_text(EXAMPLE_TEXT, 500, 100)[2]
        embeddings = PartialEmbeddings(fail_at=1, bad_texts=[last_chunk])
        parts = _build(embeddings=embeddings)

        result = await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        assert result.stage is ProcessingStage.COMPLETED
        assert (result.chunk_count, result.embedded_count, result.vectors_upserted) == (3, 2, 2)
        assert result.skipped_chunk_ids == ["doc1_chunk_2"]
        assert embeddings.single_calls == 2
        # Every chunk is stored even without a vector
        assert len(await parts.store.list_chunk_ids(TENANT, "doc1")) == 3
        assert (await parts.index.stats(TENANT)).total_vectors == 2

    @pytest.mark.asyncio
    async def test_no_vectors_from_available_provider_fails_run(self):
        chunks = chunk_text(EXAMPLE_TEXT, 500, 100)
        parts = _build(embeddings=PartialEmbeddings(fail_at=0, bad_texts=chunks))

        with pytest.raises(DocumentProcessingError) as exc_info:
            await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        assert exc_info.value.stage == "embedding"
        assert len(await parts.store.list_chunk_ids(TENANT, "doc1")) == 3
        record = await parts.registry.get(TENANT, "doc1")
        assert (record.status, record.failed_stage) == (DocumentStatus.FAILED, "embedding")

    @pytest.mark.asyncio
    async def test_unconfigured_provider_stores_chunks_only(self, caplog):
        parts = _build(embeddings=NullEmbeddingProvider())

        with caplog.at_level(logging.WARNING, logger="benefits_rag.processing.processor"):
            result = await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        assert result.stage is ProcessingStage.COMPLETED
        assert (result.chunk_count, result.embedded_count, result.vectors_upserted) == (3, 0, 0)
        assert len(await parts.store.list_chunk_ids(TENANT, "doc1")) == 3
        assert parts.index.upserted == []
        assert "keyword search only" in caplog.text

    @pytest.mark.asyncio
    async def test_embedding_timeout_fails_stage(self):
        parts = _build(embeddings=SlowEmbeddings(), stage_timeout=0.05)

        with pytest.raises(DocumentProcessingError) as exc_info:
            await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        assert exc_info.value.stage == "embedding"
        assert exc_info.value.document_id == "doc1"
        assert isinstance(exc_info.value.__cause__, asyncio.TimeoutError)


class TestUpsertFailures:
    """The write path fails explicitly on index outages."""

    @pytest.mark.asyncio
    async def test_index_outage_fails_run(self):
        parts = _build(index=DownIndex())

        with pytest.raises(DocumentProcessingError) as exc_info:
            await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        assert exc_info.value.stage == "upserting"
        assert isinstance(exc_info.value.__cause__, IndexUnavailableError)
        record = await parts.registry.get(TENANT, "doc1")
        assert record.status is DocumentStatus.FAILED
        assert record.failed_stage == "upserting"
        assert "index unreachable" in record.error
        # Side-store writes are kept
        assert len(await parts.store.list_chunk_ids(TENANT, "doc1")) == 3

    @pytest.mark.asyncio
    async def test_index_rejecting_records_fails_run(self):
        parts = _build(index=RejectingIndex())

        with pytest.raises(DocumentProcessingError) as exc_info:
            await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        assert exc_info.value.stage == "upserting"
        assert isinstance(exc_info.value.__cause__, InvalidInputError)
        record = await parts.registry.get(TENANT, "doc1")
        assert record.status is DocumentStatus.FAILED
        assert record.failed_stage == "upserting"
        assert "record rejected by index" in record.error

    @pytest.mark.asyncio
    async def test_dimension_mismatch_fails_run(self):
        index = InMemoryVectorIndex()
        await index.upsert(TENANT, [VectorRecord(id="seed", vector=np.ones(16, dtype=np.float32))])
        parts = _build(embeddings=MockEmbeddings(dimensions=8), index=index)

        with pytest.raises(DocumentProcessingError) as exc_info:
            await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        assert exc_info.value.stage == "upserting"
        record = await parts.registry.get(TENANT, "doc1")
        assert record.status is DocumentStatus.FAILED
        assert record.failed_stage == "upserting"
        # Nothing from the rejected batch reached the index
        assert (await index.stats(TENANT)).total_vectors == 1

    @pytest.mark.asyncio
    async def test_rejected_upsert_reported_by_pending_run(self):
        parts = _build(index=RejectingIndex())
        await parts.registry.register(DocumentRecord(id="doc1", tenant_id=TENANT, content=EXAMPLE_TEXT))

        outcomes = await parts.processor.process_pending(TENANT)

        assert outcomes[0].succeeded is False
        record = await parts.registry.get(TENANT, "doc1")
        assert record.status is DocumentStatus.FAILED
        assert record.failed_stage == "upserting"


class TestCallerErrors:
    """Caller bugs are raised unchanged and not recorded as failures."""

    @pytest.mark.asyncio
    async def test_blank_tenant(self, parts):
        with pytest.raises(TenantIsolationViolation):
            await parts.processor.process_document("doc1", "", EXAMPLE_TEXT)

    @pytest.mark.asyncio
    async def test_blank_document_id(self, parts):
        with pytest.raises(InvalidInputError):
            await parts.processor.process_document(" ", TENANT, EXAMPLE_TEXT)

    @pytest.mark.asyncio
    async def test_invalid_metadata(self, parts):
        with pytest.raises(InvalidInputError):
            await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT, {"page_number": 0})

        assert await parts.registry.get(TENANT, "doc1") is None


# ---------------------------------------------------------------------------
# DELETION
# ---------------------------------------------------------------------------


class TestDeleteDocument:
    """Deletion removes every trace of a document."""

    @pytest.mark.asyncio
    async def test_delete_with_filtered_delete(self, parts):
        await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)
        await parts.processor.process_document("doc2", TENANT, "Dental cleanings twice a year.")

        removed = await parts.processor.delete_document(TENANT, "doc1")

        assert removed == 3
        assert await parts.store.list_chunk_ids(TENANT, "doc1") == []
        assert (await parts.index.stats(TENANT)).total_vectors == 1
        assert await parts.registry.get(TENANT, "doc1") is None

    @pytest.mark.asyncio
    async def test_delete_without_filtered_delete_enumerates_ids(self, caplog):
        parts = _build(index=RecordingIndex(filtered_delete=False))
        await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)

        with caplog.at_level(logging.WARNING, logger="benefits_rag.processing.processor"):
            await parts.processor.delete_document(TENANT, "doc1")

        assert (await parts.index.stats(TENANT)).total_vectors == 0
        assert await parts.store.list_chunk_ids(TENANT, "doc1") == []
        assert "cannot delete by document" in caplog.text

    @pytest.mark.asyncio
    async def test_delete_scoped_to_tenant(self, parts):
        await parts.processor.process_document("doc1", TENANT, EXAMPLE_TEXT)
        await parts.processor.process_document("doc1", "globex", EXAMPLE_TEXT)

        await parts.processor.delete_document("globex", "doc1")

        assert (await parts.index.stats(TENANT)).total_vectors == 3
        assert (await parts.index.stats("globex")).total_vectors == 0

    @pytest.mark.asyncio
    async def test_delete_unknown_document(self, parts):
        assert await parts.processor.delete_document(TENANT, "missing") == 0


# ---------------------------------------------------------------------------
# PENDING DOCUMENTS
# ---------------------------------------------------------------------------


class TestProcessPending:
    """Batch processing of registered documents."""

    @pytest.mark.asyncio
    async def test_processes_pending_and_reports_failures(self, parts):
        await parts.registry.register(DocumentRecord(id="doc1", tenant_id=TENANT, content=EXAMPLE_TEXT))
        await parts.registry.register(
            DocumentRecord(id="doc2", tenant_id=TENANT, content="Dental cleanings twice a year.")
        )
        await parts.registry.register(
            DocumentRecord(id="doc3", tenant_id=TENANT, content="text", metadata={"page_number": -1})
        )

        outcomes = await parts.processor.process_pending(TENANT, limit=10)

        assert [(o.document_id, o.succeeded) for o in outcomes] == [
            ("doc1", True), ("doc2", True), ("doc3", False),
        ]
        assert outcomes[0].result.chunk_count == 3
        assert "page_number" in outcomes[2].error
        remaining = await parts.registry.list_pending(TENANT, limit=10)
        assert [r.id for r in remaining] == ["doc3"]
        assert remaining[0].failed_stage == "pending"

    @pytest.mark.asyncio
    async def test_processing_failure_reported_not_raised(self):
        parts = _build(index=DownIndex())
        await parts.registry.register(DocumentRecord(id="doc1", tenant_id=TENANT, content=EXAMPLE_TEXT))

        outcomes = await parts.processor.process_pending(TENANT)

        assert outcomes[0].succeeded is False
        assert "upserting" in outcomes[0].error


# ---------------------------------------------------------------------------
# STATE MACHINE AND CONFIG
# ---------------------------------------------------------------------------


class TestProcessingRun:
    """Only legal transitions are recorded."""

    def test_happy_path(self):
        run = ProcessingRun(document_id="doc1", tenant_id=TENANT)
        for stage in (
            ProcessingStage.CHUNKING,
            ProcessingStage.EMBEDDING,
            ProcessingStage.UPSERTING,
            ProcessingStage.COMPLETED,
        ):
            run.advance(stage)

        assert run.finished
        assert run.history[0] is ProcessingStage.PENDING
        assert len(run.history) == 5

    def test_failed_reachable_from_any_in_progress_stage(self):
        for path in ([], [ProcessingStage.CHUNKING], [ProcessingStage.CHUNKING, ProcessingStage.EMBEDDING]):
            run = ProcessingRun(document_id="doc1", tenant_id=TENANT)
            for stage in path:
                run.advance(stage)
            run.advance(ProcessingStage.FAILED)
            assert run.stage is ProcessingStage.FAILED

    def test_illegal_transition(self):
        run = ProcessingRun(document_id="doc1", tenant_id=TENANT)

        with pytest.raises(ValueError):
            run.advance(ProcessingStage.UPSERTING)

    def test_terminal_states_are_final(self):
        run = ProcessingRun(document_id="doc1", tenant_id=TENANT)
        run.advance(ProcessingStage.FAILED)

        with pytest.raises(ValueError):
            run.advance(ProcessingStage.CHUNKING)


class TestProcessorConfig:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("RAG_STAGE_TIMEOUT", "12.5")
        monkeypatch.setenv("RAG_CHUNK_MAX_SIZE", "800")
        monkeypatch.setenv("RAG_CHUNK_OVERLAP", "80")

        config = ProcessorConfig.from_env()

        assert config.stage_timeout_seconds == 12.5
        assert (config.chunking.max_chunk_size, config.chunking.overlap_size) == (800, 80)
