"""
Unit Tests for the Chunk Side Store and Document Registry

Tests the in-memory implementations: tenant scoping, ordering, keyword
scoring and document status transitions.
"""

from datetime import datetime, timezone

import numpy as np
import pytest

from benefits_rag.core.errors import InvalidInputError, TenantIsolationViolation
from benefits_rag.core.protocols import ChunkStore, DocumentRegistry
from benefits_rag.retrieval.chunk_store import (
    InMemoryChunkStore,
    extract_terms,
    get_chunk_store,
    PgChunkStore,
    rank_by_keywords,
)
from benefits_rag.retrieval.document import (
    DocumentChunk,
    DocumentRecord,
    DocumentStatus,
    make_chunk_id,
)
from benefits_rag.retrieval.registry import InMemoryDocumentRegistry, get_document_registry


# ---------------------------------------------------------------------------
# FIXTURES
# ---------------------------------------------------------------------------


def _chunk(document_id, index, content, tenant_id="acme-corp", **metadata):
    return DocumentChunk(
        id=make_chunk_id(document_id, index),
        document_id=document_id,
        tenant_id=tenant_id,
        content=content,
        chunk_index=index,
        embedding=np.ones(3, dtype=np.float32),
        metadata=metadata,
    )


@pytest.fixture
def chunks():
    return [
        _chunk("doc1", 1, "After the deductible, the plan pays 80%.", title="Health Plan"),
        _chunk("doc1", 0, "The PPO deductible is $500 per year. Deductible resets in January.", title="Health Plan"),
        _chunk("doc2", 0, "Dental cleanings are covered twice a year.", title="Dental"),
    ]


@pytest.fixture
def store():
    return InMemoryChunkStore()


@pytest.fixture
def registry():
    return InMemoryDocumentRegistry()


class TestChunkIds:
    """Chunk ids are a pure function of document id and index."""

    def test_format(self):
        assert make_chunk_id("doc1", 0) == "doc1_chunk_0"

    def test_stable(self):
        assert make_chunk_id("doc1", 2) == make_chunk_id("doc1", 2)


# ---------------------------------------------------------------------------
# CHUNK STORE
# ---------------------------------------------------------------------------


class TestInMemoryChunkStore:
    """Test chunk persistence."""

    def test_satisfies_protocol(self, store):
        assert isinstance(store, ChunkStore)

    @pytest.mark.asyncio
    async def test_save_and_get(self, store, chunks):
        assert await store.save_chunks(chunks) == 3

        chunk = await store.get_chunk("acme-corp", "doc1_chunk_0")

        assert chunk.content.startswith("The PPO deductible")
        assert chunk.title == "Health Plan"

    @pytest.mark.asyncio
    async def test_vectors_not_stored(self, store, chunks):
        await store.save_chunks(chunks)

        chunk = await store.get_chunk("acme-corp", "doc1_chunk_0")

        assert chunk.embedding is None
        assert chunks[1].embedding is not None

    @pytest.mark.asyncio
    async def test_get_chunks_skips_missing(self, store, chunks):
        await store.save_chunks(chunks)

        found = await store.get_chunks("acme-corp", ["doc1_chunk_0", "doc9_chunk_0"])

        assert list(found) == ["doc1_chunk_0"]

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_read(self, store, chunks):
        await store.save_chunks(chunks)

        assert await store.get_chunk("globex", "doc1_chunk_0") is None
        assert await store.get_chunks("globex", ["doc1_chunk_0"]) == {}
        assert await store.list_chunk_ids("globex", "doc1") == []

    @pytest.mark.asyncio
    async def test_blank_tenant_rejected(self, store, chunks):
        with pytest.raises(TenantIsolationViolation):
            await store.get_chunk("", "doc1_chunk_0")
        with pytest.raises(TenantIsolationViolation):
            await store.save_chunks([_chunk("doc1", 0, "text", tenant_id="")])

    @pytest.mark.asyncio
    async def test_list_chunk_ids_ordered_by_index(self, store, chunks):
        await store.save_chunks(chunks)

        assert await store.list_chunk_ids("acme-corp", "doc1") == ["doc1_chunk_0", "doc1_chunk_1"]

    @pytest.mark.asyncio
    async def test_delete_document_chunks(self, store, chunks):
        await store.save_chunks(chunks)

        removed = await store.delete_document_chunks("acme-corp", "doc1")

        assert removed == 2
        assert await store.list_chunk_ids("acme-corp", "doc1") == []
        assert await store.list_chunk_ids("acme-corp", "doc2") == ["doc2_chunk_0"]

    @pytest.mark.asyncio
    async def test_delete_chunks(self, store, chunks):
        await store.save_chunks(chunks)

        assert await store.delete_chunks("acme-corp", ["doc1_chunk_1", "missing"]) == 1

    @pytest.mark.asyncio
    async def test_save_overwrites_by_id(self, store, chunks):
        await store.save_chunks(chunks)
        await store.save_chunks([_chunk("doc2", 0, "Orthodontia is covered for dependents.")])

        chunk = await store.get_chunk("acme-corp", "doc2_chunk_0")

        assert chunk.content == "Orthodontia is covered for dependents."
        assert await store.list_chunk_ids("acme-corp", "doc2") == ["doc2_chunk_0"]


class TestKeywordSearch:
    """Test keyword fallback scoring."""

    def test_extract_terms(self):
        assert extract_terms("What is the PPO deductible? The deductible!") == ["what", "the", "ppo", "deductible"]

    def test_extract_terms_drops_short_words(self):
        assert extract_terms("is a HSA ok") == ["hsa"]

    @pytest.mark.asyncio
    async def test_ranked_by_occurrences(self, store, chunks):
        await store.save_chunks(chunks)

        hits = await store.keyword_search("acme-corp", "deductible", limit=5)

        assert [chunk.id for chunk, _ in hits] == ["doc1_chunk_0", "doc1_chunk_1"]
        assert hits[0][1] == pytest.approx(1.0)
        assert hits[1][1] == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_limit(self, store, chunks):
        await store.save_chunks(chunks)

        hits = await store.keyword_search("acme-corp", "deductible", limit=1)

        assert len(hits) == 1

    @pytest.mark.asyncio
    async def test_no_match_is_empty(self, store, chunks):
        await store.save_chunks(chunks)

        assert await store.keyword_search("acme-corp", "retirement", limit=5) == []

    @pytest.mark.asyncio
    async def test_scoped_to_tenant(self, store, chunks):
        await store.save_chunks(chunks)

        assert await store.keyword_search("globex", "deductible", limit=5) == []

    @pytest.mark.asyncio
    async def test_invalid_limit(self, store, chunks):
        await store.save_chunks(chunks)

        with pytest.raises(InvalidInputError):
            await store.keyword_search("acme-corp", "deductible", limit=0)

    def test_ties_broken_by_document_and_index(self):
        tied = [_chunk("doc2", 0, "hsa"), _chunk("doc1", 1, "hsa"), _chunk("doc1", 0, "hsa")]

        hits = rank_by_keywords(tied, ["hsa"], limit=3)

        assert [chunk.id for chunk, _ in hits] == ["doc1_chunk_0", "doc1_chunk_1", "doc2_chunk_0"]


class TestGetChunkStore:
    """Test the factory."""

    def test_default_is_in_memory(self):
        assert isinstance(get_chunk_store(), InMemoryChunkStore)

    def test_postgres_table_from_env(self, monkeypatch):
        monkeypatch.setenv("RAG_CHUNK_TABLE", "tenant_chunks")

        store = get_chunk_store(use_postgres=True, connection_string="postgresql://db/rag")

        assert isinstance(store, PgChunkStore)
        assert store.table_name == "tenant_chunks"


# ---------------------------------------------------------------------------
# DOCUMENT REGISTRY
# ---------------------------------------------------------------------------


class TestInMemoryDocumentRegistry:
    """Test document status tracking."""

    def test_satisfies_protocol(self, registry):
        assert isinstance(registry, DocumentRegistry)

    @pytest.mark.asyncio
    async def test_register_and_get(self, registry):
        await registry.register(DocumentRecord(id="doc1", tenant_id="acme-corp", title="Health Plan"))

        record = await registry.get("acme-corp", "doc1")

        assert record.title == "Health Plan"
        assert record.status is DocumentStatus.PENDING
        assert await registry.get("globex", "doc1") is None

    @pytest.mark.asyncio
    async def test_status_transitions(self, registry):
        await registry.register(DocumentRecord(id="doc1", tenant_id="acme-corp"))
        processed_at = datetime(2025, 1, 1, tzinfo=timezone.utc)

        await registry.mark_processing("acme-corp", "doc1")
        assert (await registry.get("acme-corp", "doc1")).status is DocumentStatus.PROCESSING

        await registry.mark_failed("acme-corp", "doc1", "embedding", "provider down")
        record = await registry.get("acme-corp", "doc1")
        assert (record.status, record.failed_stage, record.error) == (
            DocumentStatus.FAILED, "embedding", "provider down",
        )

        await registry.mark_processed("acme-corp", "doc1", 3, processed_at)
        record = await registry.get("acme-corp", "doc1")
        assert record.status is DocumentStatus.PROCESSED
        assert (record.chunk_count, record.processed_at) == (3, processed_at)
        assert record.error is None and record.failed_stage is None

    @pytest.mark.asyncio
    async def test_list_pending_includes_failed_in_registration_order(self, registry):
        for doc_id in ["doc1", "doc2", "doc3", "doc4"]:
            await registry.register(DocumentRecord(id=doc_id, tenant_id="acme-corp"))
        await registry.register(DocumentRecord(id="doc5", tenant_id="globex"))
        await registry.mark_processed("acme-corp", "doc2", 1, datetime.now(timezone.utc))
        await registry.mark_failed("acme-corp", "doc3", "upserting", "index down")
        await registry.mark_processing("acme-corp", "doc4")

        pending = await registry.list_pending("acme-corp", limit=10)

        assert [r.id for r in pending] == ["doc1", "doc3"]
        assert [r.id for r in await registry.list_pending("acme-corp", limit=1)] == ["doc1"]

    @pytest.mark.asyncio
    async def test_list_pending_invalid_limit(self, registry):
        with pytest.raises(InvalidInputError):
            await registry.list_pending("acme-corp", limit=0)

    @pytest.mark.asyncio
    async def test_delete(self, registry):
        await registry.register(DocumentRecord(id="doc1", tenant_id="acme-corp"))

        await registry.delete("acme-corp", "doc1")

        assert await registry.get("acme-corp", "doc1") is None

    @pytest.mark.asyncio
    async def test_marking_unknown_document_is_noop(self, registry):
        await registry.mark_processing("acme-corp", "missing")
        assert await registry.get("acme-corp", "missing") is None

    def test_factory(self):
        assert isinstance(get_document_registry(), InMemoryDocumentRegistry)
