"""
Pipeline assembly - builds every component once and wires them together.

Components receive their collaborators through their constructors; this
is the only place that decides which implementations are used.

USAGE:
------
from benefits_rag.pipeline import build_pipeline

async with build_pipeline(use_postgres=True) as pipeline:
    await pipeline.processor.process_document("doc1", "acme-corp", text, {"title": "Health Plan"})
    results = await pipeline.retriever.search("deductible", "acme-corp", top_k=2)

Environment Variables:
    RAG_BACKEND: "memory" (default) or "postgres"
    DATABASE_URL: PostgreSQL connection string for the postgres backend
    RAG_SEARCH_TIMEOUT: Seconds allowed per search step (default: 10)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from benefits_rag.core.protocols import ChunkStore, DocumentRegistry, EmbeddingProvider, VectorIndex
from benefits_rag.embeddings import EmbeddingConfig, get_embedding_provider
from benefits_rag.observability import get_tracer
from benefits_rag.processing import DocumentProcessor, ProcessorConfig
from benefits_rag.retrieval import (
    Retriever,
    VectorIndexConfig,
    get_chunk_store,
    get_document_registry,
    get_vector_index,
)

logger = logging.getLogger(__name__)


@dataclass
class RagPipeline:
    """All components of one configured pipeline."""
    embeddings: EmbeddingProvider
    index: VectorIndex
    chunk_store: ChunkStore
    registry: DocumentRegistry
    processor: DocumentProcessor
    retriever: Retriever

    def _backends(self) -> list:
        return [self.index, self.chunk_store, self.registry]

    async def connect(self) -> None:
        for backend in self._backends():
            await backend.connect()

    async def close(self) -> None:
        for backend in self._backends():
            await backend.close()

    async def create_schema(self) -> None:
        """Create tables and indexes (no-op for in-memory backends)."""
        for backend in self._backends():
            await backend.create_schema()

    async def __aenter__(self) -> "RagPipeline":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def build_pipeline(
    use_postgres: bool | None = None,
    use_mock: bool = False,
    database_url: str | None = None,
    embedding_config: EmbeddingConfig | None = None,
    processor_config: ProcessorConfig | None = None,
) -> RagPipeline:
    """
    Build a pipeline from explicit arguments, falling back to environment config.

    Args:
        use_postgres: Postgres backends instead of in-memory (default: RAG_BACKEND)
        use_mock: Deterministic mock embeddings instead of a real provider
        database_url: Overrides DATABASE_URL
    """
    if use_postgres is None:
        use_postgres = os.environ.get("RAG_BACKEND", "memory").lower() == "postgres"

    embeddings = get_embedding_provider(embedding_config, use_mock=use_mock)

    index_config = VectorIndexConfig.from_env()
    index_config.embedding_dim = embeddings.dimensions
    if database_url:
        index_config.connection_string = database_url

    index = get_vector_index(use_postgres=use_postgres, config=index_config)
    chunk_store = get_chunk_store(use_postgres=use_postgres, connection_string=database_url)
    registry = get_document_registry(use_postgres=use_postgres, connection_string=database_url)

    tracer = get_tracer()
    processor = DocumentProcessor(
        embeddings,
        index,
        chunk_store,
        registry,
        config=processor_config or ProcessorConfig.from_env(),
        tracer=tracer,
    )
    retriever = Retriever(
        embeddings,
        index,
        chunk_store,
        timeout_seconds=float(os.environ.get("RAG_SEARCH_TIMEOUT", "10")),
        tracer=tracer,
    )

    logger.debug(
        f"Built pipeline: backend={'postgres' if use_postgres else 'memory'}, "
        f"embeddings={type(embeddings).__name__} ({embeddings.dimensions} dims)"
    )
    return RagPipeline(
        embeddings=embeddings,
        index=index,
        chunk_store=chunk_store,
        registry=registry,
        processor=processor,
        retriever=retriever,
    )
