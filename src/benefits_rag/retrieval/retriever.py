"""
Retriever - tenant-scoped search over processed documents.

Flow:
1. Validate query and tenant (errors propagate, they are caller bugs)
2. Embed the query
3. Query the vector index with the tenant filter
4. Resolve ids to chunk content through the side store (drift is dropped)
5. Normalize scores to higher-is-better similarity and sort

DEGRADATION:
------------
Any failure on the vector path (provider unconfigured or down, index
errors, timeouts) answers the same request by keyword search over the
side store; only TenantIsolationViolation propagates. SearchResponse.mode
tells the caller which path answered. Only when the fallback fails too is
SearchError raised; an empty result list always means "no matches".
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from benefits_rag.core.errors import (
    InvalidInputError,
    SearchError,
    TenantIsolationViolation,
)
from benefits_rag.core.protocols import ChunkStore, EmbeddingProvider, ScoreMetric, VectorIndex
from benefits_rag.core.tenancy import TENANT_KEY, require_tenant
from benefits_rag.observability.attributes import (
    RAG_DROPPED_COUNT,
    RAG_RESULT_COUNT,
    RAG_SEARCH_MODE,
    search_attributes,
)
from benefits_rag.observability.tracer import TracerProtocol, get_tracer
from benefits_rag.retrieval.document import RetrievalResult

logger = logging.getLogger(__name__)

SearchMode = Literal["vector", "keyword"]


@dataclass
class SearchResponse:
    """Search results plus how they were produced."""
    results: list[RetrievalResult]
    mode: SearchMode
    degraded_reason: str | None = None
    dropped_ids: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.mode != "vector"


def normalize_score(score: float, metric: ScoreMetric) -> float:
    """Convert an index-native score to higher-is-better similarity."""
    if metric == "cosine_distance":
        return 1.0 - score
    return score


class Retriever:
    """
    Search entry point for the chat/query surface.

    All collaborators are injected; nothing is created here.
    """

    def __init__(
        self,
        embeddings: EmbeddingProvider,
        index: VectorIndex,
        chunk_store: ChunkStore,
        timeout_seconds: float = 10.0,
        tracer: TracerProtocol | None = None,
    ):
        self._embeddings = embeddings
        self._index = index
        self._chunk_store = chunk_store
        self.timeout_seconds = timeout_seconds
        self._tracer = tracer or get_tracer()

    async def search(
        self,
        query: str,
        tenant_id: str,
        top_k: int = 5,
        filter: dict[str, Any] | None = None,
    ) -> list[RetrievalResult]:
        """Search and return results only, best match first."""
        response = await self.search_detailed(query, tenant_id, top_k, filter)
        return response.results

    async def search_detailed(
        self,
        query: str,
        tenant_id: str,
        top_k: int = 5,
        filter: dict[str, Any] | None = None,
    ) -> SearchResponse:
        if not isinstance(query, str) or not query.strip():
            raise InvalidInputError("Query text is required")
        require_tenant(tenant_id)
        if top_k < 1:
            raise InvalidInputError(f"top_k must be >= 1, got {top_k}")

        with self._tracer.start_span("rag.search", attributes=search_attributes(tenant_id, top_k)) as span:
            if self._embeddings.available:
                try:
                    response = await self._vector_search(query, tenant_id, top_k, filter)
                except TenantIsolationViolation:
                    raise
                except Exception as e:
                    reason = f"{type(e).__name__}: {e}"
                    logger.warning(f"Vector search unavailable for tenant {tenant_id!r}, using keyword search ({reason})")
                    span.record_exception(e)
                    response = await self._keyword_search(query, tenant_id, top_k, reason)
            else:
                response = await self._keyword_search(
                    query, tenant_id, top_k, "embedding provider not configured"
                )

            span.set_attribute(RAG_SEARCH_MODE, response.mode)
            span.set_attribute(RAG_RESULT_COUNT, len(response.results))
            span.set_attribute(RAG_DROPPED_COUNT, len(response.dropped_ids))
            return response

    async def _vector_search(
        self,
        query: str,
        tenant_id: str,
        top_k: int,
        filter: dict[str, Any] | None,
    ) -> SearchResponse:
        vector = await asyncio.wait_for(self._embeddings.embed(query), self.timeout_seconds)
        matches = await asyncio.wait_for(
            self._index.query(tenant_id, vector, top_k, filter), self.timeout_seconds
        )
        if not matches:
            return SearchResponse(results=[], mode="vector")

        chunks = await asyncio.wait_for(
            self._chunk_store.get_chunks(tenant_id, [m.id for m in matches]), self.timeout_seconds
        )

        results: list[RetrievalResult] = []
        dropped: list[str] = []
        for match in matches:
            chunk = chunks.get(match.id)
            if chunk is None:
                dropped.append(match.id)
                continue
            if chunk.tenant_id != tenant_id or match.metadata.get(TENANT_KEY, tenant_id) != tenant_id:
                raise TenantIsolationViolation(
                    f"Index returned chunk {match.id!r} outside tenant {tenant_id!r}"
                )
            results.append(RetrievalResult(chunk=chunk, score=normalize_score(match.score, self._index.metric)))

        if dropped:
            logger.warning(
                f"Dropped {len(dropped)} search hit(s) with no stored chunk for tenant {tenant_id!r}: {dropped}"
            )

        results.sort(key=lambda r: r.score, reverse=True)
        return SearchResponse(results=results, mode="vector", dropped_ids=dropped)

    async def _keyword_search(
        self,
        query: str,
        tenant_id: str,
        top_k: int,
        reason: str,
    ) -> SearchResponse:
        try:
            hits = await asyncio.wait_for(
                self._chunk_store.keyword_search(tenant_id, query, top_k), self.timeout_seconds
            )
        except TenantIsolationViolation:
            raise
        except Exception as e:
            logger.error(f"Keyword fallback failed for tenant {tenant_id!r}: {e}")
            raise SearchError(f"Search failed ({reason}); keyword fallback failed: {e}") from e

        results = [RetrievalResult(chunk=chunk, score=score) for chunk, score in hits]
        return SearchResponse(results=results, mode="keyword", degraded_reason=reason)


def build_context(results: list[RetrievalResult]) -> str:
    """Render results as a context block for an LLM prompt."""
    if not results:
        return "No relevant documents found."

    sections = []
    for i, result in enumerate(results, start=1):
        chunk = result.chunk
        sections.append(
            f"[Document {i}]\n"
            f"Title: {chunk.title or 'Untitled'}\n"
            f"Section: Chunk {chunk.chunk_index + 1}\n"
            f"Content: {chunk.content}\n"
            "---"
        )
    return "Based on the following relevant documents:\n\n" + "\n".join(sections)
