"""
Span attribute keys for the retrieval pipeline.

GenAI keys follow the OpenTelemetry GenAI conventions; everything else
lives under the custom `rag.` namespace.

Reference: https://opentelemetry.io/docs/specs/semconv/gen-ai/
"""

# ---------------------------------------------------------------------------
# GENAI NAMESPACE (OTel standard)
# ---------------------------------------------------------------------------

GEN_AI_SYSTEM = "gen_ai.system"  # "openai", "azure_openai"
GEN_AI_REQUEST_MODEL = "gen_ai.request.model"  # "text-embedding-3-small"


# ---------------------------------------------------------------------------
# RAG NAMESPACE (custom)
# ---------------------------------------------------------------------------

RAG_TENANT_ID = "rag.tenant_id"

# Processing
RAG_DOCUMENT_ID = "rag.document.id"
RAG_STAGE = "rag.processing.stage"  # "chunking", "embedding", ...
RAG_CHUNK_COUNT = "rag.processing.chunk_count"
RAG_EMBEDDED_COUNT = "rag.processing.embedded_count"
RAG_VECTORS_UPSERTED = "rag.processing.vectors_upserted"

# Search
RAG_SEARCH_TOP_K = "rag.search.top_k"
RAG_SEARCH_MODE = "rag.search.mode"  # "vector", "keyword"
RAG_RESULT_COUNT = "rag.search.result_count"
RAG_DROPPED_COUNT = "rag.search.dropped_count"  # index/store drift


# ---------------------------------------------------------------------------
# HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def search_attributes(tenant_id: str, top_k: int) -> dict:
    """Create attributes dict for a search span."""
    return {
        RAG_TENANT_ID: tenant_id,
        RAG_SEARCH_TOP_K: top_k,
    }


def processing_attributes(
    tenant_id: str,
    document_id: str,
    stage: str | None = None,
) -> dict:
    """Create attributes dict for a document processing span."""
    attrs = {
        RAG_TENANT_ID: tenant_id,
        RAG_DOCUMENT_ID: document_id,
    }
    if stage is not None:
        attrs[RAG_STAGE] = stage
    return attrs
