"""
Embeddings module - text embedding generation.

The pattern:
1. Protocol (EmbeddingProvider, in core.protocols) defines the interface
2. Production implementation (OpenAIEmbeddings)
3. Test double (MockEmbeddings) and unconfigured variant (NullEmbeddingProvider)
4. Factory function (get_embedding_provider)
"""

from benefits_rag.core.protocols import EmbeddingProvider
from benefits_rag.embeddings.openai_embeddings import (
    EmbeddingConfig,
    OpenAIEmbeddings,
    MockEmbeddings,
    NullEmbeddingProvider,
    TRUNCATION_MARKER,
    get_embedding_provider,
    truncate_input,
)

__all__ = [
    "EmbeddingProvider",
    "EmbeddingConfig",
    "OpenAIEmbeddings",
    "MockEmbeddings",
    "NullEmbeddingProvider",
    "TRUNCATION_MARKER",
    "get_embedding_provider",
    "truncate_input",
]
