"""
Embeddings Module - Single Responsibility: Generate text embeddings.

It has ONE job: convert text to vector embeddings.
No database logic, no chunking, no tenant handling.

KNOWN APPROXIMATION:
--------------------
Inputs longer than `max_input_chars` are TRUNCATED and suffixed with
TRUNCATION_MARKER instead of rejected. A long chunk still gets a vector
(availability) but the vector only reflects its head (precision loss).
Every truncation is logged at debug level.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass
from typing import Literal, Sequence

import numpy as np
import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI

from benefits_rag.core.errors import (
    EmbeddingBatchError,
    EmbeddingUnavailableError,
    InvalidInputError,
)
from benefits_rag.core.protocols import EmbeddingProvider

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "..."

ProviderKind = Literal["openai", "azure", "mock", "none"]

MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


# ---------------------------------------------------------------------------
# CONFIGURATION
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding provider.

    Environment Variables:
        EMBEDDING_PROVIDER: openai | azure | mock | none (auto-detected if unset)
        EMBEDDING_MODEL: Model or Azure deployment (default: text-embedding-3-small)
        EMBEDDING_DIMENSIONS: Requested vector size (model default if unset)
        EMBEDDING_BATCH_SIZE: Inputs per provider call (default: 100)
        EMBEDDING_MAX_INPUT_CHARS: Truncation budget (default: 6000)
        EMBEDDING_TIMEOUT_SECONDS: Per-call timeout (default: 30)
        OPENAI_API_KEY: OpenAI credentials
        AZURE_OPENAI_ENDPOINT / AZURE_OPENAI_API_KEY: Azure credentials
        AZURE_OPENAI_EMBEDDINGS_DEPLOYMENT: Azure deployment name
        USE_MOCK_EMBEDDINGS: Fall back to MockEmbeddings when no credentials
    """

    provider: ProviderKind = "none"
    model: str = "text-embedding-3-small"
    dimensions: int | None = None
    batch_size: int = 100
    max_input_chars: int = 6000
    timeout_seconds: float = 30.0
    api_key: str | None = None
    azure_endpoint: str | None = None
    azure_api_version: str = "2024-05-01-preview"

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        """Load config from environment variables."""
        azure_endpoint = os.environ.get("AZURE_OPENAI_ENDPOINT") or None
        azure_key = os.environ.get("AZURE_OPENAI_API_KEY") or None
        openai_key = os.environ.get("OPENAI_API_KEY") or None
        use_mock = os.environ.get("USE_MOCK_EMBEDDINGS", "false").lower() in ("true", "1", "yes")

        provider = os.environ.get("EMBEDDING_PROVIDER", "").lower() or None
        if provider is None:
            if azure_endpoint and azure_key:
                provider = "azure"
            elif openai_key:
                provider = "openai"
            elif use_mock:
                provider = "mock"
            else:
                provider = "none"

        if provider == "azure":
            model = os.environ.get("AZURE_OPENAI_EMBEDDINGS_DEPLOYMENT", "text-embedding-3-small")
            api_key = azure_key
        else:
            model = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
            api_key = openai_key

        dimensions = os.environ.get("EMBEDDING_DIMENSIONS")
        return cls(
            provider=provider,
            model=model,
            dimensions=int(dimensions) if dimensions else None,
            batch_size=int(os.environ.get("EMBEDDING_BATCH_SIZE", "100")),
            max_input_chars=int(os.environ.get("EMBEDDING_MAX_INPUT_CHARS", "6000")),
            timeout_seconds=float(os.environ.get("EMBEDDING_TIMEOUT_SECONDS", "30")),
            api_key=api_key,
            azure_endpoint=azure_endpoint,
        )


# ---------------------------------------------------------------------------
# SHARED HELPERS
# ---------------------------------------------------------------------------


def truncate_input(text: str, max_chars: int) -> str:
    """Cut `text` to `max_chars` characters and append the marker."""
    if len(text) <= max_chars:
        return text
    logger.debug(f"Truncating embedding input from {len(text)} to {max_chars} characters")
    return text[:max_chars] + TRUNCATION_MARKER


def _require_text(text: str) -> None:
    if not isinstance(text, str) or not text.strip():
        raise InvalidInputError("Text is required for embedding generation")


# ---------------------------------------------------------------------------
# OPENAI / AZURE OPENAI (Production)
# ---------------------------------------------------------------------------


class OpenAIEmbeddings:
    """
    OpenAI-based embedding provider (also serves Azure OpenAI deployments).

    Uses text-embedding-3-small by default (1536 dimensions).
    The async client is injected or built once; nothing is global.
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: str | None = None,
        dimensions: int | None = None,
        batch_size: int = 100,
        max_input_chars: int = 6000,
        timeout_seconds: float = 30.0,
        client: AsyncOpenAI | None = None,
    ):
        if batch_size < 1:
            raise InvalidInputError(f"batch_size must be >= 1, got {batch_size}")
        self.model = model
        self.batch_size = batch_size
        self.max_input_chars = max_input_chars
        self._requested_dimensions = dimensions
        self._client = client or AsyncOpenAI(
            api_key=api_key or os.environ.get("OPENAI_API_KEY"),
            timeout=timeout_seconds,
        )

    @classmethod
    def from_config(cls, config: EmbeddingConfig) -> "OpenAIEmbeddings":
        client: AsyncOpenAI
        if config.provider == "azure":
            client = AsyncAzureOpenAI(
                api_key=config.api_key,
                azure_endpoint=config.azure_endpoint,
                api_version=config.azure_api_version,
                timeout=config.timeout_seconds,
            )
        else:
            client = AsyncOpenAI(api_key=config.api_key, timeout=config.timeout_seconds)
        return cls(
            model=config.model,
            dimensions=config.dimensions,
            batch_size=config.batch_size,
            max_input_chars=config.max_input_chars,
            client=client,
        )

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions for the model."""
        if self._requested_dimensions:
            return self._requested_dimensions
        return MODEL_DIMENSIONS.get(self.model, 1536)

    @property
    def available(self) -> bool:
        return True

    async def _create(self, inputs: str | list[str]):
        kwargs = {}
        if self._requested_dimensions:
            kwargs["dimensions"] = self._requested_dimensions
        return await self._client.embeddings.create(input=inputs, model=self.model, **kwargs)

    async def embed(self, text: str) -> np.ndarray:
        """Generate embedding for a single text."""
        _require_text(text)
        try:
            response = await self._create(truncate_input(text, self.max_input_chars))
        except openai.OpenAIError as e:
            logger.error(f"Embedding request failed: {e}")
            raise EmbeddingUnavailableError(f"Failed to generate embedding: {e}") from e
        return np.array(response.data[0].embedding, dtype=np.float32)

    async def embed_batch(self, texts: Sequence[str]) -> list[np.ndarray]:
        """
        Generate embeddings in fixed-size batches, preserving input order.

        Raises:
            EmbeddingBatchError: carries the vectors of every batch that
                completed before the failing one.
        """
        if not texts:
            return []

        prepared = [truncate_input(text, self.max_input_chars) for text in texts]
        vectors: list[np.ndarray] = []

        for start in range(0, len(prepared), self.batch_size):
            batch = prepared[start:start + self.batch_size]
            try:
                response = await self._create(batch)
            except openai.OpenAIError as e:
                logger.error(f"Embedding batch starting at {start} failed: {e}")
                raise EmbeddingBatchError(start, completed=list(vectors)) from e

            items = sorted(response.data, key=lambda item: item.index)
            if len(items) != len(batch):
                raise EmbeddingBatchError(
                    start,
                    completed=list(vectors),
                    message=f"Provider returned {len(items)} vectors for {len(batch)} inputs",
                )
            vectors.extend(np.array(item.embedding, dtype=np.float32) for item in items)

        return vectors


# ---------------------------------------------------------------------------
# MOCK (Testing/Development)
# ---------------------------------------------------------------------------


class MockEmbeddings:
    """
    Mock embedding provider for testing without API calls.

    Hashes each word into a bucket, so texts sharing words get similar
    vectors and search ranking behaves plausibly.
    NOT for production use - only for testing/development.
    """

    _TOKEN = re.compile(r"[a-z0-9]+")

    def __init__(self, dimensions: int = 384, max_input_chars: int = 6000):
        self._dimensions = dimensions
        self.max_input_chars = max_input_chars

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def available(self) -> bool:
        return True

    def _vectorize(self, text: str) -> np.ndarray:
        vector = np.zeros(self._dimensions, dtype=np.float32)
        tokens = self._TOKEN.findall(text.lower()) or [text]
        for token in tokens:
            digest = hashlib.sha256(token.encode()).digest()
            bucket = int.from_bytes(digest[:4], "big") % self._dimensions
            vector[bucket] += 1.0 if digest[4] % 2 == 0 else -1.0
        norm = np.linalg.norm(vector)
        return vector / norm if norm else vector

    async def embed(self, text: str) -> np.ndarray:
        """Generate deterministic pseudo-embedding from word hashes."""
        _require_text(text)
        return self._vectorize(truncate_input(text, self.max_input_chars))

    async def embed_batch(self, texts: Sequence[str]) -> list[np.ndarray]:
        """Generate embeddings for multiple texts."""
        return [self._vectorize(truncate_input(text, self.max_input_chars)) for text in texts]


# ---------------------------------------------------------------------------
# NULL PROVIDER (Unconfigured)
# ---------------------------------------------------------------------------


class NullEmbeddingProvider:
    """
    Explicit "no embedding provider configured" variant.

    Selected at startup when credentials are absent. Every call fails with
    EmbeddingUnavailableError so the retriever takes the keyword path and
    the processor stores chunks without vectors.
    """

    def __init__(self, dimensions: int = 1536, reason: str = "no embedding provider configured"):
        self._dimensions = dimensions
        self.reason = reason

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def available(self) -> bool:
        return False

    async def embed(self, text: str) -> np.ndarray:
        _require_text(text)
        raise EmbeddingUnavailableError(self.reason)

    async def embed_batch(self, texts: Sequence[str]) -> list[np.ndarray]:
        if not texts:
            return []
        raise EmbeddingBatchError(0, message=self.reason)


# ---------------------------------------------------------------------------
# FACTORY FUNCTION
# ---------------------------------------------------------------------------


def get_embedding_provider(
    config: EmbeddingConfig | None = None,
    use_mock: bool = False,
) -> EmbeddingProvider:
    """
    Factory function to get the appropriate embedding provider.

    Args:
        config: Provider configuration (loaded from env if not provided)
        use_mock: If True, return MockEmbeddings (for testing)
    """
    if use_mock:
        return MockEmbeddings()

    config = config or EmbeddingConfig.from_env()

    if config.provider in ("openai", "azure"):
        if not config.api_key or (config.provider == "azure" and not config.azure_endpoint):
            logger.warning(
                f"Embedding provider {config.provider!r} selected without credentials; "
                "vector search disabled, keyword search only"
            )
            return NullEmbeddingProvider(
                dimensions=config.dimensions or MODEL_DIMENSIONS.get(config.model, 1536),
                reason=f"{config.provider} embedding credentials not configured",
            )
        return OpenAIEmbeddings.from_config(config)

    if config.provider == "mock":
        return MockEmbeddings(dimensions=config.dimensions or 384, max_input_chars=config.max_input_chars)

    logger.warning("No embedding provider configured; vector search disabled, keyword search only")
    return NullEmbeddingProvider(dimensions=config.dimensions or MODEL_DIMENSIONS.get(config.model, 1536))
