"""
OpenInference auto-instrumentation for the OpenAI SDK.

Once registered, every embeddings call made through AsyncOpenAI or
AsyncAzureOpenAI is traced without changes to the embedding provider.
Input text and vectors are masked unless content capture is enabled.
"""

from __future__ import annotations

import logging

from openinference.instrumentation import TraceConfig
from openinference.instrumentation.openai import OpenAIInstrumentor

logger = logging.getLogger(__name__)

_instrumented = False


def build_trace_config(capture_content: bool) -> TraceConfig:
    """Mask inputs, outputs and embedding vectors unless capture is on."""
    hide = not capture_content
    return TraceConfig(
        hide_inputs=hide,
        hide_outputs=hide,
        hide_embedding_vectors=hide,
    )


def register_instrumentors(capture_content: bool = False) -> bool:
    """Instrument the OpenAI SDK once per process."""
    global _instrumented
    if _instrumented:
        return True

    OpenAIInstrumentor().instrument(config=build_trace_config(capture_content))
    logger.info(f"Registered OpenAI instrumentor (content capture: {capture_content})")
    _instrumented = True
    return True


def uninstrument() -> None:
    """Remove the OpenAI instrumentor (useful for testing)."""
    global _instrumented
    if _instrumented:
        OpenAIInstrumentor().uninstrument()
    _instrumented = False
