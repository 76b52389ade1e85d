"""
Observability - Phoenix + OpenTelemetry tracing for ingestion and search.

Tracing is opt-in (PHOENIX_ENABLED=true). When it is off, get_tracer()
returns a NoOpTracer and nothing is exported.

USAGE:
------
from benefits_rag.observability import init_phoenix, get_tracer

init_phoenix()

tracer = get_tracer()
with tracer.start_span("rag.search", attributes={"rag.tenant_id": "acme-corp"}) as span:
    span.set_attribute("rag.search.mode", "vector")
"""

from __future__ import annotations

import logging

from benefits_rag.observability.config import (
    PhoenixConfig,
    build_sampler,
    get_config,
    reset_config,
)
from benefits_rag.observability.tracer import (
    TracerProtocol,
    SpanProtocol,
    NoOpTracer,
    NoOpSpan,
    OTelTracer,
    get_tracer,
    reset_tracer,
)
from benefits_rag.observability.attributes import (
    GEN_AI_SYSTEM,
    GEN_AI_REQUEST_MODEL,
    RAG_TENANT_ID,
    RAG_DOCUMENT_ID,
    RAG_STAGE,
    RAG_CHUNK_COUNT,
    RAG_EMBEDDED_COUNT,
    RAG_VECTORS_UPSERTED,
    RAG_SEARCH_TOP_K,
    RAG_SEARCH_MODE,
    RAG_RESULT_COUNT,
    RAG_DROPPED_COUNT,
    search_attributes,
    processing_attributes,
)

logger = logging.getLogger(__name__)

LOCAL_COLLECTOR_ENDPOINT = "http://localhost:6006/v1/traces"

_phoenix_initialized = False


def init_phoenix(config: PhoenixConfig | None = None) -> bool:
    """
    Initialize Phoenix tracing once at process startup.

    Without a collector endpoint a local Phoenix app is launched and spans
    are exported to it over OTLP/HTTP.

    Returns:
        True if tracing is active, False if disabled or unavailable
    """
    global _phoenix_initialized
    if _phoenix_initialized:
        return True

    config = config or get_config()

    if not config.enabled:
        logger.debug("Phoenix tracing disabled")
        return False

    try:
        import phoenix as px
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        from benefits_rag.observability.instrumentation import register_instrumentors
    except ImportError as e:
        logger.warning(f"Phoenix not installed (pip install benefits-rag[observability]), tracing disabled: {e}")
        return False

    endpoint = config.collector_endpoint
    if endpoint:
        logger.info(f"Phoenix exporting to remote collector: {endpoint}")
    else:
        session = px.launch_app()
        endpoint = LOCAL_COLLECTOR_ENDPOINT
        logger.info(f"Phoenix UI available at: {session.url}")

    # Phoenix groups traces by openinference.project.name
    resource = Resource.create({
        "service.name": config.service_name,
        "openinference.project.name": config.project_name,
    })
    provider = TracerProvider(resource=resource, sampler=build_sampler(config))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)

    register_instrumentors(capture_content=config.capture_content)

    reset_tracer()
    _phoenix_initialized = True
    return True


def shutdown_phoenix() -> None:
    """Flush pending spans and reset tracing state."""
    global _phoenix_initialized

    if not _phoenix_initialized:
        return

    from opentelemetry import trace

    provider = trace.get_tracer_provider()
    if hasattr(provider, "shutdown"):
        provider.shutdown()

    reset_tracer()
    reset_config()
    _phoenix_initialized = False


__all__ = [
    # Setup
    "init_phoenix",
    "shutdown_phoenix",
    # Config
    "PhoenixConfig",
    "build_sampler",
    "get_config",
    "reset_config",
    # Tracer
    "TracerProtocol",
    "SpanProtocol",
    "NoOpTracer",
    "NoOpSpan",
    "OTelTracer",
    "get_tracer",
    "reset_tracer",
    # Attributes
    "GEN_AI_SYSTEM",
    "GEN_AI_REQUEST_MODEL",
    "RAG_TENANT_ID",
    "RAG_DOCUMENT_ID",
    "RAG_STAGE",
    "RAG_CHUNK_COUNT",
    "RAG_EMBEDDED_COUNT",
    "RAG_VECTORS_UPSERTED",
    "RAG_SEARCH_TOP_K",
    "RAG_SEARCH_MODE",
    "RAG_RESULT_COUNT",
    "RAG_DROPPED_COUNT",
    "search_attributes",
    "processing_attributes",
]
