"""
Tracer factory and no-op implementations.

get_tracer() returns an OpenTelemetry-backed tracer when Phoenix is
enabled and initialized, otherwise a NoOpTracer so instrumented code
pays nothing when tracing is off.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Protocol


# ---------------------------------------------------------------------------
# PROTOCOLS
# ---------------------------------------------------------------------------


class SpanProtocol(Protocol):
    def set_attribute(self, key: str, value: Any) -> None:
        ...

    def set_status(self, status: str, description: str | None = None) -> None:
        """Set span status ("ok" or "error")."""
        ...

    def record_exception(self, exception: BaseException) -> None:
        ...


class TracerProtocol(Protocol):
    @contextmanager
    def start_span(self, name: str, attributes: dict[str, Any] | None = None) -> Iterator[SpanProtocol]:
        ...


# ---------------------------------------------------------------------------
# NOOP IMPLEMENTATIONS
# ---------------------------------------------------------------------------


class NoOpSpan:
    """Span that records nothing."""

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def set_status(self, status: str, description: str | None = None) -> None:
        pass

    def record_exception(self, exception: BaseException) -> None:
        pass


class NoOpTracer:
    """Tracer that hands out no-op spans."""

    @contextmanager
    def start_span(self, name: str, attributes: dict[str, Any] | None = None) -> Iterator[NoOpSpan]:
        yield NoOpSpan()


# ---------------------------------------------------------------------------
# OTEL ADAPTERS
# ---------------------------------------------------------------------------


class OTelSpan:
    """Adapts an OTel span to SpanProtocol."""

    def __init__(self, span: Any):
        self._span = span

    def set_attribute(self, key: str, value: Any) -> None:
        self._span.set_attribute(key, value)

    def set_status(self, status: str, description: str | None = None) -> None:
        from opentelemetry.trace import Status, StatusCode

        code = StatusCode.OK if status == "ok" else StatusCode.ERROR
        self._span.set_status(Status(code, description))

    def record_exception(self, exception: BaseException) -> None:
        self._span.record_exception(exception)


class OTelTracer:
    """Adapts an OTel tracer to TracerProtocol."""

    def __init__(self, tracer: Any):
        self._tracer = tracer

    @contextmanager
    def start_span(self, name: str, attributes: dict[str, Any] | None = None) -> Iterator[OTelSpan]:
        with self._tracer.start_as_current_span(name, attributes=attributes) as span:
            yield OTelSpan(span)


# ---------------------------------------------------------------------------
# FACTORY
# ---------------------------------------------------------------------------


_tracer: TracerProtocol | None = None


def get_tracer(service_name: str = "benefits-rag") -> TracerProtocol:
    """
    Get the process-wide tracer.

    Args:
        service_name: Instrumentation scope name (used on first call only)
    """
    global _tracer
    if _tracer is not None:
        return _tracer

    from benefits_rag.observability.config import get_config

    if not get_config().enabled:
        _tracer = NoOpTracer()
        return _tracer

    from opentelemetry import trace
    from opentelemetry.sdk.trace import TracerProvider

    if not isinstance(trace.get_tracer_provider(), TracerProvider):
        # init_phoenix() has not installed a provider yet
        return NoOpTracer()

    _tracer = OTelTracer(trace.get_tracer(service_name))
    return _tracer


def reset_tracer() -> None:
    """Reset tracer (useful for testing)."""
    global _tracer
    _tracer = None
