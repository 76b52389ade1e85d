"""
Tracing configuration for ingestion and search.

Everything comes from environment variables; tracing is off unless
PHOENIX_ENABLED is set. Search runs once per employee question, so busy
tenants can emit a lot of spans: RAG_TRACE_SAMPLE_RATIO keeps a fraction
of new traces while child spans always follow their parent's decision.
"""

import os
from dataclasses import dataclass

from opentelemetry.sdk.trace.sampling import ParentBased, Sampler, TraceIdRatioBased

_TRUTHY = ("true", "1", "yes")


@dataclass
class PhoenixConfig:
    """Configuration for Phoenix tracing.

    Environment Variables:
        PHOENIX_ENABLED: Enable Phoenix tracing (default: false)
        PHOENIX_PROJECT_NAME: Project name in Phoenix UI (default: benefits-rag)
        PHOENIX_COLLECTOR_ENDPOINT: Remote endpoint (optional, local if empty)
        PHOENIX_CAPTURE_CONTENT: Export query text and chunk content (default: false)
        OTEL_SERVICE_NAME: service.name resource attribute (default: benefits-rag)
        RAG_TRACE_SAMPLE_RATIO: Fraction of root traces kept, 0.0 to 1.0 (default: 1.0)

    PRIVACY WARNING:
        Employee questions and benefits documents can contain personal data
        (dependents, salaries, medical plans). Content capture stays off
        unless explicitly enabled for a controlled environment.
    """

    enabled: bool = False
    project_name: str = "benefits-rag"
    collector_endpoint: str | None = None
    capture_content: bool = False
    service_name: str = "benefits-rag"
    sample_ratio: float = 1.0

    def __post_init__(self):
        if not 0.0 <= self.sample_ratio <= 1.0:
            raise ValueError(f"sample_ratio must be between 0.0 and 1.0, got {self.sample_ratio}")

    @classmethod
    def from_env(cls) -> "PhoenixConfig":
        """Load config from environment variables."""
        return cls(
            enabled=os.environ.get("PHOENIX_ENABLED", "false").lower() in _TRUTHY,
            project_name=os.environ.get("PHOENIX_PROJECT_NAME", "benefits-rag"),
            collector_endpoint=os.environ.get("PHOENIX_COLLECTOR_ENDPOINT") or None,
            capture_content=os.environ.get("PHOENIX_CAPTURE_CONTENT", "false").lower() in _TRUTHY,
            service_name=os.environ.get("OTEL_SERVICE_NAME") or "benefits-rag",
            sample_ratio=float(os.environ.get("RAG_TRACE_SAMPLE_RATIO") or 1.0),
        )


def build_sampler(config: PhoenixConfig) -> Sampler:
    """Ratio sampler for root spans; child spans inherit the parent's decision."""
    return ParentBased(TraceIdRatioBased(config.sample_ratio))


_config: PhoenixConfig | None = None


def get_config() -> PhoenixConfig:
    """Get the process-wide Phoenix config (lazy-loaded from env)."""
    global _config
    if _config is None:
        _config = PhoenixConfig.from_env()
    return _config


def reset_config() -> None:
    global _config
    _config = None
