"""
Processing module - document ingestion orchestration.

Takes a source document through chunking, embedding and indexing,
recording its status in the document registry.
"""

from benefits_rag.processing.processor import (
    DocumentProcessor,
    ProcessorConfig,
    ProcessingStage,
    ProcessingRun,
    ProcessingResult,
    PendingOutcome,
    validate_metadata,
)

__all__ = [
    "DocumentProcessor",
    "ProcessorConfig",
    "ProcessingStage",
    "ProcessingRun",
    "ProcessingResult",
    "PendingOutcome",
    "validate_metadata",
]
