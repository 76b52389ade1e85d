"""
CLI module - command-line interface.

Provides entry points for:
- Ingesting documents (single file or JSON manifest)
- Searching a tenant's documents
- Deleting documents and processing pending ones
- Index statistics and schema setup
"""

from benefits_rag.cli.commands import (
    main,
    build_parser,
)

__all__ = [
    "main",
    "build_parser",
]
