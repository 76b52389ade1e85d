"""
CLI commands - operational entry points for the pipeline.

Each command follows a consistent pattern:
1. Parse arguments
2. Load environment
3. Build the pipeline and run one coroutine
4. Print results
5. Return exit code

Commands are thin wrappers: all behavior lives in the processor and the
retriever, so the CLI only handles argument parsing and output.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from benefits_rag.core.errors import DocumentProcessingError, RagError
from benefits_rag.observability import init_phoenix, shutdown_phoenix
from benefits_rag.pipeline import RagPipeline, build_pipeline
from benefits_rag.retrieval import build_context
from benefits_rag.schemas.documents import DocumentManifest, DocumentMetadata

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def _load_env() -> None:
    """Load environment variables from .env file."""
    load_dotenv()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_header(title: str) -> None:
    print("=" * 60)
    print(title)
    print("=" * 60)


# ---------------------------------------------------------------------------
# COMMANDS
# ---------------------------------------------------------------------------


async def _ingest(pipeline: RagPipeline, args: argparse.Namespace) -> int:
    if args.manifest:
        manifest_path = Path(args.manifest)
        manifest = DocumentManifest.model_validate_json(manifest_path.read_text(encoding="utf-8"))
        tenant_id = manifest.tenant_id
        documents = [
            (
                doc.id,
                doc.content if doc.content is not None
                else (manifest_path.parent / doc.path).read_text(encoding="utf-8"),
                doc.metadata,
            )
            for doc in manifest.documents
        ]
    else:
        if not (args.file and args.tenant and args.document_id):
            print("ingest needs --manifest, or FILE with --tenant and --document-id", file=sys.stderr)
            return EXIT_USAGE
        tenant_id = args.tenant
        metadata = DocumentMetadata(
            title=args.title,
            category=args.category,
            tags=args.tag or [],
        )
        documents = [(args.document_id, Path(args.file).read_text(encoding="utf-8"), metadata)]

    _print_header(f"INGEST ({len(documents)} document(s), tenant {tenant_id})")

    failures = 0
    for document_id, content, metadata in documents:
        process = pipeline.processor.reprocess_document if args.replace else pipeline.processor.process_document
        try:
            result = await process(document_id, tenant_id, content, metadata)
        except DocumentProcessingError as e:
            failures += 1
            print(f"  [FAIL] {document_id}: stage {e.stage}: {e}")
            continue
        skipped = f", {len(result.skipped_chunk_ids)} skipped" if result.skipped_chunk_ids else ""
        print(
            f"  [OK]   {document_id}: {result.chunk_count} chunks, "
            f"{result.vectors_upserted} vectors{skipped}"
        )

    print(f"\nProcessed: {len(documents) - failures}/{len(documents)}")
    return EXIT_FAILED if failures else EXIT_OK


async def _search(pipeline: RagPipeline, args: argparse.Namespace) -> int:
    response = await pipeline.retriever.search_detailed(args.query, args.tenant, top_k=args.top_k)

    if args.json:
        print(json.dumps(
            {
                "mode": response.mode,
                "degraded_reason": response.degraded_reason,
                "results": [r.to_dict() for r in response.results],
            },
            indent=2,
        ))
        return EXIT_OK

    if args.context:
        print(build_context(response.results))
        return EXIT_OK

    _print_header(f"SEARCH ({response.mode})")
    if response.degraded:
        print(f"Degraded: {response.degraded_reason}\n")
    if not response.results:
        print("No matches.")
    for rank, result in enumerate(response.results, start=1):
        chunk = result.chunk
        preview = chunk.content[:160].replace("\n", " ")
        print(f"  {rank}. [{result.score:.3f}] {chunk.id} ({chunk.title or 'Untitled'})")
        print(f"     {preview}")
    return EXIT_OK


async def _delete(pipeline: RagPipeline, args: argparse.Namespace) -> int:
    removed = await pipeline.processor.delete_document(args.tenant, args.document_id)
    print(f"Deleted {args.document_id}: {removed} chunk(s) removed")
    return EXIT_OK


async def _pending(pipeline: RagPipeline, args: argparse.Namespace) -> int:
    outcomes = await pipeline.processor.process_pending(args.tenant, limit=args.limit)

    _print_header(f"PENDING DOCUMENTS (tenant {args.tenant})")
    for outcome in outcomes:
        if outcome.succeeded:
            print(f"  [OK]   {outcome.document_id}: {outcome.result.chunk_count} chunks")
        else:
            print(f"  [FAIL] {outcome.document_id}: {outcome.error}")

    failed = sum(1 for o in outcomes if not o.succeeded)
    print(f"\nProcessed: {len(outcomes) - failed}/{len(outcomes)}")
    return EXIT_FAILED if failed else EXIT_OK


async def _stats(pipeline: RagPipeline, args: argparse.Namespace) -> int:
    stats = await pipeline.index.stats(args.tenant)
    print(json.dumps(
        {"tenant_id": stats.tenant_id, "total_vectors": stats.total_vectors, "dimension": stats.dimension},
        indent=2,
    ))
    return EXIT_OK


async def _init_db(pipeline: RagPipeline, args: argparse.Namespace) -> int:
    await pipeline.create_schema()
    print("Schema ready")
    return EXIT_OK


COMMANDS = {
    "ingest": _ingest,
    "search": _search,
    "delete": _delete,
    "pending": _pending,
    "stats": _stats,
    "init-db": _init_db,
}


async def _run(args: argparse.Namespace) -> int:
    pipeline = build_pipeline(
        use_postgres=True if args.postgres else None,
        use_mock=args.mock_embeddings,
        database_url=args.database_url,
    )
    async with pipeline:
        return await COMMANDS[args.command](pipeline, args)


# ---------------------------------------------------------------------------
# ENTRY POINT
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="benefits-rag",
        description="Tenant-scoped document ingestion and retrieval",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  benefits-rag init-db --postgres
  benefits-rag ingest plan.txt --tenant acme-corp --document-id doc1 --title "Health Plan"
  benefits-rag ingest --manifest documents.json --replace
  benefits-rag search "What is the deductible?" --tenant acme-corp --top-k 2
  benefits-rag pending --tenant acme-corp --limit 20
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--postgres", action="store_true", help="Use PostgreSQL backends")
    parser.add_argument("--database-url", help="PostgreSQL connection string (default: DATABASE_URL)")
    parser.add_argument("--mock-embeddings", action="store_true", help="Deterministic offline embeddings")

    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Chunk, embed and index documents")
    ingest.add_argument("file", nargs="?", help="Plain text document")
    ingest.add_argument("--manifest", help="JSON manifest of documents for one tenant")
    ingest.add_argument("--tenant", help="Tenant id")
    ingest.add_argument("--document-id", help="Document id")
    ingest.add_argument("--title")
    ingest.add_argument("--category")
    ingest.add_argument("--tag", action="append", help="Repeatable")
    ingest.add_argument("--replace", action="store_true", help="Delete existing chunks first")

    search = sub.add_parser("search", help="Search a tenant's documents")
    search.add_argument("query")
    search.add_argument("--tenant", required=True)
    search.add_argument("--top-k", type=int, default=5)
    output = search.add_mutually_exclusive_group()
    output.add_argument("--json", action="store_true", help="Machine readable output")
    output.add_argument("--context", action="store_true", help="Print an LLM context block")

    delete = sub.add_parser("delete", help="Remove a document and all its chunks")
    delete.add_argument("--tenant", required=True)
    delete.add_argument("--document-id", required=True)

    pending = sub.add_parser("pending", help="Process pending and failed documents")
    pending.add_argument("--tenant", required=True)
    pending.add_argument("--limit", type=int, default=50)

    stats = sub.add_parser("stats", help="Vector index statistics for a tenant")
    stats.add_argument("--tenant", required=True)

    sub.add_parser("init-db", help="Create tables and indexes")

    return parser


def main(argv: list[str] | None = None) -> int:
    """
    Main CLI entry point with subcommands.

    Usage:
        benefits-rag ingest   # Process documents
        benefits-rag search   # Query a tenant's documents
        benefits-rag delete   # Remove a document
        benefits-rag pending  # Process registered pending/failed documents
        benefits-rag stats    # Index statistics
        benefits-rag init-db  # Create Postgres schema
    """
    _load_env()
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    init_phoenix()

    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        print("\nInterrupted")
        return EXIT_INTERRUPTED
    except (ValidationError, ValueError) as e:
        # InvalidInputError is a ValueError
        print(f"Invalid input: {e}", file=sys.stderr)
        return EXIT_USAGE
    except (RagError, OSError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return EXIT_FAILED
    finally:
        shutdown_phoenix()


if __name__ == "__main__":
    sys.exit(main())
