"""CLI for the knowbase engine."""

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Iterator, List

from . import __version__
from .config import EngineConfig
from .errors import KnowbaseError
from .extraction import SUPPORTED_TYPES

# Set USER_AGENT to suppress langchain warning
if not os.environ.get("USER_AGENT"):
    os.environ["USER_AGENT"] = f"knowbase/{__version__}"

logger = logging.getLogger("knowbase.cli")


def _config(args: argparse.Namespace) -> EngineConfig:
    return EngineConfig.from_env(data_dir=args.data_dir)


def _engine(args: argparse.Namespace):
    from .engine import KnowledgeEngine

    return KnowledgeEngine(_config(args))


def _iter_files(paths: List[str]) -> Iterator[Path]:
    """Files to ingest: plain paths as given, directories scanned for supported types."""
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            for child in sorted(path.rglob("*")):
                if child.is_file() and child.suffix.lower().lstrip(".") in SUPPORTED_TYPES:
                    yield child
        elif path.is_file():
            yield path
        else:
            print(f"Warning: File not found: {raw}", file=sys.stderr)


def create_kb(args: argparse.Namespace) -> None:
    """Create a knowledge base."""
    with _engine(args) as engine:
        kb = engine.knowledge_bases.create_knowledge_base(
            args.owner,
            args.name,
            embedding_model=args.model,
            chunk_size=args.chunk_size,
            chunk_overlap=args.chunk_overlap,
            chunk_strategy=args.strategy,
            threshold=args.threshold,
            top_k=args.top_k,
            enable_hybrid_search=not args.no_hybrid,
            enable_rerank=args.rerank,
        )
        print(json.dumps(kb.to_dict(), indent=2))


def ingest(args: argparse.Namespace) -> None:
    """Upload files into a knowledge base and process them."""
    failures = 0
    with _engine(args) as engine:
        for path in _iter_files(args.paths):
            try:
                doc = engine.documents.upload_document(
                    args.kb, args.owner, path.name, path.read_bytes(), enqueue=args.no_process
                )
                if not args.no_process:
                    doc = engine.documents.process_document(doc.id)
            except KnowbaseError as exc:
                failures += 1
                print(f"FAILED  {path}: {exc}")
                continue
            print(f"{doc.status.value:<10}{path} -> {doc.id} ({doc.chunk_count} chunks)")
    if failures:
        sys.exit(1)


def search(args: argparse.Namespace) -> None:
    """Search a knowledge base."""
    with _engine(args) as engine:
        results = engine.documents.search_documents(args.kb, args.owner, args.query, args.top_k)
        if args.json:
            print(json.dumps([r.to_dict() for r in results], indent=2))
            return
        for i, r in enumerate(results, 1):
            name = r.metadata.get("file_name", r.document_id)
            print(f"{i}. [{r.score:.4f}] {name}: {r.content[:100]!r}")


def worker(args: argparse.Namespace) -> None:
    """Run document workers until interrupted."""
    from .models import DocumentStatus

    engine = _engine(args)
    try:
        if args.requeue_pending:
            pending = engine.store.list_documents_by_status(DocumentStatus.PENDING)
            for doc in pending:
                engine.documents.enqueue_document(doc.id)
            print(f"Re-queued {len(pending)} pending documents")
        engine.start_workers()
        print(f"Workers running ({engine.config.worker_count}); press Ctrl+C to stop")
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("Stopping workers...")
    finally:
        engine.close()


def serve(args: argparse.Namespace) -> None:
    """Start the REST API server."""
    try:
        import uvicorn
        from .api import create_app
    except ImportError:
        print("Error: API dependencies not installed.")
        print("  Run: pip install 'knowbase[api]'")
        sys.exit(1)

    config = _config(args)
    app = create_app(config=config, start_workers=not args.no_workers)

    print(f"Starting knowbase API server on http://{args.host}:{args.port}")
    print(f"  Data: {config.data_dir}")
    print(f"  Docs: http://{args.host}:{args.port}/docs\n")

    uvicorn.run(app, host=args.host, port=args.port)


def stats(args: argparse.Namespace) -> None:
    """Show engine statistics."""
    with _engine(args) as engine:
        print(json.dumps(engine.get_stats(), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="knowbase",
        description="knowbase - document ingestion and hybrid retrieval",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  knowbase create-kb --owner alice "Handbook"
  knowbase ingest --owner alice --kb <id> ./docs
  knowbase search --owner alice --kb <id> "vacation policy"
  knowbase worker --requeue-pending
  knowbase serve

Environment variables:
  OPENAI_API_KEY        Required for OpenAI embeddings
  JINA_API_KEY          Required for Jina embeddings and reranking
  KNOWBASE_DATA_DIR     Data directory (default: knowbase_data)
  KNOWBASE_REDIS_URL    Redis for the shared queue and embedding cache
"""
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--data-dir", type=str, help="Data directory (default: knowbase_data)")
    parser.add_argument(
        "--log-level", default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    p = subparsers.add_parser("create-kb", help="Create a knowledge base")
    p.add_argument("name", help="Knowledge base name")
    p.add_argument("--owner", required=True, help="Owner id")
    p.add_argument("--model", help="Embedding model")
    p.add_argument("--chunk-size", type=int)
    p.add_argument("--chunk-overlap", type=int)
    p.add_argument("--strategy", choices=["recursive", "token"])
    p.add_argument("--threshold", type=float)
    p.add_argument("--top-k", type=int)
    p.add_argument("--no-hybrid", action="store_true", help="Vector search only")
    p.add_argument("--rerank", action="store_true", help="Rerank search results")
    p.set_defaults(func=create_kb)

    p = subparsers.add_parser("ingest", help="Upload and process files")
    p.add_argument("paths", nargs="+", help="Files or directories")
    p.add_argument("--owner", required=True)
    p.add_argument("--kb", required=True, help="Knowledge base id")
    p.add_argument("--no-process", action="store_true", help="Only upload and queue for workers")
    p.set_defaults(func=ingest)

    p = subparsers.add_parser("search", help="Search a knowledge base")
    p.add_argument("query")
    p.add_argument("--owner", required=True)
    p.add_argument("--kb", required=True, help="Knowledge base id")
    p.add_argument("--top-k", type=int)
    p.add_argument("--json", action="store_true", help="Print results as JSON")
    p.set_defaults(func=search)

    p = subparsers.add_parser("worker", help="Run document workers")
    p.add_argument("--requeue-pending", action="store_true", help="Queue documents left pending")
    p.set_defaults(func=worker)

    p = subparsers.add_parser("serve", help="Start REST API server")
    p.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    p.add_argument("--no-workers", action="store_true", help="Do not run workers in the server")
    p.set_defaults(func=serve)

    p = subparsers.add_parser("stats", help="Show engine statistics")
    p.set_defaults(func=stats)

    return parser


def main() -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        args.func(args)
    except KnowbaseError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
