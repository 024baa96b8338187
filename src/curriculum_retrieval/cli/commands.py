"""
CLI commands - operational entry points for the retrieval engine.

Each command follows a consistent pattern:
1. Parse arguments
2. Build the engine from environment settings
3. Run the operation
4. Print results
5. Return exit code (0 ok, 1 failure, 2 configuration error, 130 interrupted)

Commands are thin wrappers: the work happens in IngestionPipeline,
RetrievalService and CurriculumCatalog, so the CLI stays
trivially testable.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Callable

from dotenv import load_dotenv

from curriculum_retrieval.config import Settings
from curriculum_retrieval.core.errors import ConfigurationError, RetrievalEngineError
from curriculum_retrieval.engine import RetrievalEngine, build_engine
from curriculum_retrieval.ingestion import IngestionReport
from curriculum_retrieval.loaders import load_documents_jsonl
from curriculum_retrieval.observability import init_phoenix, shutdown_phoenix

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def _load_env() -> None:
    """Load environment variables from .env file."""
    load_dotenv()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> RetrievalEngine:
    return build_engine(Settings.from_env())


def _print_report(report: IngestionReport, as_json: bool) -> None:
    if as_json:
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
        return

    print(f"\n{report.summary()}")
    for subject, count in sorted(report.by_subject.items()):
        print(f"  {subject}: {count} chunks")
    for error in report.errors[:20]:
        target = error.chunk_id or error.document_id or "-"
        print(f"  [{error.kind.upper()}] {target}: {error.message.splitlines()[0]}")
    if len(report.errors) > 20:
        print(f"  ... and {len(report.errors) - 20} more errors")
    if report.collection_stats:
        stats = report.collection_stats
        print(f"Collection: {stats.point_count} points ({stats.status})")


# ---------------------------------------------------------------------------
# COMMANDS
# ---------------------------------------------------------------------------


def run_ingest_cli(argv: list[str] | None = None) -> int:
    """Ingest a JSONL file of curriculum documents."""
    parser = argparse.ArgumentParser(prog="curriculum-retrieval ingest")
    parser.add_argument("path", help="JSONL file, one document per line")
    parser.add_argument("--level", help="Level for documents that have none")
    parser.add_argument("--subject", help="Subject for documents that have none")
    parser.add_argument("--dry-run", action="store_true", help="Chunk and validate only")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args(argv)

    documents, load_errors = load_documents_jsonl(args.path, args.level, args.subject)
    for error in load_errors:
        print(f"  [INVALID] {error}")
    if not documents:
        print("No valid documents to ingest")
        return EXIT_FAILURE

    engine = _engine()
    try:
        if not args.dry_run:
            engine.pipeline.ensure_ready()
        report = engine.pipeline.run(documents, dry_run=args.dry_run)
    finally:
        engine.close()

    _print_report(report, args.json)
    return EXIT_OK if report.success and not load_errors else EXIT_FAILURE


def run_reindex_cli(argv: list[str] | None = None) -> int:
    """Replace one document's points with the content found in a JSONL file."""
    parser = argparse.ArgumentParser(prog="curriculum-retrieval reindex")
    parser.add_argument("path", help="JSONL file containing the updated document")
    parser.add_argument("--document-id", required=True, help="Document to reindex")
    parser.add_argument("--level", help="Level for documents that have none")
    parser.add_argument("--subject", help="Subject for documents that have none")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args(argv)

    documents, _ = load_documents_jsonl(args.path, args.level, args.subject)
    matches = [d for d in documents if d.id == args.document_id]
    if not matches:
        print(f"Document {args.document_id!r} not found in {args.path}")
        return EXIT_FAILURE

    engine = _engine()
    try:
        engine.pipeline.ensure_ready()
        report = engine.pipeline.reindex_document(matches[0])
    finally:
        engine.close()

    _print_report(report, args.json)
    return EXIT_OK if report.success else EXIT_FAILURE


def run_delete_cli(argv: list[str] | None = None) -> int:
    """Remove every point of a document."""
    parser = argparse.ArgumentParser(prog="curriculum-retrieval delete")
    parser.add_argument("document_id", help="Document to remove")
    args = parser.parse_args(argv)

    engine = _engine()
    try:
        removed = engine.pipeline.delete_document(args.document_id)
    finally:
        engine.close()

    print(f"Deleted {removed} points of {args.document_id}")
    return EXIT_OK


def run_search_cli(argv: list[str] | None = None) -> int:
    """Run one retrieval query, as chat would."""
    parser = argparse.ArgumentParser(prog="curriculum-retrieval search")
    parser.add_argument("query", help="Question text")
    parser.add_argument("--level", required=True, help="School level, e.g. cinquieme")
    parser.add_argument("--subject", required=True, help="Subject, e.g. mathematiques")
    parser.add_argument("--limit", type=int, default=None, help="Max chunks (1-10)")
    parser.add_argument("--min-score", type=float, default=None, help="Override score floor")
    parser.add_argument("--json", action="store_true", help="Print the response as JSON")
    args = parser.parse_args(argv)

    engine = _engine()
    try:
        response = engine.service.search(
            args.query, args.level, args.subject, limit=args.limit, min_score=args.min_score
        )
        confidence = engine.service.confidence(response)
    finally:
        engine.close()

    if args.json:
        data = response.to_dict(internal=True)
        data["confidence"] = confidence
        print(json.dumps(data, ensure_ascii=False, indent=2))
    else:
        print("=" * 60)
        print(f"SEARCH: {args.query}")
        print("=" * 60)
        for chunk in response.chunks:
            print(f"  [{chunk.score:.3f}] {chunk.title} ({chunk.id})")
        print(f"\nFound: {response.found}  Average: {response.average_score:.3f}  "
              f"Confidence: {confidence}  Time: {response.search_time_ms}ms")
        if response.degraded_reason:
            print(f"Degraded: {response.degraded_reason}")
        if response.context:
            print(f"\n{response.context}")

    return EXIT_FAILURE if response.degraded_reason else EXIT_OK


def run_health_cli(argv: list[str] | None = None) -> int:
    """Probe the vector store."""
    argparse.ArgumentParser(prog="curriculum-retrieval health").parse_args(argv)

    engine = _engine()
    try:
        availability = engine.gate.check()
    finally:
        engine.close()

    if availability.available:
        print("Vector store: OK")
        return EXIT_OK
    print(f"Vector store: UNAVAILABLE ({availability.reason.value})")
    return EXIT_FAILURE


def run_stats_cli(argv: list[str] | None = None) -> int:
    """Print collection statistics."""
    argparse.ArgumentParser(prog="curriculum-retrieval stats").parse_args(argv)

    engine = _engine()
    try:
        stats = engine.store.stats()
    finally:
        engine.close()

    print(json.dumps(stats.to_dict(), indent=2))
    return EXIT_OK


def run_topics_cli(argv: list[str] | None = None) -> int:
    """List the indexed curriculum: levels, a level's subjects, or a subject's themes."""
    parser = argparse.ArgumentParser(prog="curriculum-retrieval topics")
    parser.add_argument("--level", help="School level; lists its subjects")
    parser.add_argument("--subject", help="Subject; with --level, lists its domains and themes")
    parser.add_argument("--json", action="store_true", help="Print the listing as JSON")
    args = parser.parse_args(argv)
    if args.subject and not args.level:
        parser.error("--subject requires --level")

    engine = _engine()
    try:
        if args.subject:
            topics = engine.catalog.topics(args.level, args.subject)
            listing = None
        elif args.level:
            topics, listing = None, engine.catalog.subjects(args.level)
        else:
            topics, listing = None, engine.catalog.levels()
    finally:
        engine.close()

    if listing is not None:
        if args.json:
            print(json.dumps(listing, ensure_ascii=False))
        else:
            for value in listing:
                print(f"  {value}")
        return EXIT_OK

    if args.json:
        print(json.dumps(topics.to_dict(), ensure_ascii=False, indent=2))
    else:
        print(f"{topics.level} / {topics.subject}: {topics.total_topics} themes")
        for domain in topics.domains:
            print(f"\n{domain.domain}")
            for theme in domain.themes:
                print(f"  - {theme}")
        if topics.degraded_reason:
            print(f"Degraded: {topics.degraded_reason}")
    return EXIT_FAILURE if topics.degraded_reason else EXIT_OK


def _commands() -> dict[str, Callable[[list[str] | None], int]]:
    # Looked up at call time so handlers can be patched
    return {
        "ingest": run_ingest_cli,
        "reindex": run_reindex_cli,
        "delete": run_delete_cli,
        "search": run_search_cli,
        "health": run_health_cli,
        "stats": run_stats_cli,
        "topics": run_topics_cli,
    }


def main(argv: list[str] | None = None) -> int:
    """
    Main CLI entry point with subcommands.

    Usage:
        curriculum-retrieval ingest docs.jsonl       # Index documents
        curriculum-retrieval reindex docs.jsonl --document-id ID
        curriculum-retrieval delete ID               # Remove a document
        curriculum-retrieval search "..." --level cinquieme --subject mathematiques
        curriculum-retrieval health                  # Store liveness
        curriculum-retrieval stats                   # Point count / status
        curriculum-retrieval topics --level cinquieme --subject mathematiques
    """
    _load_env()

    parser = argparse.ArgumentParser(
        description="Curriculum retrieval engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  ingest      Chunk, embed and upsert a JSONL file of documents
  reindex     Replace one document's points (removes stale chunks)
  delete      Remove all points of a document
  search      Run a retrieval query
  health      Check vector store availability
  stats       Show collection statistics
  topics      List indexed levels, subjects, or domains and themes

Examples:
  curriculum-retrieval ingest programmes.jsonl --dry-run
  curriculum-retrieval search "comment additionner des fractions" \\
      --level cinquieme --subject mathematiques --limit 3
        """,
    )
    commands = _commands()
    parser.add_argument("command", choices=sorted(commands), help="Operation to run")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args, remaining = parser.parse_known_args(argv)
    _configure_logging(args.verbose)
    init_phoenix()

    try:
        return commands[args.command](remaining)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except (RetrievalEngineError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("\nInterrupted")
        return EXIT_INTERRUPTED
    finally:
        shutdown_phoenix()


if __name__ == "__main__":
    sys.exit(main())
