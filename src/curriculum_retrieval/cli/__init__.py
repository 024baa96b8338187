"""
CLI module - unified command-line interface.

Provides entry points for:
- Ingesting, reindexing and deleting curriculum documents
- Running retrieval queries
- Store health and statistics
- Listing the indexed curriculum
"""

from curriculum_retrieval.cli.commands import (
    main,
    run_ingest_cli,
    run_reindex_cli,
    run_delete_cli,
    run_search_cli,
    run_health_cli,
    run_stats_cli,
    run_topics_cli,
)

__all__ = [
    "main",
    "run_ingest_cli",
    "run_reindex_cli",
    "run_delete_cli",
    "run_search_cli",
    "run_health_cli",
    "run_stats_cli",
    "run_topics_cli",
]
