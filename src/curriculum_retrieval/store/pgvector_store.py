"""
PostgreSQL vector store using pgvector.

Points live in one table: the chunk id is the primary key, level/subject and
document_id are plain indexed columns for filtering and reindex deletes, the
full payload is JSONB, and the embedding column carries an HNSW cosine index.
Upserts use ON CONFLICT (id) DO UPDATE, so writing the same id twice is a
no-op on the row count.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, TypeVar

import numpy as np

from curriculum_retrieval.config import VectorStoreConfig
from curriculum_retrieval.core.errors import ConfigurationError, ConnectivityError
from curriculum_retrieval.core.protocols import CollectionStats, IndexedPoint, SearchResult
from curriculum_retrieval.store.common import (
    DOCUMENT_FIELD,
    FILTER_FIELDS,
    check_identifier,
    check_points,
    clamp_score,
)

# Optional: Only import psycopg if available (for local dev without postgres)
try:
    import psycopg
    from psycopg.types.json import Jsonb
    from pgvector.psycopg import register_vector

    PGVECTOR_AVAILABLE = True
except ImportError:
    PGVECTOR_AVAILABLE = False

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PgVectorStore:
    """
    PostgreSQL vector store.

    The connection is opened lazily and shared; psycopg serializes
    operations on a connection, so one instance can serve many threads.
    """

    def __init__(self, config: VectorStoreConfig):
        self.config = config
        self.table = check_identifier(config.collection_name)
        self._conn = None
        self._lock = threading.Lock()

    # -----------------------------------------------------------------------
    # CONNECTION
    # -----------------------------------------------------------------------

    def connect(self) -> None:
        """Establish database connection."""
        if not self.config.connection_string:
            raise ConfigurationError("DATABASE_URL is required for the postgres backend")
        if not PGVECTOR_AVAILABLE:
            raise ConfigurationError(
                "pgvector not available. Install with: pip install pgvector psycopg[binary]"
            )

        with self._lock:
            if self._conn is not None:
                return
            try:
                conn = psycopg.connect(
                    self.config.connection_string,
                    autocommit=True,
                    connect_timeout=max(1, int(self.config.timeout_seconds)),
                )
                conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
                register_vector(conn)
            except psycopg.Error as e:
                raise ConnectivityError(f"PostgreSQL connection failed: {e}") from e
            self._conn = conn
            logger.info(f"Connected to PostgreSQL (table {self.table})")

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def _run(self, description: str, fn: Callable[[Any], T]) -> T:
        if self._conn is None:
            self.connect()
        try:
            return fn(self._conn)
        except psycopg.Error as e:
            if self._conn is not None and self._conn.closed:
                # Broken connection: reconnect on next call
                self._conn = None
            raise ConnectivityError(f"PostgreSQL {description} failed: {e}") from e

    # -----------------------------------------------------------------------
    # SCHEMA
    # -----------------------------------------------------------------------

    def ensure_collection(self) -> None:
        """Create the points table and indexes."""

        def create(conn: Any) -> None:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id TEXT PRIMARY KEY,
                    document_id TEXT NOT NULL,
                    level TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    payload JSONB NOT NULL,
                    embedding vector({self.config.embedding_dim})
                )
            """
            )

            # HNSW index for fast cosine similarity search
            conn.execute(
                f"""
                CREATE INDEX IF NOT EXISTS {self.table}_embedding_idx
                ON {self.table}
                USING hnsw (embedding vector_cosine_ops)
                WITH (m = 16, ef_construction = 64)
            """
            )

            # B-tree indexes for the level/subject filter and reindex deletes
            conn.execute(
                f"""
                CREATE INDEX IF NOT EXISTS {self.table}_filter_idx
                ON {self.table} (level, subject)
            """
            )
            conn.execute(
                f"""
                CREATE INDEX IF NOT EXISTS {self.table}_document_idx
                ON {self.table} (document_id)
            """
            )

        self._run("schema creation", create)

    # -----------------------------------------------------------------------
    # POINTS
    # -----------------------------------------------------------------------

    def upsert_points(self, points: list[IndexedPoint]) -> None:
        """Batch upsert, overwriting rows with the same id."""
        if not points:
            return
        check_points(points, self.config.embedding_dim)

        rows = [
            (
                p.id,
                p.payload[DOCUMENT_FIELD],
                p.payload.get("level"),
                p.payload.get("subject"),
                Jsonb(p.payload),
                np.asarray(p.vector, dtype=np.float32),
            )
            for p in points
        ]

        def upsert(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.executemany(
                    f"""
                    INSERT INTO {self.table} (id, document_id, level, subject, payload, embedding)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        document_id = EXCLUDED.document_id,
                        level = EXCLUDED.level,
                        subject = EXCLUDED.subject,
                        payload = EXCLUDED.payload,
                        embedding = EXCLUDED.embedding
                    """,
                    rows,
                )

        self._run("upsert", upsert)
        logger.debug(f"Upserted {len(points)} points into {self.table}")

    def get_points(self, ids: list[str]) -> dict[str, dict[str, Any]]:
        if not ids:
            return {}

        def fetch(conn: Any) -> list[tuple]:
            return conn.execute(
                f"SELECT id, payload FROM {self.table} WHERE id = ANY(%s)",
                (list(ids),),
            ).fetchall()

        rows = self._run("point lookup", fetch)
        return {
            row[0]: row[1] if isinstance(row[1], dict) else json.loads(row[1])
            for row in rows
        }

    def _column(self, name: str) -> str:
        """Dedicated column for filter fields, JSONB lookup for the rest."""
        if name in FILTER_FIELDS:
            return name
        check_identifier(name)
        return f"payload->>'{name}'"

    def _where(self, filter: dict[str, str] | None) -> tuple[str, list[Any]]:
        clauses = [f"{self._column(key)} = %s" for key in (filter or {})]
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, list((filter or {}).values())

    def query(
        self,
        vector: np.ndarray,
        filter: dict[str, str] | None = None,
        limit: int = 10,
    ) -> list[SearchResult]:
        """Filtered cosine similarity search."""
        where, filter_params = self._where(filter)
        params: list[Any] = [np.asarray(vector, dtype=np.float32), *filter_params, limit]

        def search(conn: Any) -> list[tuple]:
            return conn.execute(
                f"""
                SELECT id, payload, embedding <=> %s AS distance
                FROM {self.table}
                {where}
                ORDER BY distance
                LIMIT %s
                """,
                tuple(params),
            ).fetchall()

        rows = self._run("query", search)

        # Convert cosine distance to similarity
        return [
            SearchResult(
                id=row[0],
                score=clamp_score(1 - float(row[2])),
                payload=row[1] if isinstance(row[1], dict) else json.loads(row[1]),
            )
            for row in rows
        ]

    def delete_by_prefix(self, document_id: str) -> int:
        def delete(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM {self.table} WHERE document_id = %s",
                    (document_id,),
                )
                return cur.rowcount

        removed = self._run("delete", delete)
        logger.info(f"Deleted {removed} points of document {document_id}")
        return removed

    def distinct_values(
        self,
        fields: tuple[str, ...],
        filter: dict[str, str] | None = None,
    ) -> set[tuple]:
        columns = ", ".join(self._column(f) for f in fields)
        where, params = self._where(filter)

        def select(conn: Any) -> list[tuple]:
            return conn.execute(
                f"SELECT DISTINCT {columns} FROM {self.table} {where}",
                tuple(params),
            ).fetchall()

        return {tuple(row) for row in self._run("distinct values", select)}

    # -----------------------------------------------------------------------
    # OPS
    # -----------------------------------------------------------------------

    def health(self) -> bool:
        try:
            self._run("health check", lambda conn: conn.execute("SELECT 1").fetchone())
            return True
        except (ConnectivityError, ConfigurationError) as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return False

    def stats(self) -> CollectionStats:
        def count(conn: Any) -> int:
            exists = conn.execute("SELECT to_regclass(%s)", (self.table,)).fetchone()[0]
            if exists is None:
                return -1
            return conn.execute(f"SELECT count(*) FROM {self.table}").fetchone()[0]

        point_count = self._run("stats", count)
        if point_count < 0:
            return CollectionStats(0, "missing", self.config.embedding_dim)
        return CollectionStats(point_count, "green", self.config.embedding_dim)
