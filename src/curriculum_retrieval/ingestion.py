"""
Ingestion pipeline - turns curriculum documents into indexed chunk points.

FLOW PER DOCUMENT:
    validate -> chunk -> look up existing points by chunk id
             -> unchanged fingerprint: skipped (no embedding call)
             -> embed in batches (retry, then per-chunk fallback)
             -> build payloads -> upsert in batches (retry)

Re-running with unchanged content embeds nothing and writes nothing: chunk
ids are deterministic and each payload carries a fingerprint of what was
embedded. Changed content overwrites the same ids. Points are only ever
removed by reindex_document() / delete_document().

Failures are isolated: a chunk that still fails after retries is recorded in
the report and the rest of the run continues. run() never raises for data or
provider problems; only store setup (ensure_ready) is fatal.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, TypeVar

import numpy as np
from pydantic import ValidationError as PydanticValidationError

from curriculum_retrieval.cache import QueryCache
from curriculum_retrieval.chunking import DocumentChunker
from curriculum_retrieval.config import EmbeddingConfig, IngestionConfig
from curriculum_retrieval.core.errors import EmbeddingError, RetrievalEngineError, ValidationError
from curriculum_retrieval.core.protocols import (
    CollectionStats,
    EmbeddingProvider,
    IndexedPoint,
    VectorStore,
)
from curriculum_retrieval.core.retry import retry_call
from curriculum_retrieval.documents import (
    Chunk,
    ChunkPayload,
    CurriculumDocument,
    compute_fingerprint,
)
from curriculum_retrieval.observability.attributes import (
    GEN_AI_REQUEST_MODEL,
    RAG_INGEST_DOCUMENT_ID,
    RAG_INGEST_DOCUMENTS,
    RAG_INGEST_DRY_RUN,
    ingestion_report_attributes,
)
from curriculum_retrieval.observability.tracer import TracerProtocol, get_tracer

logger = logging.getLogger(__name__)

T = TypeVar("T")

DocumentInput = CurriculumDocument | dict[str, Any]


def _batched(items: list[T], size: int) -> Iterator[list[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# REPORT
# ---------------------------------------------------------------------------


@dataclass
class IngestionError:
    """One failure recorded during a run."""
    document_id: str | None
    chunk_id: str | None
    kind: str  # "validation" | "embedding" | "store" | "unexpected"
    message: str


@dataclass
class IngestionReport:
    """Structured outcome of an ingestion run."""
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: list[IngestionError] = field(default_factory=list)
    documents_processed: int = 0
    chunks_created: int = 0
    duration_ms: int = 0
    dry_run: bool = False
    collection_stats: CollectionStats | None = None
    by_subject: dict[str, int] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def changed(self) -> bool:
        """True when the run wrote or removed points."""
        return bool(self.inserted or self.updated or self.deleted)

    def merge(self, other: "IngestionReport") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped
        self.deleted += other.deleted
        self.errors.extend(other.errors)
        self.documents_processed += other.documents_processed
        self.chunks_created += other.chunks_created
        for subject, count in other.by_subject.items():
            self.by_subject[subject] = self.by_subject.get(subject, 0) + count

    def summary(self) -> str:
        return (
            f"{self.documents_processed} documents, {self.chunks_created} chunks: "
            f"{self.inserted} inserted, {self.updated} updated, {self.skipped} skipped, "
            f"{self.deleted} deleted, {len(self.errors)} errors ({self.duration_ms}ms)"
        )

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "deleted": self.deleted,
            "errors": [asdict(e) for e in self.errors],
            "documents_processed": self.documents_processed,
            "chunks_created": self.chunks_created,
            "duration_ms": self.duration_ms,
            "dry_run": self.dry_run,
            "collection_stats": (
                self.collection_stats.to_dict() if self.collection_stats else None
            ),
            "by_subject": dict(self.by_subject),
        }


# ---------------------------------------------------------------------------
# PIPELINE
# ---------------------------------------------------------------------------


class IngestionPipeline:
    """Chunk, embed and upsert curriculum documents."""

    def __init__(
        self,
        chunker: DocumentChunker,
        embeddings: EmbeddingProvider,
        store: VectorStore,
        config: IngestionConfig | None = None,
        cache: QueryCache | None = None,
        tracer: TracerProtocol | None = None,
        max_concurrent_embeddings: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.chunker = chunker
        self.embeddings = embeddings
        self.store = store
        self.config = config or IngestionConfig()
        self.cache = cache
        self.tracer = tracer or get_tracer()
        if max_concurrent_embeddings is None:
            max_concurrent_embeddings = EmbeddingConfig().max_concurrent_calls
        self._embed_slots = threading.BoundedSemaphore(max(1, max_concurrent_embeddings))
        self._sleep = sleep
        self._now = now

    @property
    def embedding_model(self) -> str:
        return getattr(self.embeddings, "model", type(self.embeddings).__name__)

    # -----------------------------------------------------------------------
    # PUBLIC API
    # -----------------------------------------------------------------------

    def ensure_ready(self) -> None:
        """Create the collection if needed. ConfigurationError here is fatal."""
        self.store.ensure_collection()

    def run(self, documents: Iterable[DocumentInput], dry_run: bool = False) -> IngestionReport:
        """Ingest documents and report what happened. Does not raise for bad data."""
        return self._execute(list(documents), IngestionReport(dry_run=dry_run))

    def reindex_document(self, document: DocumentInput) -> IngestionReport:
        """
        Replace every point of a document with its current content.

        Deletes by document id first, so chunks that no longer exist (the
        document got shorter) do not linger.
        """
        report = IngestionReport()
        valid = self._validate([document], report)
        if not valid:
            return report
        document = valid[0]

        try:
            report.deleted = self._with_retry(
                lambda: self.store.delete_by_prefix(document.id),
                f"delete {document.id}",
            )
        except RetrievalEngineError as e:
            report.errors.append(IngestionError(document.id, None, "store", str(e)))
            return report

        logger.info(f"Reindexing {document.id}: removed {report.deleted} points")
        return self._execute([document], report)

    def delete_document(self, document_id: str) -> int:
        """Remove all points of a document. Store errors propagate."""
        removed = self._with_retry(
            lambda: self.store.delete_by_prefix(document_id),
            f"delete {document_id}",
        )
        if removed:
            self._invalidate_cache()
        return removed

    def embedding_text(self, document: CurriculumDocument, chunk: Chunk) -> str:
        """Text sent to the embedding provider for a chunk."""
        if not self.config.contextualize:
            return chunk.content
        lines = [f'Document: "{document.display_title}" ({document.subject}, {document.level})']
        if document.domain:
            lines.append(f"Domaine: {document.domain}")
        return "\n".join(lines) + "\n\n" + chunk.content

    # -----------------------------------------------------------------------
    # RUN
    # -----------------------------------------------------------------------

    def _execute(self, documents: list[DocumentInput], report: IngestionReport) -> IngestionReport:
        started = time.perf_counter()
        attributes = {
            RAG_INGEST_DOCUMENTS: len(documents),
            RAG_INGEST_DRY_RUN: report.dry_run,
            GEN_AI_REQUEST_MODEL: self.embedding_model,
        }

        with self.tracer.start_span("ingestion.run", attributes=attributes) as span:
            valid = self._validate(documents, report)
            for result in self._process_all(valid, report.dry_run):
                report.merge(result)

            if report.changed:
                self._invalidate_cache()
            if not report.dry_run:
                report.collection_stats = self._collection_stats()

            report.duration_ms = int((time.perf_counter() - started) * 1000)
            for key, value in ingestion_report_attributes(report).items():
                span.set_attribute(key, value)
            if report.errors:
                span.set_status("error", f"{len(report.errors)} errors")

        logger.info(f"Ingestion {'dry run ' if report.dry_run else ''}done: {report.summary()}")
        return report

    def _validate(
        self, documents: list[DocumentInput], report: IngestionReport
    ) -> list[CurriculumDocument]:
        valid: list[CurriculumDocument] = []
        seen: set[str] = set()
        for item in documents:
            if isinstance(item, CurriculumDocument):
                document = item
            elif isinstance(item, dict):
                try:
                    document = CurriculumDocument.model_validate(item)
                except PydanticValidationError as e:
                    document_id = item.get("id") if isinstance(item.get("id"), str) else None
                    logger.warning(f"Rejected document {document_id}: {e.error_count()} errors")
                    report.errors.append(IngestionError(document_id, None, "validation", str(e)))
                    continue
            else:
                report.errors.append(
                    IngestionError(None, None, "validation", f"Unsupported input {type(item).__name__}")
                )
                continue

            if document.id in seen:
                report.errors.append(
                    IngestionError(document.id, None, "validation", "Duplicate document id in run")
                )
                continue
            seen.add(document.id)
            valid.append(document)
        return valid

    def _process_all(
        self, documents: list[CurriculumDocument], dry_run: bool
    ) -> Iterator[IngestionReport]:
        if len(documents) <= 1 or self.config.workers == 1:
            for document in documents:
                yield self._guarded_process(document, dry_run)
            return

        workers = min(self.config.workers, len(documents))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ingest") as pool:
            futures = [pool.submit(self._guarded_process, d, dry_run) for d in documents]
            for future in as_completed(futures):
                yield future.result()

    def _guarded_process(self, document: CurriculumDocument, dry_run: bool) -> IngestionReport:
        try:
            return self._process_document(document, dry_run)
        except Exception as e:
            # One broken document must not abort the run
            logger.exception(f"Unexpected error ingesting {document.id}: {e}")
            result = IngestionReport(documents_processed=1)
            result.errors.append(IngestionError(document.id, None, "unexpected", str(e)))
            return result

    # -----------------------------------------------------------------------
    # ONE DOCUMENT
    # -----------------------------------------------------------------------

    def _process_document(self, document: CurriculumDocument, dry_run: bool) -> IngestionReport:
        result = IngestionReport(documents_processed=1)

        with self.tracer.start_span(
            "ingestion.document", attributes={RAG_INGEST_DOCUMENT_ID: document.id}
        ) as span:
            chunks = self.chunker.chunk(document)
            result.chunks_created = len(chunks)
            result.by_subject[document.subject] = len(chunks)
            if not chunks or dry_run:
                return result

            texts = {c.id: self.embedding_text(document, c) for c in chunks}
            fingerprints = {c.id: self._fingerprint(document, c, texts[c.id]) for c in chunks}

            try:
                existing = self._with_retry(
                    lambda: self.store.get_points([c.id for c in chunks]),
                    f"point lookup {document.id}",
                )
            except RetrievalEngineError as e:
                result.errors.append(IngestionError(document.id, None, "store", str(e)))
                return result

            pending = []
            for chunk in chunks:
                previous = existing.get(chunk.id)
                if previous and previous.get("fingerprint") == fingerprints[chunk.id]:
                    result.skipped += 1
                else:
                    pending.append(chunk)

            vectors = self._embed_chunks(document, pending, texts, result)
            points = self._build_points(document, pending, vectors, fingerprints, existing)
            self._upsert(document, points, existing, result)

            for key, value in ingestion_report_attributes(result).items():
                span.set_attribute(key, value)

        logger.debug(
            f"{document.id}: {len(chunks)} chunks, {result.inserted} inserted, "
            f"{result.updated} updated, {result.skipped} skipped"
        )
        return result

    def _fingerprint(self, document: CurriculumDocument, chunk: Chunk, text: str) -> str:
        metadata = document.model_dump(exclude={"content"})
        return compute_fingerprint(
            metadata,
            chunk.index,
            chunk.start_offset,
            chunk.end_offset,
            text,
            self.embedding_model,
            self.embeddings.dimensions,
        )

    def _embed_chunks(
        self,
        document: CurriculumDocument,
        chunks: list[Chunk],
        texts: dict[str, str],
        result: IngestionReport,
    ) -> dict[str, np.ndarray]:
        vectors: dict[str, np.ndarray] = {}
        for batch in _batched(chunks, self.config.embed_batch_size):
            batch_texts = [texts[c.id] for c in batch]
            try:
                embedded = self._embed_call(
                    lambda: self._checked_batch(batch_texts),
                    f"embedding batch of {len(batch)} ({document.id})",
                )
                vectors.update(zip([c.id for c in batch], embedded))
                continue
            except RetrievalEngineError as e:
                logger.warning(f"Batch embedding failed for {document.id}, falling back per chunk: {e}")

            for chunk in batch:
                try:
                    vectors[chunk.id] = self._embed_call(
                        lambda: self.embeddings.embed(texts[chunk.id]),
                        f"embedding chunk {chunk.index} ({document.id})",
                    )
                except RetrievalEngineError as e:
                    result.errors.append(IngestionError(document.id, chunk.id, "embedding", str(e)))
        return vectors

    def _checked_batch(self, texts: list[str]) -> list[np.ndarray]:
        embedded = self.embeddings.embed_batch(texts)
        if len(embedded) != len(texts):
            raise EmbeddingError(f"Provider returned {len(embedded)} vectors for {len(texts)} texts")
        return embedded

    def _build_points(
        self,
        document: CurriculumDocument,
        chunks: list[Chunk],
        vectors: dict[str, np.ndarray],
        fingerprints: dict[str, str],
        existing: dict[str, dict[str, Any]],
    ) -> list[IndexedPoint]:
        now = self._now().isoformat()
        points = []
        for chunk in chunks:
            if chunk.id not in vectors:
                continue
            previous = existing.get(chunk.id) or {}
            payload = ChunkPayload.from_chunk(
                document,
                chunk,
                fingerprint=fingerprints[chunk.id],
                created_at=previous.get("created_at") or now,
                updated_at=now,
            )
            points.append(
                IndexedPoint(
                    id=chunk.id,
                    vector=np.asarray(vectors[chunk.id], dtype=np.float32),
                    payload=payload.model_dump(mode="json"),
                )
            )
        return points

    def _upsert(
        self,
        document: CurriculumDocument,
        points: list[IndexedPoint],
        existing: dict[str, dict[str, Any]],
        result: IngestionReport,
    ) -> None:
        for batch in _batched(points, self.config.upsert_batch_size):
            try:
                self._with_retry(
                    lambda: self.store.upsert_points(batch),
                    f"upsert of {len(batch)} points ({document.id})",
                )
            except RetrievalEngineError as e:
                kind = "validation" if isinstance(e, ValidationError) else "store"
                for point in batch:
                    result.errors.append(IngestionError(document.id, point.id, kind, str(e)))
                continue

            for point in batch:
                if point.id in existing:
                    result.updated += 1
                else:
                    result.inserted += 1

    # -----------------------------------------------------------------------
    # HELPERS
    # -----------------------------------------------------------------------

    def _with_retry(self, fn: Callable[[], T], description: str) -> T:
        return retry_call(
            fn,
            max_attempts=self.config.max_attempts,
            base_delay=self.config.retry_base_delay,
            sleep=self._sleep,
            description=description,
        )

    def _embed_call(self, fn: Callable[[], T], description: str) -> T:
        def limited() -> T:
            with self._embed_slots:
                return fn()

        return self._with_retry(limited, description)

    def _invalidate_cache(self) -> None:
        if self.cache is None:
            return
        try:
            self.cache.invalidate_all()
        except Exception as e:
            logger.warning(f"Query cache invalidation failed, entries expire by TTL: {e}")

    def _collection_stats(self) -> CollectionStats | None:
        try:
            return self.store.stats()
        except RetrievalEngineError as e:
            logger.warning(f"Could not read collection stats: {e}")
            return None
