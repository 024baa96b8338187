"""
Document chunking - sentence-aware slicing with overlap.

How a document is cut:
1. SPLIT  - the text is split into sentence units at newlines and at terminal
            punctuation followed by whitespace. Common French abbreviations
            ("M.", "Mme.", "cf.", "etc.") and list markers ("1.") do not end
            a sentence. Sentences longer than max_chars are cut at word
            boundaries.
2. GROUP  - units are packed greedily into chunks of at most max_chars. A
            new chunk starts with the trailing units of the previous one, up
            to overlap * max_chars characters, so context survives the cut.
            When a chunk is still under min_chars and the next unit does not
            fit, the unit is cut at a word boundary to fill the chunk.
3. TAIL   - a last chunk under min_chars is merged into its predecessor, or
            the pair is re-split evenly at a word boundary.

Every chunk is an exact slice of the document (content ==
document.content[start_offset:end_offset]) and its id is a hash of
(document_id, index), so chunking the same document twice gives identical
chunks. That is what makes re-ingestion idempotent.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass

from curriculum_retrieval.config import ChunkingConfig
from curriculum_retrieval.documents import Chunk, CurriculumDocument, chunk_id_for

logger = logging.getLogger(__name__)

Span = tuple[int, int]

ABBREVIATIONS = frozenset({"M", "Mme", "Mlle", "Dr", "Pr", "ex", "cf", "etc", "p", "fig", "vol"})

_BOUNDARY_RE = re.compile(r"\s*\n\s*|(?<=[.!?…])\s+")
_LAST_TOKEN_RE = re.compile(r"(\S+)$")
_LIST_MARKER_RE = re.compile(r"^\d+\.$")


@dataclass
class ChunkingStats:
    """Aggregate numbers for a chunking pass."""
    documents: int
    total_chunks: int
    avg_chars: int
    min_chars: int
    max_chars: int


class DocumentChunker:
    """Splits documents into bounded, deterministically identified chunks."""

    def __init__(self, config: ChunkingConfig | None = None):
        self.config = config or ChunkingConfig()

    # -----------------------------------------------------------------------
    # PUBLIC API
    # -----------------------------------------------------------------------

    def chunk(self, document: CurriculumDocument) -> list[Chunk]:
        """Chunk one document. Empty documents yield no chunks."""
        text = document.content
        if not text.strip():
            logger.warning(f"Document {document.id} has no content, skipping chunking")
            return []

        units = self._split_units(text)
        spans = self._group(text, units)
        spans = self._rebalance_tail(text, spans)

        return [
            Chunk(
                id=chunk_id_for(document.id, index),
                document_id=document.id,
                index=index,
                content=text[start:end],
                start_offset=start,
                end_offset=end,
            )
            for index, (start, end) in enumerate(spans)
        ]

    def chunk_many(
        self, documents: list[CurriculumDocument]
    ) -> tuple[list[Chunk], ChunkingStats]:
        """Chunk several documents and summarize the result."""
        chunks: list[Chunk] = []
        for document in documents:
            chunks.extend(self.chunk(document))

        lengths = [len(c) for c in chunks]
        stats = ChunkingStats(
            documents=len(documents),
            total_chunks=len(chunks),
            avg_chars=round(sum(lengths) / len(lengths)) if lengths else 0,
            min_chars=min(lengths) if lengths else 0,
            max_chars=max(lengths) if lengths else 0,
        )
        return chunks, stats

    # -----------------------------------------------------------------------
    # SPLITTING
    # -----------------------------------------------------------------------

    def _split_units(self, text: str) -> list[Span]:
        units: list[Span] = []
        for start, end in self._sentence_spans(text):
            if end - start > self.config.max_chars:
                units.extend(self._split_long(text, start, end))
            else:
                units.append((start, end))
        return units

    def _sentence_spans(self, text: str) -> list[Span]:
        spans: list[Span] = []
        pos = 0
        for match in _BOUNDARY_RE.finditer(text):
            if "\n" not in match.group() and self._is_protected(text, match.start()):
                continue
            spans.append((pos, match.start()))
            pos = match.end()
        spans.append((pos, len(text)))

        trimmed = []
        for start, end in spans:
            start, end = _lstrip(text, start, end), _rstrip(text, start, end)
            if start < end:
                trimmed.append((start, end))
        return trimmed

    def _is_protected(self, text: str, boundary: int) -> bool:
        """True when the period before boundary does not end a sentence."""
        if text[boundary - 1] != ".":
            return False
        match = _LAST_TOKEN_RE.search(text[max(0, boundary - 24):boundary])
        if not match:
            return False
        token = match.group(1)
        if _LIST_MARKER_RE.match(token):
            return True
        return token[:-1].lstrip("([«\"'") in ABBREVIATIONS

    def _split_long(self, text: str, start: int, end: int) -> list[Span]:
        """Cut an oversized sentence at word boundaries."""
        pieces: list[Span] = []
        max_chars = self.config.max_chars
        while end - start > max_chars:
            cut = _word_cut(text, start, start + max_chars)
            if cut is None:
                # A single "word" longer than max_chars: hard cut
                pieces.append((start, start + max_chars))
                start = start + max_chars
            else:
                pieces.append((start, _rstrip(text, start, cut)))
                start = _lstrip(text, cut, end)
        if start < end:
            pieces.append((start, end))
        return pieces

    # -----------------------------------------------------------------------
    # GROUPING
    # -----------------------------------------------------------------------

    def _group(self, text: str, units: list[Span]) -> list[Span]:
        max_chars, min_chars = self.config.max_chars, self.config.min_chars
        spans: list[Span] = []
        current: list[Span] = []
        queue = deque(units)

        while queue:
            unit: Span | None = queue.popleft()
            if not current:
                current = [unit]
                continue

            start = current[0][0]
            if unit[1] - start <= max_chars:
                current.append(unit)
                continue

            if current[-1][1] - start < min_chars:
                # Fill the undersized chunk with the head of the next unit
                cut = _word_cut(text, unit[0], start + max_chars)
                if cut is not None:
                    current.append((unit[0], _rstrip(text, unit[0], cut)))
                    tail_start = _lstrip(text, cut, unit[1])
                    unit = (tail_start, unit[1]) if tail_start < unit[1] else None

            spans.append((start, current[-1][1]))
            if unit is None:
                current = []
            else:
                queue.appendleft(unit)
                current = self._overlap(current, unit)

        if current:
            spans.append((current[0][0], current[-1][1]))
        return spans

    def _overlap(self, current: list[Span], next_unit: Span) -> list[Span]:
        """Trailing units of a finished chunk to repeat at the next one's start."""
        budget = self.config.overlap_chars
        if budget <= 0 or len(current) < 2:
            return []

        end = current[-1][1]
        suffix: list[Span] = []
        # Never repeat the whole chunk, or the next one would not progress
        for unit in reversed(current[1:]):
            if end - unit[0] > budget:
                break
            suffix.insert(0, unit)

        while suffix and next_unit[1] - suffix[0][0] > self.config.max_chars:
            suffix.pop(0)
        return suffix

    def _rebalance_tail(self, text: str, spans: list[Span]) -> list[Span]:
        if len(spans) < 2:
            return spans
        (prev_start, _), (last_start, last_end) = spans[-2], spans[-1]
        if last_end - last_start >= self.config.min_chars:
            return spans

        if last_end - prev_start <= self.config.max_chars:
            return spans[:-2] + [(prev_start, last_end)]

        middle = prev_start + (last_end - prev_start) // 2
        cut = _nearest_space(text, prev_start, last_end, middle)
        if cut is None:
            return spans
        head = (prev_start, _rstrip(text, prev_start, cut))
        tail = (_lstrip(text, cut, last_end), last_end)
        return spans[:-2] + [head, tail]


# ---------------------------------------------------------------------------
# OFFSET HELPERS
# ---------------------------------------------------------------------------


def _lstrip(text: str, start: int, end: int) -> int:
    while start < end and text[start].isspace():
        start += 1
    return start


def _rstrip(text: str, start: int, end: int) -> int:
    while end > start and text[end - 1].isspace():
        end -= 1
    return end


def _word_cut(text: str, start: int, limit: int) -> int | None:
    """Last whitespace index w with start < w <= limit, or None."""
    for index in range(min(limit, len(text) - 1), start, -1):
        if text[index].isspace():
            return index
    return None


def _nearest_space(text: str, low: int, high: int, middle: int) -> int | None:
    """Whitespace index closest to middle within (low, high)."""
    for distance in range(0, high - low):
        for index in (middle - distance, middle + distance):
            if low < index < high and text[index].isspace():
                return index
    return None
