"""
Data model for curriculum documents, chunks and point payloads.

These Pydantic models are the CONTRACT at the ingestion boundary: raw
dictionaries coming from curriculum files are validated here, and anything
that does not fit is rejected before it reaches the embedding provider or the
vector store.

- CurriculumDocument: a source document as maintained by curriculum authors
- Chunk: a bounded slice of a document with a deterministic id
- ChunkPayload: what is stored next to each vector
- SearchQuery: validated search input
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


EducationLevel = Literal[
    "cp", "ce1", "ce2", "cm1", "cm2",
    "sixieme", "cinquieme", "quatrieme", "troisieme",
    "seconde", "premiere", "terminale",
]

SourceType = Literal["programme_officiel", "manuel", "exercice", "cours"]

LEVEL_CYCLES: dict[str, str] = {
    "cp": "cycle2",
    "ce1": "cycle2",
    "ce2": "cycle2",
    "cm1": "cycle3",
    "cm2": "cycle3",
    "sixieme": "cycle3",
    "cinquieme": "cycle4",
    "quatrieme": "cycle4",
    "troisieme": "cycle4",
    "seconde": "lycee",
    "premiere": "lycee",
    "terminale": "lycee",
}

# Fixed namespace so chunk ids are stable across processes and releases
CHUNK_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "curriculum-retrieval/chunk")


def chunk_id_for(document_id: str, index: int) -> str:
    """Deterministic chunk id: uuid5 over (document_id, index)."""
    return str(uuid.uuid5(CHUNK_ID_NAMESPACE, f"{document_id}:{index}"))


def compute_fingerprint(*parts: object) -> str:
    """Stable sha256 over JSON-serialized parts."""
    raw = json.dumps(parts, ensure_ascii=False, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class CurriculumDocument(BaseModel):
    """
    A curriculum document to index.

    Immutable once ingested except through an explicit reindex.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(min_length=1, description="Stable document identifier")
    content: str = Field(description="Full document text")
    level: EducationLevel = Field(description="School level, e.g. 'cinquieme'")
    subject: str = Field(min_length=1, description="Curriculum subject, e.g. 'mathematiques'")
    title: str | None = None
    cycle: str | None = None
    domain: str | None = None
    subdomain: str | None = None
    source: str | None = None
    source_url: str | None = None
    source_type: SourceType | None = None

    @field_validator("id", "subject")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @model_validator(mode="before")
    @classmethod
    def _derive_cycle(cls, data: object) -> object:
        if isinstance(data, dict) and not data.get("cycle"):
            level = data.get("level")
            if level in LEVEL_CYCLES:
                data = {**data, "cycle": LEVEL_CYCLES[level]}
        return data

    @property
    def display_title(self) -> str:
        return self.title or self.id


@dataclass(frozen=True)
class Chunk:
    """
    A bounded slice of a document.

    content == document.content[start_offset:end_offset]
    """
    id: str
    document_id: str
    index: int
    content: str
    start_offset: int
    end_offset: int

    def __len__(self) -> int:
        return len(self.content)


class ChunkPayload(BaseModel):
    """Payload stored with each vector."""

    model_config = ConfigDict(extra="ignore")

    document_id: str = Field(min_length=1)
    chunk_id: str = Field(min_length=1)
    chunk_index: int = Field(ge=0)
    content: str = Field(min_length=1)
    title: str
    level: EducationLevel
    subject: str = Field(min_length=1)
    cycle: str | None = None
    domain: str | None = None
    subdomain: str | None = None
    source: str | None = None
    source_url: str | None = None
    source_type: SourceType | None = None
    start_offset: int = Field(ge=0)
    end_offset: int = Field(ge=0)
    fingerprint: str
    created_at: str
    updated_at: str

    @classmethod
    def from_chunk(
        cls,
        document: CurriculumDocument,
        chunk: Chunk,
        fingerprint: str,
        created_at: str,
        updated_at: str,
    ) -> "ChunkPayload":
        return cls(
            document_id=document.id,
            chunk_id=chunk.id,
            chunk_index=chunk.index,
            content=chunk.content,
            title=document.display_title,
            level=document.level,
            subject=document.subject,
            cycle=document.cycle,
            domain=document.domain,
            subdomain=document.subdomain,
            source=document.source,
            source_url=document.source_url,
            source_type=document.source_type,
            start_offset=chunk.start_offset,
            end_offset=chunk.end_offset,
            fingerprint=fingerprint,
            created_at=created_at,
            updated_at=updated_at,
        )


class SearchQuery(BaseModel):
    """Validated search input from callers (chat, deck generation)."""

    text: str = Field(min_length=1)
    level: EducationLevel
    subject: str = Field(min_length=1)
    limit: int = Field(default=5, ge=1, le=10)
    min_score_override: float | None = Field(default=None, ge=0.0, le=1.0)
