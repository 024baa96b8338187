"""
JSONL document loader for the ingestion CLI.

One JSON object per line. Missing level/subject are filled from the caller,
and a missing id is derived from (level, subject, title) so re-running the
same file always targets the same points. Bad lines are reported, never
raised, so one typo does not block a whole curriculum file.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import unicodedata
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from curriculum_retrieval.documents import CurriculumDocument

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    folded = unicodedata.normalize("NFKD", text.casefold())
    folded = "".join(c for c in folded if not unicodedata.combining(c))
    return _SLUG_RE.sub("-", folded).strip("-")


def derive_document_id(level: str, subject: str, title: str) -> str:
    """Readable, stable id: level-subject-slug-hash."""
    digest = hashlib.sha256(f"{level}|{subject}|{title}".encode("utf-8")).hexdigest()[:8]
    slug = slugify(title)[:48].rstrip("-") or "document"
    return f"{level}-{slugify(subject)}-{slug}-{digest}"


def load_documents_jsonl(
    path: str | Path,
    level: str | None = None,
    subject: str | None = None,
) -> tuple[list[CurriculumDocument], list[str]]:
    """
    Load curriculum documents from a JSONL file.

    Returns:
        (documents, errors) where each error names the offending line
    """
    documents: list[CurriculumDocument] = []
    errors: list[str] = []

    with open(path, encoding="utf-8") as f:
        for line_number, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                raw: Any = json.loads(line)
            except json.JSONDecodeError as e:
                errors.append(f"line {line_number}: invalid JSON ({e.msg})")
                continue
            if not isinstance(raw, dict):
                errors.append(f"line {line_number}: expected an object")
                continue

            if level and not raw.get("level"):
                raw["level"] = level
            if subject and not raw.get("subject"):
                raw["subject"] = subject
            if not raw.get("id") and raw.get("level") and raw.get("subject"):
                title = raw.get("title") or raw.get("content", "")[:80]
                raw["id"] = derive_document_id(raw["level"], raw["subject"], title)

            try:
                documents.append(CurriculumDocument.model_validate(raw))
            except PydanticValidationError as e:
                fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
                errors.append(f"line {line_number}: invalid document ({fields})")

    logger.info(f"Loaded {len(documents)} documents from {path} ({len(errors)} rejected)")
    return documents, errors
