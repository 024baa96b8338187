"""
Helpers shared by the vector store implementations.
"""

from __future__ import annotations

import re

from curriculum_retrieval.core.errors import ConfigurationError, ValidationError
from curriculum_retrieval.core.protocols import IndexedPoint

# Payload fields that are indexed for filtering in every backend
FILTER_FIELDS = ("level", "subject")
DOCUMENT_FIELD = "document_id"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def clamp_score(score: float) -> float:
    """Cosine similarity restricted to [0, 1]."""
    return max(0.0, min(1.0, float(score)))


def check_points(points: list[IndexedPoint], dimension: int) -> None:
    """Reject points whose vector size or payload cannot be stored."""
    for point in points:
        if point.vector.ndim != 1 or point.vector.shape[0] != dimension:
            raise ValidationError(
                f"Point {point.id} has vector shape {point.vector.shape}, "
                f"expected ({dimension},)",
                document_id=point.payload.get(DOCUMENT_FIELD),
            )
        if not point.payload.get(DOCUMENT_FIELD):
            raise ValidationError(f"Point {point.id} payload has no {DOCUMENT_FIELD}")


def check_identifier(name: str) -> str:
    """Table/collection names are interpolated into SQL, so keep them plain."""
    if not _IDENTIFIER_RE.match(name):
        raise ConfigurationError(f"Invalid collection name: {name!r}")
    return name
