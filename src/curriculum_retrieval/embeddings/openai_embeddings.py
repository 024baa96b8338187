"""
Embeddings Module - Single Responsibility: Generate text embeddings.

It has ONE job: convert text to unit-length vectors of a fixed dimension.
Ingestion and retrieval must share the same provider configuration; a model
or dimension change requires a full reindex.

Any OpenAI-compatible embeddings endpoint works (set base_url), which is how
Mistral-hosted embeddings plug in without a separate client.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
import unicodedata

import numpy as np
from openai import OpenAI, OpenAIError

from curriculum_retrieval.config import EmbeddingConfig
from curriculum_retrieval.core.errors import ConfigurationError, EmbeddingError
from curriculum_retrieval.core.protocols import EmbeddingProvider

logger = logging.getLogger(__name__)


def _normalize(vector: np.ndarray) -> np.ndarray:
    """Scale to unit length so cosine similarity equals the dot product."""
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        raise EmbeddingError("Cannot normalize zero-magnitude vector")
    return (vector / norm).astype(np.float32)


class OpenAIEmbeddings:
    """
    OpenAI-based embedding provider.

    Uses text-embedding-3-small by default (1536 dimensions). Vectors are
    normalized and their dimension checked on every call.
    """

    MODEL_DIMS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
        "mistral-embed": 1024,
    }

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: str | None = None,
        base_url: str | None = None,
        dimensions: int | None = None,
        timeout: float = 30.0,
    ):
        if not api_key:
            raise ConfigurationError(
                "An embedding API key is required (OPENAI_API_KEY or EMBEDDING_API_KEY)"
            )
        self.model = model
        self._dimensions = dimensions or self.MODEL_DIMS.get(model, 1536)
        self._client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions for the model."""
        return self._dimensions

    def _create(self, texts: list[str]) -> list[np.ndarray]:
        kwargs = {}
        # Only the text-embedding-3 family accepts a requested dimension
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimensions

        start = time.perf_counter()
        try:
            response = self._client.embeddings.create(
                input=texts,
                model=self.model,
                **kwargs,
            )
        except OpenAIError as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        vectors = []
        for item in sorted(response.data, key=lambda d: d.index):
            vector = np.array(item.embedding, dtype=np.float32)
            if vector.shape[0] != self._dimensions:
                raise EmbeddingError(
                    f"Expected {self._dimensions}-dim embedding from {self.model}, "
                    f"got {vector.shape[0]}"
                )
            vectors.append(_normalize(vector))

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} embeddings for {len(texts)} inputs"
            )

        logger.debug(
            f"Embedded {len(texts)} text(s) with {self.model} "
            f"in {(time.perf_counter() - start) * 1000:.0f}ms"
        )
        return vectors

    def embed(self, text: str) -> np.ndarray:
        """Generate embedding for a single text."""
        return self._create([text])[0]

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Generate embeddings for multiple texts efficiently."""
        if not texts:
            return []
        return self._create(texts)


class MockEmbeddings:
    """
    Mock embedding provider for testing without API calls.

    Generates deterministic feature-hashed bag-of-words vectors: each
    accent-folded, lightly stemmed token is hashed into a bucket, and the
    count vector is normalized. Texts sharing words get a positive cosine
    similarity, which is enough to exercise thresholds and filters.
    NOT for production use - only for testing/development.
    """

    STOPWORDS = frozenset(
        "a au aux avec ce ces comment d dans de des du en est et il ils la le les "
        "l leur mais ne on ou par pas pour qu que qui sa se ses son sur un une "
        "an and are as at be by for how in is it of on or the to what with".split()
    )

    _TOKEN_RE = re.compile(r"\w+")

    def __init__(self, dimensions: int = 1536):
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def tokens(self, text: str) -> list[str]:
        folded = unicodedata.normalize("NFKD", text.casefold())
        folded = "".join(c for c in folded if not unicodedata.combining(c))
        result = []
        for token in self._TOKEN_RE.findall(folded):
            if token in self.STOPWORDS:
                continue
            if len(token) > 3 and token[-1] in "sx":
                token = token[:-1]
            result.append(token)
        return result

    def embed(self, text: str) -> np.ndarray:
        """Generate deterministic pseudo-embedding from hashed tokens."""
        vector = np.zeros(self._dimensions, dtype=np.float32)
        for token in self.tokens(text):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:8], "big") % self._dimensions] += 1.0
        norm = float(np.linalg.norm(vector))
        if norm == 0.0:
            return vector
        return vector / norm

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Generate embeddings for multiple texts."""
        return [self.embed(text) for text in texts]


def get_embedding_provider(
    config: EmbeddingConfig | None = None,
    use_mock: bool | None = None,
) -> EmbeddingProvider:
    """
    Factory function to get the appropriate embedding provider.

    Args:
        config: Embedding settings (loaded from env if not provided)
        use_mock: Override config.use_mock
    """
    config = config or EmbeddingConfig.from_env()
    mock = config.use_mock if use_mock is None else use_mock

    if mock:
        logger.info(f"Using mock embeddings ({config.dimensions} dims)")
        return MockEmbeddings(dimensions=config.dimensions)

    logger.info(f"Using {config.model} embeddings ({config.dimensions} dims)")
    return OpenAIEmbeddings(
        model=config.model,
        api_key=config.api_key,
        base_url=config.base_url,
        dimensions=config.dimensions,
        timeout=config.timeout_seconds,
    )
