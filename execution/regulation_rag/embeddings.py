"""
Query Embedding Service

Embeds search queries with OpenAI ``text-embedding-3-small`` (1536 dims),
the same model the ingestion pipeline used for the stored chunks. Vectors
whose length differs from the configured dimensions are rejected, since
cosine comparison against the stored embeddings would be meaningless.

No caching: every request re-embeds its query.
"""

import os
import logging
from typing import Optional
from dataclasses import dataclass

from openai import OpenAI

logger = logging.getLogger(__name__)


class EmbeddingDimensionError(ValueError):
    """Embedding length does not match the stored chunk embedding dimension."""


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    timeout: float = 30.0


class EmbeddingService:
    """OpenAI query embedding service."""

    _env_var_name = "OPENAI_API_KEY"

    def __init__(self, config: Optional[EmbeddingConfig] = None, client=None):
        self.config = config or EmbeddingConfig(
            model=os.getenv("EMBEDDING_MODEL", EmbeddingConfig.model)
        )
        self._client = client
        if self._client is None:
            self._init_client()

    def _init_client(self):
        """Initialize the OpenAI client."""
        api_key = os.getenv(self._env_var_name)

        if not api_key:
            logger.warning(
                f"{self._env_var_name} not found. Embeddings will fail. "
                "Set the environment variable."
            )
            return

        self._client = OpenAI(api_key=api_key, timeout=self.config.timeout)
        logger.info(f"OpenAI embedding client initialized with model {self.config.model}")

    def embed_query(self, query: str) -> list[float]:
        """
        Generate embedding for a search query.

        Args:
            query: Search query string

        Returns:
            Embedding vector of ``config.dimensions`` floats

        Raises:
            RuntimeError: client not initialized (missing API key)
            EmbeddingDimensionError: provider returned a vector of the wrong size
        """
        if not self._client:
            raise RuntimeError(
                f"OpenAI client not initialized. Check {self._env_var_name}."
            )

        try:
            response = self._client.embeddings.create(
                model=self.config.model,
                input=query,
            )
        except Exception as e:
            logger.error(f"OpenAI embedding failed: {e}")
            raise

        embedding = list(response.data[0].embedding)
        if len(embedding) != self.config.dimensions:
            raise EmbeddingDimensionError(
                f"Embedding model {self.config.model} returned {len(embedding)} "
                f"dimensions, expected {self.config.dimensions}"
            )
        return embedding

    @property
    def dimensions(self) -> int:
        return self.config.dimensions
