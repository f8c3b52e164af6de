"""
Embedding Service for value and context similarity using OpenAI's text-embedding-3-small.

Generates 1536-dimensional vectors for value policies and context phrases.
Vectors are compared with cosine distance (1 - cosine similarity), so 0 means
identical direction and 2 means opposite.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

import numpy as np
import openai
from openai import AsyncOpenAI

from moral_graph_backend.config import EMBEDDING_DIMENSIONS, EMBEDDING_MODEL, OPENAI_API_KEY
from moral_graph_backend.services.errors import ProviderRequestError, TransientProviderError

logger = logging.getLogger(__name__)

TRANSIENT_OPENAI_ERRORS = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


def value_to_text(policies: Sequence[str]) -> str:
    """Text embedded for a value: its attention policies, one per line."""
    return "\n".join(policy.strip() for policy in policies if policy and policy.strip())


def cosine_distance(embedding1: Sequence[float], embedding2: Sequence[float]) -> float:
    """
    Calculate cosine distance between two embeddings.

    Returns:
        Distance between 0 and 2; 1.0 when either vector is all zeros
    """
    vec1 = np.asarray(embedding1, dtype=float)
    vec2 = np.asarray(embedding2, dtype=float)

    norm1 = np.linalg.norm(vec1)
    norm2 = np.linalg.norm(vec2)

    if norm1 == 0 or norm2 == 0:
        return 1.0

    return float(1.0 - np.dot(vec1, vec2) / (norm1 * norm2))


def cosine_distances_to(query: Sequence[float], candidates: Sequence[Sequence[float]]) -> np.ndarray:
    """Vectorized cosine distance from `query` to every row of `candidates`."""
    if len(candidates) == 0:
        return np.zeros(0)

    matrix = np.asarray(candidates, dtype=float)
    vector = np.asarray(query, dtype=float)

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(vector)
    dots = matrix @ vector
    with np.errstate(divide="ignore", invalid="ignore"):
        similarities = np.where(norms > 0, dots / norms, 0.0)
    return 1.0 - similarities


def average_embedding(embeddings: Sequence[Sequence[float]]) -> List[float]:
    """Element-wise mean of equally sized embedding vectors."""
    if len(embeddings) == 0:
        raise ValueError("The embeddings list cannot be empty")

    dimension = len(embeddings[0])
    if any(len(embedding) != dimension for embedding in embeddings):
        raise ValueError("All embedding vectors should have the same dimension")

    return np.mean(np.asarray(embeddings, dtype=float), axis=0).tolist()


class EmbeddingService:
    """
    Service for generating text embeddings using the OpenAI API.

    Uses text-embedding-3-small model:
    - 1536 dimensions
    - Identical text is served from a per-instance cache
    """

    MAX_BATCH_SIZE = 100  # OpenAI limit

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = EMBEDDING_MODEL,
        dimensions: int = EMBEDDING_DIMENSIONS,
    ):
        self.client = client
        self.model = model
        self.dimensions = dimensions
        self._cache: Dict[str, List[float]] = {}

    @classmethod
    def from_env(cls) -> "EmbeddingService":
        if not OPENAI_API_KEY:
            raise ValueError(
                "OPENAI_API_KEY not found in environment. "
                "Please set it to use embedding service."
            )
        return cls(AsyncOpenAI(api_key=OPENAI_API_KEY))

    async def embed_text(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Raises:
            ValueError: If text is empty
            TransientProviderError: If the OpenAI call fails transiently
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        cached = self._cache.get(text)
        if cached is not None:
            return cached

        response = await self._create(text)
        embedding = self._checked(response.data[0].embedding)
        self._cache[text] = embedding
        return embedding

    async def embed_batch(
        self,
        texts: List[str],
        batch_size: int = 50
    ) -> List[Optional[List[float]]]:
        """
        Generate embeddings for multiple texts efficiently.

        Returns:
            List of embeddings in same order as input texts; None for empty texts
        """
        if not texts:
            return []

        all_embeddings: List[Optional[List[float]]] = [None] * len(texts)
        pending = []
        for i, text in enumerate(texts):
            if not text or not text.strip():
                continue
            if text in self._cache:
                all_embeddings[i] = self._cache[text]
            else:
                pending.append((i, text))

        batch_size = min(batch_size, self.MAX_BATCH_SIZE)

        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            response = await self._create([text for _, text in batch])

            for (original_idx, text), embedding_obj in zip(batch, response.data):
                embedding = self._checked(embedding_obj.embedding)
                self._cache[text] = embedding
                all_embeddings[original_idx] = embedding

            # Rate limiting: small delay between batches
            if start + batch_size < len(pending):
                await asyncio.sleep(0.1)

        return all_embeddings

    async def embed_value(self, policies: Sequence[str]) -> List[float]:
        """Embed a value through its attention policies."""
        return await self.embed_text(value_to_text(policies))

    async def _create(self, payload):
        try:
            return await self.client.embeddings.create(
                model=self.model,
                input=payload,
                encoding_format="float",
            )
        except TRANSIENT_OPENAI_ERRORS as exc:
            logger.warning("Embedding request failed transiently: %s", exc)
            raise TransientProviderError("openai_embeddings", str(exc)) from exc
        except openai.APIStatusError as exc:
            logger.warning("Embedding request rejected (%s): %s", exc.status_code, exc)
            raise ProviderRequestError("openai_embeddings", str(exc), exc.status_code) from exc

    def _checked(self, embedding: List[float]) -> List[float]:
        if len(embedding) != self.dimensions:
            raise ValueError(
                f"Embedding has {len(embedding)} dimensions, expected {self.dimensions}"
            )
        return list(embedding)
