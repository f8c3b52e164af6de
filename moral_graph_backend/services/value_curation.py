"""Curator edits and embedding backfill for canonical values, submissions and contexts."""

import logging
from typing import Dict, Optional, Sequence

from moral_graph_backend.services.embedding_service import value_to_text
from moral_graph_backend.services.errors import InvariantViolation, NotFoundError

logger = logging.getLogger(__name__)


class ValueCurator:
    """Keeps embeddings in step with the text they were computed from."""

    def __init__(self, embedding_service, repo):
        self.embedding_service = embedding_service
        self.repo = repo

    async def update_canonical_value(
        self,
        deliberation_id: int,
        value_id: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
        policies: Optional[Sequence[str]] = None,
    ):
        """Edit a canonical value; changed policies are re-embedded in the same write."""
        value = await self.repo.get_canonical_value(deliberation_id, value_id)
        if value is None:
            raise NotFoundError("value", value_id)

        embedding = None
        if policies is not None and list(policies) != list(value.policies or []):
            text = value_to_text(policies)
            if not text:
                raise InvariantViolation("A canonical value needs at least one policy", {"value_id": value_id})
            embedding = await self.embedding_service.embed_text(text)

        return await self.repo.update_canonical_value(
            value,
            title=title,
            description=description,
            policies=policies,
            embedding=embedding,
        )

    async def embed_missing(self, deliberation_id: int) -> Dict[str, int]:
        """Embed canonical values, submissions and contexts that have no embedding yet."""
        counts = {"canonical_values": 0, "submissions": 0, "contexts": 0}

        values = await self.repo.canonical_values_without_embedding(deliberation_id)
        embeddings = await self.embedding_service.embed_batch([value_to_text(v.policies or []) for v in values])
        for value, embedding in zip(values, embeddings):
            if embedding is None:
                logger.warning("Canonical value %s has no policies to embed", value.id)
                continue
            await self.repo.set_canonical_embedding(value.id, embedding)
            counts["canonical_values"] += 1

        submissions = await self.repo.submissions_without_embedding(deliberation_id)
        embeddings = await self.embedding_service.embed_batch([value_to_text(s.policies or []) for s in submissions])
        computed = {
            submission.id: embedding
            for submission, embedding in zip(submissions, embeddings)
            if embedding is not None
        }
        if computed:
            await self.repo.set_submission_embeddings(computed)
        counts["submissions"] = len(computed)

        contexts = await self.repo.contexts_without_embedding(deliberation_id)
        embeddings = await self.embedding_service.embed_batch([context.id for context in contexts])
        for context, embedding in zip(contexts, embeddings):
            if embedding is None:
                continue
            await self.repo.set_context_embedding(deliberation_id, context.id, embedding)
            counts["contexts"] += 1

        logger.info("Embedded missing vectors for deliberation %s: %s", deliberation_id, counts)
        return counts
