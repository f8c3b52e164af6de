"""Context deduplication and merging."""

import logging
from typing import Dict, Optional, Tuple

from moral_graph_backend.config import CONTEXT_SEARCH_LIMIT, NEAR_IDENTICAL_DISTANCE
from moral_graph_backend.schemas import ContextGroups
from moral_graph_backend.services.errors import InvariantViolation, NotFoundError

logger = logging.getLogger(__name__)


class ContextDeduplicator:
    """Finds, adds and merges situational contexts without duplicating them."""

    def __init__(
        self,
        embedding_service,
        arbiter,
        repo,
        search_limit: int = CONTEXT_SEARCH_LIMIT,
        near_identical_distance: float = NEAR_IDENTICAL_DISTANCE,
    ):
        self.embedding_service = embedding_service
        self.arbiter = arbiter
        self.repo = repo
        self.search_limit = search_limit
        self.near_identical_distance = near_identical_distance

    async def find_duplicate_context(self, deliberation_id: int, text: str) -> Optional[str]:
        """Id of an existing context meaning the same as `text`, or None."""
        embedding = await self.embedding_service.embed_text(text)
        return await self._find_duplicate(deliberation_id, text, embedding)

    async def _find_duplicate(self, deliberation_id: int, text: str, embedding) -> Optional[str]:
        nearby = await self.repo.find_contexts_near(deliberation_id, embedding, limit=self.search_limit)
        if not nearby:
            return None

        for context, distance in nearby:
            if distance < self.near_identical_distance:
                return context.id

        candidate_ids = [context.id for context, _ in nearby]
        response = await self.arbiter.generate_structured(
            "deduplicate_contexts",
            {"contexts": [text, *candidate_ids]},
            ContextGroups,
        )

        for group in response.groups:
            if len(group) < 2 or text not in group:
                continue
            for member in group:
                if member == text:
                    continue
                if member in candidate_ids:
                    return member
                logger.warning("Dropping context %r returned by the LLM but never offered to it", member)
        return None

    async def add_context(
        self,
        deliberation_id: int,
        question_id: int,
        text: str,
        chat_id: Optional[str] = None,
    ) -> Tuple[str, bool]:
        """
        Attach a context to a question.

        Returns the id of the context now linked to the question and whether a
        new context row was created.
        """
        text = (text or "").strip()
        if not text:
            raise InvariantViolation("Context text must not be empty")

        embedding = await self.embedding_service.embed_text(text)
        duplicate = await self._find_duplicate(deliberation_id, text, embedding)
        if duplicate is not None:
            logger.info("Linking existing context %r to question %s", duplicate, question_id)
            await self.repo.link_context_to_question(deliberation_id, duplicate, question_id)
            return duplicate, False

        logger.info("Creating new context %r for question %s", text, question_id)
        await self.repo.create_context(
            deliberation_id,
            text,
            embedding,
            question_id=question_id,
            chat_id=chat_id,
        )
        return text, True

    async def merge_contexts(self, deliberation_id: int, survivor_id: str, duplicate_id: str) -> Dict[str, int]:
        """Repoint every reference to `duplicate_id` onto `survivor_id` and drop the duplicate."""
        if survivor_id == duplicate_id:
            raise InvariantViolation("Cannot merge a context into itself", {"context_id": survivor_id})
        if await self.repo.get_context(deliberation_id, survivor_id) is None:
            raise NotFoundError("context", survivor_id)
        if await self.repo.get_context(deliberation_id, duplicate_id) is None:
            raise NotFoundError("context", duplicate_id)

        moved = await self.repo.merge_contexts(deliberation_id, survivor_id, duplicate_id)
        logger.info("Merged context %r into %r: %s", duplicate_id, survivor_id, moved)
        return moved
