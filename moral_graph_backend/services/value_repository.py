"""
Value repository.

Typed persistence calls over canonical values, raw value submissions,
contexts, votes (edges) and edge hypotheses. Every query is scoped by
deliberation id. Writes are upserts or guarded updates so that tasks can be
re-run after a partial failure.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import and_, delete, distinct, select, tuple_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from moral_graph_backend.models import (
    CanonicalValue,
    Context,
    ContextForQuestion,
    Edge,
    EdgeHypothesis,
    ValueSubmission,
    VoteType,
)
from moral_graph_backend.services.embedding_service import cosine_distances_to

logger = logging.getLogger(__name__)


class ValueRepository:
    """Async repository over the moral graph tables."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Value submissions
    # ------------------------------------------------------------------

    async def fetch_unlinked_submissions(self, deliberation_id: int, limit: int) -> List[ValueSubmission]:
        result = await self.db.execute(
            select(ValueSubmission)
            .where(
                ValueSubmission.deliberation_id == deliberation_id,
                ValueSubmission.canonical_value_id.is_(None),
            )
            .order_by(ValueSubmission.created_at.asc(), ValueSubmission.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def link_submissions(
        self,
        deliberation_id: int,
        submission_ids: Sequence[int],
        canonical_value_id: int,
    ) -> int:
        """Link still-unlinked submissions to a canonical value in one transaction."""
        if not submission_ids:
            return 0
        try:
            linked = await self._link(deliberation_id, submission_ids, canonical_value_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return linked

    async def create_canonical_value_and_link(
        self,
        deliberation_id: int,
        title: str,
        description: str,
        policies: Sequence[str],
        embedding: Sequence[float],
        submission_ids: Sequence[int],
    ) -> Optional[CanonicalValue]:
        """
        Create a canonical value and link the cluster to it atomically.

        Returns None (and creates nothing) when every submission was already
        linked by another run.
        """
        try:
            value = CanonicalValue(
                deliberation_id=deliberation_id,
                title=title,
                description=description,
                policies=list(policies),
                embedding=list(embedding),
            )
            self.db.add(value)
            await self.db.flush()

            linked = await self._link(deliberation_id, submission_ids, value.id)
            if linked == 0:
                await self.db.rollback()
                return None

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return value

    async def _link(self, deliberation_id: int, submission_ids: Sequence[int], canonical_value_id: int) -> int:
        # Only rows whose link is still null: a submission is never moved between canonical values.
        result = await self.db.execute(
            update(ValueSubmission)
            .where(
                ValueSubmission.deliberation_id == deliberation_id,
                ValueSubmission.id.in_(list(submission_ids)),
                ValueSubmission.canonical_value_id.is_(None),
            )
            .values(canonical_value_id=canonical_value_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def submissions_without_embedding(self, deliberation_id: int) -> List[ValueSubmission]:
        result = await self.db.execute(
            select(ValueSubmission).where(
                ValueSubmission.deliberation_id == deliberation_id,
                ValueSubmission.embedding.is_(None),
            )
        )
        return list(result.scalars().all())

    async def set_submission_embeddings(self, embeddings: Dict[int, Sequence[float]]) -> None:
        for submission_id, embedding in embeddings.items():
            await self.db.execute(
                update(ValueSubmission)
                .where(ValueSubmission.id == submission_id)
                .values(embedding=list(embedding))
            )
        await self.db.commit()

    # ------------------------------------------------------------------
    # Canonical values
    # ------------------------------------------------------------------

    async def get_canonical_value(self, deliberation_id: int, value_id: int) -> Optional[CanonicalValue]:
        result = await self.db.execute(
            select(CanonicalValue).where(
                CanonicalValue.deliberation_id == deliberation_id,
                CanonicalValue.id == value_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_canonical_values(self, deliberation_id: int, include_excluded: bool = False) -> List[CanonicalValue]:
        stmt = select(CanonicalValue).where(CanonicalValue.deliberation_id == deliberation_id)
        if not include_excluded:
            stmt = stmt.where(CanonicalValue.is_excluded.is_not(True))
        result = await self.db.execute(stmt.order_by(CanonicalValue.id.asc()))
        return list(result.scalars().all())

    async def canonical_values_without_embedding(self, deliberation_id: int) -> List[CanonicalValue]:
        result = await self.db.execute(
            select(CanonicalValue).where(
                CanonicalValue.deliberation_id == deliberation_id,
                CanonicalValue.embedding.is_(None),
            )
        )
        return list(result.scalars().all())

    async def update_canonical_value(
        self,
        value: CanonicalValue,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        policies: Optional[Sequence[str]] = None,
        embedding: Optional[Sequence[float]] = None,
    ) -> CanonicalValue:
        if title is not None:
            value.title = title
        if description is not None:
            value.description = description
        if policies is not None:
            value.policies = list(policies)
        if embedding is not None:
            value.embedding = list(embedding)
        await self.db.commit()
        return value

    async def set_canonical_embedding(self, value_id: int, embedding: Sequence[float]) -> None:
        await self.db.execute(
            update(CanonicalValue)
            .where(CanonicalValue.id == value_id)
            .values(embedding=list(embedding))
        )
        await self.db.commit()

    async def find_canonical_values_near(
        self,
        deliberation_id: int,
        vector: Sequence[float],
        limit: int,
        max_distance: float,
    ) -> List[Tuple[CanonicalValue, float]]:
        """Canonical values within `max_distance` cosine distance, closest first."""
        result = await self.db.execute(
            select(CanonicalValue).where(
                CanonicalValue.deliberation_id == deliberation_id,
                CanonicalValue.embedding.is_not(None),
            )
        )
        return _nearest(list(result.scalars().all()), vector, limit, max_distance)

    # ------------------------------------------------------------------
    # Contexts
    # ------------------------------------------------------------------

    async def get_context(self, deliberation_id: int, context_id: str) -> Optional[Context]:
        result = await self.db.execute(
            select(Context).where(
                Context.deliberation_id == deliberation_id,
                Context.id == context_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_question_contexts(self, deliberation_id: int) -> List[Context]:
        """Contexts that apply to at least one question of the deliberation."""
        linked = select(distinct(ContextForQuestion.context_id)).where(
            ContextForQuestion.deliberation_id == deliberation_id
        )
        result = await self.db.execute(
            select(Context)
            .where(Context.deliberation_id == deliberation_id, Context.id.in_(linked))
            .order_by(Context.created_at.asc(), Context.id.asc())
        )
        return list(result.scalars().all())

    async def context_value_ids(self, deliberation_id: int, context_id: str) -> Set[int]:
        """Canonical value ids articulated for a question this context applies to."""
        result = await self.db.execute(
            select(distinct(ValueSubmission.canonical_value_id))
            .join(
                ContextForQuestion,
                and_(
                    ContextForQuestion.question_id == ValueSubmission.question_id,
                    ContextForQuestion.deliberation_id == ValueSubmission.deliberation_id,
                ),
            )
            .where(
                ContextForQuestion.deliberation_id == deliberation_id,
                ContextForQuestion.context_id == context_id,
                ValueSubmission.canonical_value_id.is_not(None),
            )
        )
        return {row[0] for row in result.all()}

    async def find_contexts_near(
        self,
        deliberation_id: int,
        vector: Sequence[float],
        limit: int,
        max_distance: float = 2.0,
    ) -> List[Tuple[Context, float]]:
        result = await self.db.execute(
            select(Context).where(
                Context.deliberation_id == deliberation_id,
                Context.embedding.is_not(None),
            )
        )
        return _nearest(list(result.scalars().all()), vector, limit, max_distance)

    async def create_context(
        self,
        deliberation_id: int,
        context_id: str,
        embedding: Optional[Sequence[float]],
        question_id: Optional[int] = None,
        chat_id: Optional[str] = None,
    ) -> Context:
        await self.db.execute(
            pg_insert(Context)
            .values(
                id=context_id,
                deliberation_id=deliberation_id,
                created_in_chat_id=chat_id,
                embedding=list(embedding) if embedding is not None else None,
            )
            .on_conflict_do_nothing(index_elements=["id", "deliberation_id"])
        )
        if question_id is not None:
            await self._link_context_to_question(deliberation_id, context_id, question_id)
        await self.db.commit()
        return await self.get_context(deliberation_id, context_id)

    async def link_context_to_question(self, deliberation_id: int, context_id: str, question_id: int) -> None:
        await self._link_context_to_question(deliberation_id, context_id, question_id)
        await self.db.commit()

    async def _link_context_to_question(self, deliberation_id: int, context_id: str, question_id: int) -> None:
        await self.db.execute(
            pg_insert(ContextForQuestion)
            .values(context_id=context_id, question_id=question_id, deliberation_id=deliberation_id)
            .on_conflict_do_nothing()
        )

    async def contexts_without_embedding(self, deliberation_id: int) -> List[Context]:
        result = await self.db.execute(
            select(Context).where(
                Context.deliberation_id == deliberation_id,
                Context.embedding.is_(None),
            )
        )
        return list(result.scalars().all())

    async def set_context_embedding(self, deliberation_id: int, context_id: str, embedding: Sequence[float]) -> None:
        await self.db.execute(
            update(Context)
            .where(Context.deliberation_id == deliberation_id, Context.id == context_id)
            .values(embedding=list(embedding))
        )
        await self.db.commit()

    async def merge_contexts(self, deliberation_id: int, survivor_id: str, duplicate_id: str) -> Dict[str, int]:
        """Repoint every reference from `duplicate_id` to `survivor_id`, then drop the duplicate row."""
        try:
            # Hypotheses already present under the survivor win over the duplicate's copy.
            survivor = aliased(EdgeHypothesis, name="survivor")
            survivor_pairs = select(survivor.from_value_id, survivor.to_value_id).where(
                survivor.deliberation_id == deliberation_id,
                survivor.context_id == survivor_id,
            )
            collisions = await self.db.execute(
                delete(EdgeHypothesis)
                .where(
                    EdgeHypothesis.deliberation_id == deliberation_id,
                    EdgeHypothesis.context_id == duplicate_id,
                    tuple_(EdgeHypothesis.from_value_id, EdgeHypothesis.to_value_id).in_(survivor_pairs),
                )
                .execution_options(synchronize_session=False)
            )
            hypotheses = await self.db.execute(
                update(EdgeHypothesis)
                .where(EdgeHypothesis.deliberation_id == deliberation_id, EdgeHypothesis.context_id == duplicate_id)
                .values(context_id=survivor_id)
                .execution_options(synchronize_session=False)
            )
            edges = await self.db.execute(
                update(Edge)
                .where(Edge.deliberation_id == deliberation_id, Edge.context_id == duplicate_id)
                .values(context_id=survivor_id)
                .execution_options(synchronize_session=False)
            )

            question_ids = await self.db.execute(
                select(ContextForQuestion.question_id).where(
                    ContextForQuestion.deliberation_id == deliberation_id,
                    ContextForQuestion.context_id == duplicate_id,
                )
            )
            moved_questions = [row[0] for row in question_ids.all()]
            for question_id in moved_questions:
                await self._link_context_to_question(deliberation_id, survivor_id, question_id)

            await self.db.execute(
                delete(Context).where(Context.deliberation_id == deliberation_id, Context.id == duplicate_id)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        return {
            "edges": edges.rowcount or 0,
            "hypotheses": hypotheses.rowcount or 0,
            "hypotheses_collapsed": collisions.rowcount or 0,
            "questions": len(moved_questions),
        }

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    async def upsert_vote(
        self,
        deliberation_id: int,
        user_id: int,
        from_value_id: int,
        to_value_id: int,
        context_id: str,
        vote_type: VoteType,
        comment: Optional[str] = None,
        story: Optional[str] = None,
    ) -> None:
        """Latest vote wins for (user, from, to)."""
        stmt = pg_insert(Edge).values(
            deliberation_id=deliberation_id,
            user_id=user_id,
            from_value_id=from_value_id,
            to_value_id=to_value_id,
            context_id=context_id,
            type=vote_type.value,
            comment=comment,
            story=story,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_edges_user_pair",
            set_={
                "context_id": stmt.excluded.context_id,
                "type": stmt.excluded.type,
                "comment": stmt.excluded.comment,
                "story": stmt.excluded.story,
                "updated_at": datetime.now(timezone.utc),
            },
        )
        await self.db.execute(stmt)
        await self.db.commit()

    async def list_votes(self, deliberation_id: int, context_id: Optional[str] = None) -> List[Edge]:
        stmt = select(Edge).where(Edge.deliberation_id == deliberation_id)
        if context_id is not None:
            stmt = stmt.where(Edge.context_id == context_id)
        result = await self.db.execute(stmt.order_by(Edge.id.asc()))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Edge hypotheses
    # ------------------------------------------------------------------

    async def upsert_hypotheses(
        self,
        deliberation_id: int,
        context_id: str,
        hypothesis_run_id: str,
        hypotheses: Iterable[Tuple[int, int, str]],
    ) -> int:
        """Insert or refresh (from, to, story) hypotheses; a refreshed row is un-archived."""
        count = 0
        try:
            for from_value_id, to_value_id, story in hypotheses:
                stmt = pg_insert(EdgeHypothesis).values(
                    deliberation_id=deliberation_id,
                    from_value_id=from_value_id,
                    to_value_id=to_value_id,
                    context_id=context_id,
                    story=story,
                    hypothesis_run_id=hypothesis_run_id,
                )
                stmt = stmt.on_conflict_do_update(
                    constraint="uq_edge_hypotheses_pair_context",
                    set_={
                        "story": stmt.excluded.story,
                        "hypothesis_run_id": stmt.excluded.hypothesis_run_id,
                        "archived_at": None,
                        "updated_at": datetime.now(timezone.utc),
                    },
                )
                await self.db.execute(stmt)
                count += 1
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return count

    async def archive_stale_hypotheses(self, deliberation_id: int, context_id: str, hypothesis_run_id: str) -> int:
        """Stamp archived_at on active hypotheses of the context not confirmed by this run."""
        result = await self.db.execute(
            update(EdgeHypothesis)
            .where(
                EdgeHypothesis.deliberation_id == deliberation_id,
                EdgeHypothesis.context_id == context_id,
                EdgeHypothesis.hypothesis_run_id != hypothesis_run_id,
                EdgeHypothesis.archived_at.is_(None),
            )
            .values(archived_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount or 0

    async def list_active_hypotheses(self, deliberation_id: int) -> List[EdgeHypothesis]:
        result = await self.db.execute(
            select(EdgeHypothesis)
            .where(
                EdgeHypothesis.deliberation_id == deliberation_id,
                EdgeHypothesis.archived_at.is_(None),
            )
            .order_by(EdgeHypothesis.id.asc())
        )
        return list(result.scalars().all())


def _nearest(rows, vector: Sequence[float], limit: int, max_distance: float):
    if not rows:
        return []
    distances = cosine_distances_to(vector, [row.embedding for row in rows])
    ranked = sorted(zip(rows, distances.tolist()), key=lambda pair: pair[1])
    return [(row, distance) for row, distance in ranked if distance < max_distance][:limit]
