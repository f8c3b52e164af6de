"""
Pytest configuration and shared fixtures for moral graph backend tests.

This module provides:
- An in-memory ValueRepository stand-in holding ORM instances
- A deterministic embedding service and a scripted LLM arbiter that count calls
- Factories for values, submissions, contexts and votes
"""

import random
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

from moral_graph_backend.models import (
    CanonicalValue,
    Context,
    Edge,
    EdgeHypothesis,
    ValueSubmission,
    VoteType,
)
from moral_graph_backend.services.embedding_service import value_to_text
from moral_graph_backend.services.value_repository import _nearest


# ============================================================================
# Factories
# ============================================================================

def make_value(value_id: int, policies: Optional[List[str]] = None, embedding=None, deliberation_id: int = 1, **kwargs):
    return CanonicalValue(
        id=value_id,
        deliberation_id=deliberation_id,
        title=kwargs.get("title", f"Value {value_id}"),
        description=kwargs.get("description", f"Description of value {value_id}"),
        policies=policies if policies is not None else [f"POLICY {value_id}"],
        embedding=embedding,
        is_excluded=kwargs.get("is_excluded", False),
    )


def make_submission(
    submission_id: int,
    policies: Optional[List[str]] = None,
    embedding=None,
    question_id: Optional[int] = None,
    canonical_value_id: Optional[int] = None,
    deliberation_id: int = 1,
):
    return ValueSubmission(
        id=submission_id,
        deliberation_id=deliberation_id,
        question_id=question_id,
        title=f"Submission {submission_id}",
        description=f"Description of submission {submission_id}",
        policies=policies if policies is not None else [f"SUBMITTED POLICY {submission_id}"],
        embedding=embedding,
        canonical_value_id=canonical_value_id,
    )


def make_context(context_id: str, embedding=None, deliberation_id: int = 1):
    return Context(id=context_id, deliberation_id=deliberation_id, embedding=embedding)


def make_vote(
    user_id: int,
    from_value_id: int,
    to_value_id: int,
    vote_type: VoteType = VoteType.UPGRADE,
    context_id: str = "When in distress",
    deliberation_id: int = 1,
):
    return Edge(
        deliberation_id=deliberation_id,
        user_id=user_id,
        from_value_id=from_value_id,
        to_value_id=to_value_id,
        context_id=context_id,
        type=VoteType(vote_type).value,
    )


def make_hypothesis(
    from_value_id: int,
    to_value_id: int,
    context_id: str = "When in distress",
    run_id: str = "run-0",
    story: str = "A story",
    deliberation_id: int = 1,
    archived_at=None,
):
    return EdgeHypothesis(
        deliberation_id=deliberation_id,
        from_value_id=from_value_id,
        to_value_id=to_value_id,
        context_id=context_id,
        story=story,
        hypothesis_run_id=run_id,
        archived_at=archived_at,
    )


# ============================================================================
# In-memory repository
# ============================================================================

class FakeValueRepository:
    """
    In-memory stand-in for ValueRepository with the same method contracts.
    Stores ORM instances in lists; nothing is persisted.
    """

    def __init__(self):
        self.values: List[CanonicalValue] = []
        self.submissions: List[ValueSubmission] = []
        self.contexts: List[Context] = []
        self.context_questions: List[tuple] = []  # (deliberation_id, context_id, question_id)
        self.votes: List[Edge] = []
        self.hypotheses: List[EdgeHypothesis] = []
        self._next_value_id = 1000
        self._next_row_id = 1

    # -- seeding helpers -----------------------------------------------------

    def add_value(self, value):
        self.values.append(value)
        return value

    def add_submission(self, submission):
        self.submissions.append(submission)
        return submission

    def add_context(self, context, question_ids: Sequence[int] = ()):
        self.contexts.append(context)
        for question_id in question_ids:
            self.context_questions.append((context.deliberation_id, context.id, question_id))
        return context

    def add_vote(self, vote):
        vote.id = self._next_row_id
        self._next_row_id += 1
        self.votes.append(vote)
        return vote

    def add_hypothesis(self, hypothesis):
        hypothesis.id = self._next_row_id
        self._next_row_id += 1
        self.hypotheses.append(hypothesis)
        return hypothesis

    def active_hypotheses(self, context_id: Optional[str] = None):
        return [
            h for h in self.hypotheses
            if h.archived_at is None and (context_id is None or h.context_id == context_id)
        ]

    # -- submissions ---------------------------------------------------------

    async def fetch_unlinked_submissions(self, deliberation_id, limit):
        unlinked = [
            s for s in self.submissions
            if s.deliberation_id == deliberation_id and s.canonical_value_id is None
        ]
        return sorted(unlinked, key=lambda s: s.id)[:limit]

    async def link_submissions(self, deliberation_id, submission_ids, canonical_value_id):
        linked = 0
        for submission in self.submissions:
            if (
                submission.deliberation_id == deliberation_id
                and submission.id in submission_ids
                and submission.canonical_value_id is None
            ):
                submission.canonical_value_id = canonical_value_id
                linked += 1
        return linked

    async def create_canonical_value_and_link(
        self, deliberation_id, title, description, policies, embedding, submission_ids
    ):
        linkable = [
            s for s in self.submissions
            if s.deliberation_id == deliberation_id and s.id in submission_ids and s.canonical_value_id is None
        ]
        if not linkable:
            return None
        value = make_value(
            self._next_value_id,
            policies=list(policies),
            embedding=list(embedding),
            deliberation_id=deliberation_id,
            title=title,
            description=description,
        )
        self._next_value_id += 1
        self.values.append(value)
        for submission in linkable:
            submission.canonical_value_id = value.id
        return value

    async def submissions_without_embedding(self, deliberation_id):
        return [s for s in self.submissions if s.deliberation_id == deliberation_id and s.embedding is None]

    async def set_submission_embeddings(self, embeddings):
        for submission in self.submissions:
            if submission.id in embeddings:
                submission.embedding = list(embeddings[submission.id])

    # -- canonical values ----------------------------------------------------

    async def get_canonical_value(self, deliberation_id, value_id):
        return next(
            (v for v in self.values if v.deliberation_id == deliberation_id and v.id == value_id),
            None,
        )

    async def list_canonical_values(self, deliberation_id, include_excluded=False):
        return sorted(
            (
                v for v in self.values
                if v.deliberation_id == deliberation_id and (include_excluded or not v.is_excluded)
            ),
            key=lambda v: v.id,
        )

    async def canonical_values_without_embedding(self, deliberation_id):
        return [v for v in self.values if v.deliberation_id == deliberation_id and v.embedding is None]

    async def update_canonical_value(self, value, *, title=None, description=None, policies=None, embedding=None):
        if title is not None:
            value.title = title
        if description is not None:
            value.description = description
        if policies is not None:
            value.policies = list(policies)
        if embedding is not None:
            value.embedding = list(embedding)
        return value

    async def set_canonical_embedding(self, value_id, embedding):
        for value in self.values:
            if value.id == value_id:
                value.embedding = list(embedding)

    async def find_canonical_values_near(self, deliberation_id, vector, limit, max_distance):
        rows = [v for v in self.values if v.deliberation_id == deliberation_id and v.embedding is not None]
        return _nearest(rows, vector, limit, max_distance)

    # -- contexts ------------------------------------------------------------

    async def get_context(self, deliberation_id, context_id):
        return next(
            (c for c in self.contexts if c.deliberation_id == deliberation_id and c.id == context_id),
            None,
        )

    async def list_question_contexts(self, deliberation_id):
        linked = {cid for d, cid, _ in self.context_questions if d == deliberation_id}
        return [c for c in self.contexts if c.deliberation_id == deliberation_id and c.id in linked]

    async def context_value_ids(self, deliberation_id, context_id):
        questions = {q for d, cid, q in self.context_questions if d == deliberation_id and cid == context_id}
        return {
            s.canonical_value_id for s in self.submissions
            if s.deliberation_id == deliberation_id
            and s.question_id in questions
            and s.canonical_value_id is not None
        }

    async def find_contexts_near(self, deliberation_id, vector, limit, max_distance=2.0):
        rows = [c for c in self.contexts if c.deliberation_id == deliberation_id and c.embedding is not None]
        return _nearest(rows, vector, limit, max_distance)

    async def create_context(self, deliberation_id, context_id, embedding, question_id=None, chat_id=None):
        context = await self.get_context(deliberation_id, context_id)
        if context is None:
            context = make_context(context_id, embedding=embedding, deliberation_id=deliberation_id)
            context.created_in_chat_id = chat_id
            self.contexts.append(context)
        if question_id is not None:
            await self.link_context_to_question(deliberation_id, context_id, question_id)
        return context

    async def link_context_to_question(self, deliberation_id, context_id, question_id):
        key = (deliberation_id, context_id, question_id)
        if key not in self.context_questions:
            self.context_questions.append(key)

    async def contexts_without_embedding(self, deliberation_id):
        return [c for c in self.contexts if c.deliberation_id == deliberation_id and c.embedding is None]

    async def set_context_embedding(self, deliberation_id, context_id, embedding):
        context = await self.get_context(deliberation_id, context_id)
        context.embedding = list(embedding)

    async def merge_contexts(self, deliberation_id, survivor_id, duplicate_id):
        survivor_pairs = {
            (h.from_value_id, h.to_value_id) for h in self.hypotheses
            if h.deliberation_id == deliberation_id and h.context_id == survivor_id
        }
        collapsed = [
            h for h in self.hypotheses
            if h.deliberation_id == deliberation_id
            and h.context_id == duplicate_id
            and (h.from_value_id, h.to_value_id) in survivor_pairs
        ]
        self.hypotheses = [h for h in self.hypotheses if h not in collapsed]

        moved_hypotheses = 0
        for hypothesis in self.hypotheses:
            if hypothesis.deliberation_id == deliberation_id and hypothesis.context_id == duplicate_id:
                hypothesis.context_id = survivor_id
                moved_hypotheses += 1

        moved_edges = 0
        for vote in self.votes:
            if vote.deliberation_id == deliberation_id and vote.context_id == duplicate_id:
                vote.context_id = survivor_id
                moved_edges += 1

        questions = [q for d, cid, q in self.context_questions if d == deliberation_id and cid == duplicate_id]
        self.context_questions = [
            key for key in self.context_questions if not (key[0] == deliberation_id and key[1] == duplicate_id)
        ]
        for question_id in questions:
            await self.link_context_to_question(deliberation_id, survivor_id, question_id)

        self.contexts = [
            c for c in self.contexts if not (c.deliberation_id == deliberation_id and c.id == duplicate_id)
        ]
        return {
            "edges": moved_edges,
            "hypotheses": moved_hypotheses,
            "hypotheses_collapsed": len(collapsed),
            "questions": len(questions),
        }

    # -- votes ---------------------------------------------------------------

    async def upsert_vote(
        self, deliberation_id, user_id, from_value_id, to_value_id, context_id, vote_type, comment=None, story=None
    ):
        for vote in self.votes:
            if (vote.user_id, vote.from_value_id, vote.to_value_id) == (user_id, from_value_id, to_value_id):
                vote.context_id = context_id
                vote.type = vote_type.value
                vote.comment = comment
                vote.story = story
                return
        vote = make_vote(user_id, from_value_id, to_value_id, vote_type, context_id, deliberation_id)
        vote.comment = comment
        vote.story = story
        self.add_vote(vote)

    async def list_votes(self, deliberation_id, context_id=None):
        return [
            v for v in self.votes
            if v.deliberation_id == deliberation_id and (context_id is None or v.context_id == context_id)
        ]

    # -- hypotheses ----------------------------------------------------------

    async def upsert_hypotheses(self, deliberation_id, context_id, hypothesis_run_id, hypotheses):
        count = 0
        for from_value_id, to_value_id, story in hypotheses:
            existing = next(
                (
                    h for h in self.hypotheses
                    if (h.deliberation_id, h.context_id, h.from_value_id, h.to_value_id)
                    == (deliberation_id, context_id, from_value_id, to_value_id)
                ),
                None,
            )
            if existing is None:
                self.add_hypothesis(
                    make_hypothesis(from_value_id, to_value_id, context_id, hypothesis_run_id, story, deliberation_id)
                )
            else:
                existing.story = story
                existing.hypothesis_run_id = hypothesis_run_id
                existing.archived_at = None
            count += 1
        return count

    async def archive_stale_hypotheses(self, deliberation_id, context_id, hypothesis_run_id):
        archived = 0
        for hypothesis in self.hypotheses:
            if (
                hypothesis.deliberation_id == deliberation_id
                and hypothesis.context_id == context_id
                and hypothesis.hypothesis_run_id != hypothesis_run_id
                and hypothesis.archived_at is None
            ):
                hypothesis.archived_at = datetime.now(timezone.utc)
                archived += 1
        return archived

    async def list_active_hypotheses(self, deliberation_id):
        return [h for h in self.hypotheses if h.deliberation_id == deliberation_id and h.archived_at is None]


# ============================================================================
# Provider stand-ins
# ============================================================================

class FakeEmbeddingService:
    """
    Deterministic embeddings: explicit vectors per text, otherwise a vector
    seeded from the text itself.
    """

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, dimensions: int = 8):
        self.vectors = dict(vectors or {})
        self.dimensions = dimensions
        self.calls: List[str] = []

    def _vector(self, text: str) -> List[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        rng = random.Random(text)
        return [rng.uniform(-1, 1) for _ in range(self.dimensions)]

    async def embed_text(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        self.calls.append(text)
        return self._vector(text)

    async def embed_batch(self, texts, batch_size: int = 50):
        results = []
        for text in texts:
            if not text or not text.strip():
                results.append(None)
                continue
            self.calls.append(text)
            results.append(self._vector(text))
        return results

    async def embed_value(self, policies):
        return await self.embed_text(value_to_text(policies))


class FakeArbiter:
    """
    Scripted LLM arbiter.

    `responses` maps prompt names to either a list of responses consumed in
    order or a callable receiving the request data. A response that is an
    exception instance is raised.
    """

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses = dict(responses or {})
        self.calls: List[Dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def calls_for(self, prompt_name: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["prompt"] == prompt_name]

    async def generate_structured(self, prompt_name, data, schema, variables=None):
        self.calls.append({"prompt": prompt_name, "data": data, "variables": variables})
        if prompt_name not in self.responses:
            raise AssertionError(f"Unexpected LLM call: {prompt_name}")

        scripted = self.responses[prompt_name]
        if callable(scripted):
            response = scripted(data)
        else:
            if not scripted:
                raise AssertionError(f"No scripted responses left for {prompt_name}")
            response = scripted.pop(0)

        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            return schema.model_validate(response)
        return response

    async def generate_text(self, prompt_name, message, variables=None):
        self.calls.append({"prompt": prompt_name, "data": message, "variables": variables})
        return self.responses[prompt_name]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def repo():
    return FakeValueRepository()


@pytest.fixture
def embeddings():
    return FakeEmbeddingService()


@pytest.fixture
def arbiter_factory() -> Callable[..., FakeArbiter]:
    return FakeArbiter


# ============================================================================
# Pytest Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
