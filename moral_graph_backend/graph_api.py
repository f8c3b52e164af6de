"""Moral graph API endpoints."""

import logging
import random
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from moral_graph_backend.config import DEDUPLICATION_BATCH_LIMIT, DEFAULT_DRAW_SIZE, DEFAULT_SAMPLER_WEIGHTS
from moral_graph_backend.db_session import get_async_session
from moral_graph_backend.models import VoteType
from moral_graph_backend.services.context_deduplication import ContextDeduplicator
from moral_graph_backend.services.deduplication import Deduplicator
from moral_graph_backend.services.embedding_service import EmbeddingService
from moral_graph_backend.services.errors import MoralGraphError
from moral_graph_backend.services.graph_summary import GraphSummarizer, SummaryOptions, restrict_to_component
from moral_graph_backend.services.hypothesis_generation import HypothesisGenerator
from moral_graph_backend.services.hypothesis_sampler import HypothesisSampler, SamplerWeights
from moral_graph_backend.services.llm_arbiter import LLMArbiter
from moral_graph_backend.services.value_repository import ValueRepository
from moral_graph_backend.services.vote_service import record_vote

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/deliberations", tags=["moral-graph"])


class DeduplicateRequest(BaseModel):
    batch_limit: int = Field(default=DEDUPLICATION_BATCH_LIMIT, ge=1, le=500)


class VoteRequest(BaseModel):
    user_id: int
    from_value_id: int
    to_value_id: int
    context_id: str
    type: VoteType
    comment: Optional[str] = None
    story: Optional[str] = None


class ContextRequest(BaseModel):
    question_id: int
    text: str
    chat_id: Optional[str] = None


def get_repository(db: AsyncSession = Depends(get_async_session)) -> ValueRepository:
    return ValueRepository(db)


def get_embedding_service() -> EmbeddingService:
    return EmbeddingService.from_env()


def get_llm_arbiter() -> LLMArbiter:
    return LLMArbiter.from_config()


def get_rng() -> random.Random:
    return random.Random()


def _http_error(exc: MoralGraphError) -> HTTPException:
    logger.warning("Request failed (%s): %s", exc.code, exc.message)
    return HTTPException(status_code=exc.http_status, detail=exc.to_response()["error"])


@router.get("/{deliberation_id}/graph")
async def get_graph(
    deliberation_id: int,
    include_ranking: bool = Query(False),
    marked_wiser_threshold: Optional[int] = Query(None, ge=0),
    include_all_edges: bool = Query(False),
    context_id: Optional[str] = Query(None),
    value_id: Optional[int] = Query(None, description="Return only the subgraph connected to this value"),
    repo: ValueRepository = Depends(get_repository),
) -> Dict[str, Any]:
    options = SummaryOptions(
        include_ranking=include_ranking,
        marked_wiser_threshold=marked_wiser_threshold,
        include_all_edges=include_all_edges,
    )
    try:
        summary = await GraphSummarizer(repo).summarize_deliberation(deliberation_id, options, context_id=context_id)
        if value_id is not None:
            summary = restrict_to_component(summary, value_id)
    except MoralGraphError as exc:
        raise _http_error(exc) from exc
    return summary.to_dict()


@router.post("/{deliberation_id}/deduplicate")
async def deduplicate_values(
    deliberation_id: int,
    request: Optional[DeduplicateRequest] = None,
    repo: ValueRepository = Depends(get_repository),
    embedding_service: EmbeddingService = Depends(get_embedding_service),
    arbiter: LLMArbiter = Depends(get_llm_arbiter),
) -> Dict[str, int]:
    deduplicator = Deduplicator(embedding_service, arbiter, repo)
    try:
        batch_limit = request.batch_limit if request else DEDUPLICATION_BATCH_LIMIT
        result = await deduplicator.deduplicate(deliberation_id, batch_limit)
    except MoralGraphError as exc:
        raise _http_error(exc) from exc
    return result.to_dict()


@router.post("/{deliberation_id}/hypotheses/generate")
async def generate_hypotheses(
    deliberation_id: int,
    context_id: Optional[str] = Query(None, description="Limit generation to one context"),
    repo: ValueRepository = Depends(get_repository),
    embedding_service: EmbeddingService = Depends(get_embedding_service),
    arbiter: LLMArbiter = Depends(get_llm_arbiter),
) -> Dict[str, Any]:
    generator = HypothesisGenerator(embedding_service, arbiter, repo, GraphSummarizer(repo))
    try:
        if context_id is None:
            result = await generator.generate_for_deliberation(deliberation_id)
            return result.to_dict()

        values = await repo.list_canonical_values(deliberation_id)
        hypotheses = await generator.generate_for_context(deliberation_id, context_id, values)
    except MoralGraphError as exc:
        raise _http_error(exc) from exc
    return {
        "context_id": context_id,
        "hypotheses": [
            {
                "from_value_id": h.from_value_id,
                "to_value_id": h.to_value_id,
                "story": h.story,
                "reverse": h.reverse,
            }
            for h in hypotheses
        ],
    }


@router.get("/{deliberation_id}/hypotheses/draw")
async def draw_hypotheses(
    deliberation_id: int,
    size: int = Query(DEFAULT_DRAW_SIZE, ge=1, le=100),
    user_id: Optional[int] = Query(None),
    popularity: float = Query(DEFAULT_SAMPLER_WEIGHTS["popularity"], ge=0, le=1),
    convergence: float = Query(DEFAULT_SAMPLER_WEIGHTS["convergence"], ge=0, le=1),
    sparsity: float = Query(DEFAULT_SAMPLER_WEIGHTS["sparsity"], ge=0, le=1),
    repo: ValueRepository = Depends(get_repository),
    rng: random.Random = Depends(get_rng),
) -> List[Dict[str, Any]]:
    try:
        weights = SamplerWeights(popularity=popularity, convergence=convergence, sparsity=sparsity)
        drawn = await HypothesisSampler(repo, rng).draw(deliberation_id, size, weights, user_id=user_id)
    except MoralGraphError as exc:
        raise _http_error(exc) from exc

    return [
        {
            "from": item.from_value,
            "to": item.to_value,
            "context_id": item.context_id,
            "story": item.story,
            "hypothesis_run_id": item.hypothesis_run_id,
            "deliberation_id": item.deliberation_id,
            "reason": {
                "total_votes": item.reason.total_votes,
                "total_agrees": item.reason.total_agrees,
                "selected_due_to": item.reason.selected_due_to.value,
            },
        }
        for item in drawn
    ]


@router.post("/{deliberation_id}/votes")
async def submit_vote(
    deliberation_id: int,
    request: VoteRequest,
    repo: ValueRepository = Depends(get_repository),
) -> Dict[str, Any]:
    try:
        vote_type = await record_vote(
            repo,
            deliberation_id,
            request.user_id,
            request.from_value_id,
            request.to_value_id,
            request.context_id,
            request.type,
            comment=request.comment,
            story=request.story,
        )
    except MoralGraphError as exc:
        raise _http_error(exc) from exc
    return {
        "success": True,
        "from_value_id": request.from_value_id,
        "to_value_id": request.to_value_id,
        "type": vote_type.value,
    }


@router.post("/{deliberation_id}/contexts")
async def add_context(
    deliberation_id: int,
    request: ContextRequest,
    repo: ValueRepository = Depends(get_repository),
    embedding_service: EmbeddingService = Depends(get_embedding_service),
    arbiter: LLMArbiter = Depends(get_llm_arbiter),
) -> Dict[str, Any]:
    deduplicator = ContextDeduplicator(embedding_service, arbiter, repo)
    try:
        context_id, created = await deduplicator.add_context(
            deliberation_id,
            request.question_id,
            request.text,
            chat_id=request.chat_id,
        )
    except MoralGraphError as exc:
        raise _http_error(exc) from exc
    return {"context_id": context_id, "created": created}
