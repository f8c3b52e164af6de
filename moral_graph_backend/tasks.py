"""
Task entrypoints for the at-least-once task runner.

Each task opens its own session and builds its collaborators explicitly.
Every write the tasks perform is an upsert or a guarded update, so a task
that failed part-way can simply be run again. Deduplication runs for one
deliberation must be serialized by the runner.
"""

import logging
from typing import Any, Dict, Optional

from moral_graph_backend.config import DEDUPLICATION_BATCH_LIMIT, configure_logging
from moral_graph_backend.db_session import get_async_session_context
from moral_graph_backend.services.deduplication import Deduplicator
from moral_graph_backend.services.embedding_service import EmbeddingService
from moral_graph_backend.services.graph_summary import GraphSummarizer
from moral_graph_backend.services.hypothesis_generation import HypothesisGenerator
from moral_graph_backend.services.llm_arbiter import LLMArbiter
from moral_graph_backend.services.value_curation import ValueCurator
from moral_graph_backend.services.value_repository import ValueRepository

logger = logging.getLogger(__name__)


async def run_deduplication(
    deliberation_id: int,
    batch_limit: int = DEDUPLICATION_BATCH_LIMIT,
    llm_config: Optional[Dict[str, Any]] = None,
) -> Dict[str, int]:
    configure_logging()
    async with get_async_session_context() as db:
        repo = ValueRepository(db)
        deduplicator = Deduplicator(
            EmbeddingService.from_env(),
            LLMArbiter.from_config(llm_config),
            repo,
        )
        result = await deduplicator.deduplicate(deliberation_id, batch_limit)
    return result.to_dict()


async def run_hypothesis_generation(
    deliberation_id: int,
    llm_config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    configure_logging()
    async with get_async_session_context() as db:
        repo = ValueRepository(db)
        curator = ValueCurator(EmbeddingService.from_env(), repo)
        # Shortlisting ranks by embedding distance, so backfill first.
        await curator.embed_missing(deliberation_id)

        generator = HypothesisGenerator(
            curator.embedding_service,
            LLMArbiter.from_config(llm_config),
            repo,
            GraphSummarizer(repo),
        )
        result = await generator.generate_for_deliberation(deliberation_id)
    return result.to_dict()


async def run_embedding_backfill(deliberation_id: int) -> Dict[str, int]:
    configure_logging()
    async with get_async_session_context() as db:
        curator = ValueCurator(EmbeddingService.from_env(), ValueRepository(db))
        return await curator.embed_missing(deliberation_id)
