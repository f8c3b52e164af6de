"""
Edge hypothesis generation.

For one context, shortlists the canonical values closest to the context
embedding, asks the LLM for plausible upgrades among them, then judges every
proposed upgrade in the reverse direction with its own LLM call. Results are
upserted by (from, to, context); hypotheses of the context that this run did
not re-confirm are archived.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from moral_graph_backend.config import HYPOTHESIS_SHORTLIST_SIZE
from moral_graph_backend.schemas import ReverseUpgradeJudgment, UpgradeProposals
from moral_graph_backend.services.embedding_service import cosine_distance
from moral_graph_backend.services.errors import (
    InvariantViolation,
    MoralGraphError,
    NotFoundError,
    TransientProviderError,
)
from moral_graph_backend.services.graph_summary import GraphSummarizer, SummaryOptions

logger = logging.getLogger(__name__)


@dataclass
class GeneratedHypothesis:
    from_value_id: int
    to_value_id: int
    story: str
    reverse: bool = False


@dataclass
class ContextOutcome:
    hypotheses: List[GeneratedHypothesis] = field(default_factory=list)
    archived: int = 0
    dropped: int = 0
    skipped: bool = False


@dataclass
class HypothesisRunResult:
    hypothesis_run_id: str
    contexts_processed: int = 0
    contexts_skipped: int = 0
    hypotheses_upserted: int = 0
    hypotheses_archived: int = 0
    dropped_items: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _value_payload(value) -> Dict[str, Any]:
    return {
        "id": value.id,
        "title": value.title,
        "description": value.description,
        "policies": list(value.policies or []),
    }


class HypothesisGenerator:
    """Proposes upgrade hypotheses between canonical values, per context."""

    def __init__(
        self,
        embedding_service,
        arbiter,
        repo,
        summarizer: Optional[GraphSummarizer] = None,
        shortlist_size: int = HYPOTHESIS_SHORTLIST_SIZE,
    ):
        self.embedding_service = embedding_service
        self.arbiter = arbiter
        self.repo = repo
        self.summarizer = summarizer or GraphSummarizer(repo)
        self.shortlist_size = shortlist_size

    async def generate_for_context(
        self,
        deliberation_id: int,
        context_id: str,
        candidate_values: Sequence,
        hypothesis_run_id: Optional[str] = None,
        page_ranks: Optional[Dict[int, float]] = None,
    ) -> List[GeneratedHypothesis]:
        outcome = await self._generate(
            deliberation_id,
            context_id,
            candidate_values,
            hypothesis_run_id or uuid.uuid4().hex,
            page_ranks or {},
        )
        return outcome.hypotheses

    async def generate_for_deliberation(
        self,
        deliberation_id: int,
        hypothesis_run_id: Optional[str] = None,
    ) -> HypothesisRunResult:
        """Run generation for every context linked to a question, isolating failures per context."""
        result = HypothesisRunResult(hypothesis_run_id=hypothesis_run_id or uuid.uuid4().hex)

        values = await self.repo.list_canonical_values(deliberation_id)
        votes = await self.repo.list_votes(deliberation_id)
        ranking = self.summarizer.summarize(values, votes, SummaryOptions(include_ranking=True))
        page_ranks = {value.id: value.page_rank or 0.0 for value in ranking.values}

        contexts = await self.repo.list_question_contexts(deliberation_id)
        logger.info(
            "Generating hypotheses for %s contexts and %s values in deliberation %s (run %s)",
            len(contexts),
            len(values),
            deliberation_id,
            result.hypothesis_run_id,
        )

        for context in contexts:
            try:
                outcome = await self._generate(
                    deliberation_id,
                    context.id,
                    values,
                    result.hypothesis_run_id,
                    page_ranks,
                )
            except MoralGraphError as exc:
                result.contexts_skipped += 1
                logger.warning(
                    "Skipping context %r in deliberation %s (%s): %s",
                    context.id,
                    deliberation_id,
                    exc.code,
                    exc.message,
                )
                continue
            except Exception:
                result.contexts_skipped += 1
                logger.exception(
                    "Hypothesis generation for context %r in deliberation %s failed",
                    context.id,
                    deliberation_id,
                )
                continue

            result.dropped_items += outcome.dropped
            if outcome.skipped:
                result.contexts_skipped += 1
                continue
            result.contexts_processed += 1
            result.hypotheses_upserted += len(outcome.hypotheses)
            result.hypotheses_archived += outcome.archived

        return result

    async def _generate(
        self,
        deliberation_id: int,
        context_id: str,
        candidate_values: Sequence,
        hypothesis_run_id: str,
        page_ranks: Dict[int, float],
    ) -> ContextOutcome:
        context = await self.repo.get_context(deliberation_id, context_id)
        if context is None:
            raise NotFoundError("context", context_id)

        shortlist = await self.shortlist(deliberation_id, context, candidate_values, page_ranks)
        if len(shortlist) < 2:
            logger.info("Context %r has fewer than two candidate values; skipping", context_id)
            return ContextOutcome(skipped=True)

        outcome = ContextOutcome()
        forward = await self._propose(context_id, shortlist, outcome)
        if not forward:
            logger.warning("LLM proposed no usable upgrades for context %r; keeping previous hypotheses", context_id)
            outcome.skipped = True
            return outcome

        reverse, complete = await self._reverse(context_id, forward, {value.id: value for value in shortlist}, outcome)
        hypotheses = forward + reverse
        for hypothesis in hypotheses:
            if hypothesis.from_value_id == hypothesis.to_value_id:
                raise InvariantViolation(
                    "Hypothesis would connect a value to itself",
                    {"value_id": hypothesis.from_value_id, "context_id": context_id},
                )

        await self.repo.upsert_hypotheses(
            deliberation_id,
            context_id,
            hypothesis_run_id,
            [(h.from_value_id, h.to_value_id, h.story) for h in hypotheses],
        )
        if complete:
            outcome.archived = await self.repo.archive_stale_hypotheses(deliberation_id, context_id, hypothesis_run_id)
        else:
            logger.warning("Not archiving hypotheses of context %r: reverse judgments incomplete", context_id)

        outcome.hypotheses = hypotheses
        logger.info(
            "Context %r: %s forward and %s reverse hypotheses, %s archived",
            context_id,
            len(forward),
            len(reverse),
            outcome.archived,
        )
        return outcome

    async def shortlist(
        self,
        deliberation_id: int,
        context,
        candidate_values: Sequence,
        page_ranks: Optional[Dict[int, float]] = None,
    ) -> List:
        """Candidates articulated for the context, closest to its embedding first."""
        page_ranks = page_ranks or {}
        allowed = await self.repo.context_value_ids(deliberation_id, context.id)
        candidates = [value for value in candidate_values if value.id in allowed]
        if not candidates:
            return []

        context_embedding = context.embedding
        if context_embedding is None:
            context_embedding = await self.embedding_service.embed_text(context.id)
            await self.repo.set_context_embedding(deliberation_id, context.id, context_embedding)
            context.embedding = context_embedding

        ranked: List[Tuple[float, float, int, Any]] = []
        for value in candidates:
            if value.embedding is None:
                value.embedding = await self.embedding_service.embed_value(value.policies or [])
                await self.repo.set_canonical_embedding(value.id, value.embedding)
            distance = cosine_distance(context_embedding, value.embedding)
            ranked.append((distance, -page_ranks.get(value.id, 0.0), value.id, value))

        ranked.sort(key=lambda item: item[:3])
        return [item[3] for item in ranked[: self.shortlist_size]]

    async def _propose(self, context_id: str, shortlist: Sequence, outcome: ContextOutcome) -> List[GeneratedHypothesis]:
        allowed = {value.id for value in shortlist}
        proposals = await self.arbiter.generate_structured(
            "generate_upgrades",
            {"values": [_value_payload(value) for value in shortlist]},
            UpgradeProposals,
            variables={"context": context_id},
        )

        forward: List[GeneratedHypothesis] = []
        seen: Set[Tuple[int, int]] = set()
        for upgrade in proposals.upgrades:
            pair = (upgrade.from_id, upgrade.to_id)
            if upgrade.from_id not in allowed or upgrade.to_id not in allowed:
                outcome.dropped += 1
                logger.warning("Dropping upgrade %s in context %r: id outside the shortlist", pair, context_id)
                continue
            if upgrade.from_id == upgrade.to_id:
                outcome.dropped += 1
                logger.warning("Dropping self-upgrade of value %s in context %r", upgrade.from_id, context_id)
                continue
            if pair in seen:
                continue
            seen.add(pair)
            forward.append(GeneratedHypothesis(upgrade.from_id, upgrade.to_id, upgrade.story))
        return forward

    async def _reverse(
        self,
        context_id: str,
        forward: Sequence[GeneratedHypothesis],
        values_by_id: Dict[int, Any],
        outcome: ContextOutcome,
    ) -> Tuple[List[GeneratedHypothesis], bool]:
        """Independent reverse judgment per forward pair; False when any call failed for a reason other than bad output."""
        proposed = {(h.from_value_id, h.to_value_id) for h in forward}
        pending = [h for h in forward if (h.to_value_id, h.from_value_id) not in proposed]

        judgments = await asyncio.gather(
            *[
                self.arbiter.generate_structured(
                    "generate_reverse_upgrade",
                    {
                        "from_value": _value_payload(values_by_id[h.to_value_id]),
                        "candidate_wiser_value": _value_payload(values_by_id[h.from_value_id]),
                    },
                    ReverseUpgradeJudgment,
                    variables={"context": context_id},
                )
                for h in pending
            ],
            return_exceptions=True,
        )

        reverse: List[GeneratedHypothesis] = []
        complete = True
        for hypothesis, judgment in zip(pending, judgments):
            pair = (hypothesis.to_value_id, hypothesis.from_value_id)
            if isinstance(judgment, TransientProviderError):
                complete = False
                logger.warning("Reverse judgment %s in context %r failed: %s", pair, context_id, judgment.message)
                continue
            if isinstance(judgment, MoralGraphError):
                outcome.dropped += 1
                logger.warning("Dropping reverse judgment %s in context %r: %s", pair, context_id, judgment.message)
                continue
            if isinstance(judgment, Exception):
                complete = False
                logger.error(
                    "Reverse judgment %s in context %r raised unexpectedly",
                    pair,
                    context_id,
                    exc_info=judgment,
                )
                continue
            if isinstance(judgment, BaseException):
                raise judgment
            if judgment.plausible and judgment.story.strip():
                reverse.append(GeneratedHypothesis(pair[0], pair[1], judgment.story.strip(), reverse=True))
        return reverse, complete
