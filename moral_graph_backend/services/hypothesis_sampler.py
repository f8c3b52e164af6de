"""
Hypothesis sampling.

Draws the next hypotheses to show a participant from three orderings of the
active hypotheses:

- popularity: most upgrade votes first
- convergence: edges pointing at a value some sibling edge has validated,
  while this edge itself has not been
- sparsity: fewest votes first

Each pick rolls against the cumulative weights to choose an ordering and
takes its first hypothesis not yet picked. Hypotheses are unique per
(from, to) pair within one draw.
"""

import enum
import logging
import math
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from moral_graph_backend.config import DEFAULT_DRAW_SIZE, DEFAULT_SAMPLER_WEIGHTS
from moral_graph_backend.models import VoteType
from moral_graph_backend.services.errors import InvariantViolation

logger = logging.getLogger(__name__)


class SelectionCriterion(str, enum.Enum):
    POPULARITY = "popular"
    CONVERGENCE = "convergence"
    SPARSITY = "sparse"


@dataclass(frozen=True)
class SamplerWeights:
    popularity: float = DEFAULT_SAMPLER_WEIGHTS["popularity"]
    convergence: float = DEFAULT_SAMPLER_WEIGHTS["convergence"]
    sparsity: float = DEFAULT_SAMPLER_WEIGHTS["sparsity"]

    def __post_init__(self):
        weights = (self.popularity, self.convergence, self.sparsity)
        if any(weight < 0 for weight in weights):
            raise InvariantViolation("Sampler weights must not be negative", {"weights": list(weights)})
        if not math.isclose(sum(weights), 1.0, abs_tol=1e-6):
            raise InvariantViolation("Sampler weights must sum to 1", {"weights": list(weights)})


@dataclass
class SelectionReason:
    total_votes: int
    total_agrees: int
    selected_due_to: SelectionCriterion


@dataclass
class ScoredHypothesis:
    hypothesis: Any
    total_votes: int = 0
    total_agrees: int = 0

    @property
    def pair(self) -> Tuple[int, int]:
        return (self.hypothesis.from_value_id, self.hypothesis.to_value_id)


@dataclass
class EdgeHypothesisData:
    from_value: Dict[str, Any]
    to_value: Dict[str, Any]
    context_id: str
    story: Optional[str]
    hypothesis_run_id: str
    deliberation_id: int
    reason: SelectionReason


@dataclass
class HypothesisOrderings:
    popularity: List[ScoredHypothesis] = field(default_factory=list)
    convergence: List[ScoredHypothesis] = field(default_factory=list)
    sparsity: List[ScoredHypothesis] = field(default_factory=list)


def score_hypotheses(hypotheses: Sequence, votes: Sequence) -> List[ScoredHypothesis]:
    """Attach vote totals for each hypothesis' (from, to) pair, in any context."""
    totals: Dict[Tuple[int, int], List[int]] = {}
    for vote in votes:
        counts = totals.setdefault((vote.from_value_id, vote.to_value_id), [0, 0])
        counts[0] += 1
        if VoteType(vote.type) is VoteType.UPGRADE:
            counts[1] += 1

    scored = []
    for hypothesis in hypotheses:
        total_votes, total_agrees = totals.get((hypothesis.from_value_id, hypothesis.to_value_id), (0, 0))
        scored.append(ScoredHypothesis(hypothesis, total_votes, total_agrees))
    return scored


def convergence_score(item: ScoredHypothesis, max_agrees_by_target: Dict[int, int]) -> float:
    max_agrees = max_agrees_by_target.get(item.hypothesis.to_value_id, 0)
    if max_agrees <= 0:
        return 0.0
    return (max_agrees - item.total_agrees) / max_agrees


def build_orderings(scored: Sequence[ScoredHypothesis]) -> HypothesisOrderings:
    max_agrees_by_target: Dict[int, int] = {}
    for item in scored:
        target = item.hypothesis.to_value_id
        max_agrees_by_target[target] = max(max_agrees_by_target.get(target, 0), item.total_agrees)

    return HypothesisOrderings(
        popularity=sorted(scored, key=lambda item: -item.total_agrees),
        convergence=sorted(scored, key=lambda item: -convergence_score(item, max_agrees_by_target)),
        sparsity=sorted(scored, key=lambda item: item.total_votes),
    )


def weighted_draw(
    orderings: HypothesisOrderings,
    size: int,
    weights: SamplerWeights,
    rng: random.Random,
) -> List[Tuple[ScoredHypothesis, SelectionCriterion]]:
    picked: List[Tuple[ScoredHypothesis, SelectionCriterion]] = []
    used: Set[Tuple[int, int]] = set()

    while len(picked) < size:
        roll = rng.random()
        if roll < weights.popularity:
            ordering, criterion = orderings.popularity, SelectionCriterion.POPULARITY
        elif roll < weights.popularity + weights.convergence:
            ordering, criterion = orderings.convergence, SelectionCriterion.CONVERGENCE
        else:
            ordering, criterion = orderings.sparsity, SelectionCriterion.SPARSITY

        choice = next((item for item in ordering if item.pair not in used), None)
        if choice is None:
            break

        used.add(choice.pair)
        picked.append((choice, criterion))
    return picked


def _value_payload(value) -> Dict[str, Any]:
    return {
        "id": value.id,
        "title": value.title,
        "description": value.description,
        "policies": list(value.policies or []),
    }


class HypothesisSampler:
    """Draws hypotheses for participants; seed `rng` for reproducible draws."""

    def __init__(self, repo, rng: Optional[random.Random] = None):
        self.repo = repo
        self.rng = rng or random.Random()

    async def draw(
        self,
        deliberation_id: int,
        size: int = DEFAULT_DRAW_SIZE,
        weights: Optional[SamplerWeights] = None,
        user_id: Optional[int] = None,
    ) -> List[EdgeHypothesisData]:
        weights = weights or SamplerWeights()
        if size <= 0:
            return []

        hypotheses = await self.repo.list_active_hypotheses(deliberation_id)
        votes = await self.repo.list_votes(deliberation_id)
        values = {value.id: value for value in await self.repo.list_canonical_values(deliberation_id)}

        if user_id is not None:
            voted = {(vote.from_value_id, vote.to_value_id) for vote in votes if vote.user_id == user_id}
            hypotheses = [h for h in hypotheses if (h.from_value_id, h.to_value_id) not in voted]

        # Hypotheses pointing at excluded or missing values are never shown.
        hypotheses = [h for h in hypotheses if h.from_value_id in values and h.to_value_id in values]

        orderings = build_orderings(score_hypotheses(hypotheses, votes))
        picked = weighted_draw(orderings, size, weights, self.rng)
        if len(picked) < size:
            logger.debug("Drew %s of %s requested hypotheses in deliberation %s", len(picked), size, deliberation_id)

        return [
            EdgeHypothesisData(
                from_value=_value_payload(values[item.hypothesis.from_value_id]),
                to_value=_value_payload(values[item.hypothesis.to_value_id]),
                context_id=item.hypothesis.context_id,
                story=item.hypothesis.story,
                hypothesis_run_id=item.hypothesis.hypothesis_run_id,
                deliberation_id=item.hypothesis.deliberation_id,
                reason=SelectionReason(
                    total_votes=item.total_votes,
                    total_agrees=item.total_agrees,
                    selected_due_to=criterion,
                ),
            )
            for item, criterion in picked
        ]
