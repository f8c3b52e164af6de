"""
Moral graph summarization.

Aggregates raw participant votes into one oriented edge per value pair, with
vote tallies, a wiser likelihood and a vote entropy, and optionally ranks
values with a weighted PageRank. `summarize` is a pure function of its input;
nothing computed here is persisted.

Vote mapping for an edge oriented source -> wiser:

- upgrade vote source -> wiser: marked_wiser
- upgrade vote wiser -> source: marked_less_wise
- no_upgrade vote in either direction: marked_not_wiser
- not_sure vote in either direction: marked_unsure

Entropy is taken over all four categories, unsure votes included: it is 0
exactly when every vote on the edge falls in the same category, so three
upgrades and one not_sure give ln(4) - 0.75 ln(3), about 0.56.
"""

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from moral_graph_backend.config import PAGERANK_DAMPING, PAGERANK_MAX_ITERATIONS, PAGERANK_TOLERANCE
from moral_graph_backend.models import VoteType
from moral_graph_backend.services.errors import NotFoundError
from moral_graph_backend.services.graph_traversal import component_containing

logger = logging.getLogger(__name__)

MAX_EDGE_ENTROPY = math.log(4)


@dataclass
class SummaryOptions:
    include_ranking: bool = False
    marked_wiser_threshold: Optional[int] = None
    include_all_edges: bool = False


@dataclass
class EdgeCounts:
    marked_wiser: int = 0
    marked_not_wiser: int = 0
    marked_less_wise: int = 0
    marked_unsure: int = 0
    impressions: int = 0

    @property
    def total(self) -> int:
        return self.marked_wiser + self.marked_not_wiser + self.marked_less_wise + self.marked_unsure


@dataclass
class EdgeSummary:
    wiser_likelihood: float
    entropy: float


@dataclass
class EdgeStats:
    source_value_id: int
    wiser_value_id: int
    contexts: List[str]
    counts: EdgeCounts
    summary: EdgeSummary


@dataclass
class SummaryValue:
    id: int
    title: str
    description: str
    policies: List[str]
    page_rank: Optional[float] = None


@dataclass
class MoralGraphSummary:
    values: List[SummaryValue] = field(default_factory=list)
    edges: List[EdgeStats] = field(default_factory=list)
    skipped_votes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def vote_entropy(counts: EdgeCounts) -> float:
    """Shannon entropy (natural log) of the four-category vote distribution."""
    total = counts.total
    if total == 0:
        return 0.0
    entropy = 0.0
    for count in (counts.marked_wiser, counts.marked_not_wiser, counts.marked_less_wise, counts.marked_unsure):
        if count:
            p = count / total
            entropy -= p * math.log(p)
    return entropy


def wiser_likelihood(counts: EdgeCounts) -> float:
    """Share of all votes on the pair that endorse the oriented upgrade; 0 without votes."""
    total = counts.total
    if total == 0:
        return 0.0
    return counts.marked_wiser / total


def edge_weight(summary: EdgeSummary) -> float:
    """PageRank weight: likelihood damped by disagreement."""
    return summary.wiser_likelihood / (1.0 + summary.entropy)


def weighted_pagerank(
    node_ids: Sequence[int],
    weighted_edges: Iterable[Tuple[int, int, float]],
    damping: float = PAGERANK_DAMPING,
    max_iterations: int = PAGERANK_MAX_ITERATIONS,
    tolerance: float = PAGERANK_TOLERANCE,
) -> Dict[int, float]:
    """
    Power-iteration PageRank over a weighted directed graph.

    Mass flows from source to target. Nodes without outgoing weight spread
    their mass uniformly, so every node keeps at least (1 - damping) / N and
    the scores sum to 1.
    """
    n = len(node_ids)
    if n == 0:
        return {}

    index = {node_id: i for i, node_id in enumerate(node_ids)}
    weights = np.zeros((n, n))
    for source, target, weight in weighted_edges:
        if weight > 0:
            weights[index[source], index[target]] += weight

    out_weight = weights.sum(axis=1)
    dangling = out_weight == 0
    transition = np.divide(
        weights,
        out_weight[:, None],
        out=np.zeros_like(weights),
        where=out_weight[:, None] > 0,
    )

    rank = np.full(n, 1.0 / n)
    for iteration in range(max_iterations):
        updated = (1.0 - damping) / n + damping * (rank @ transition + rank[dangling].sum() / n)
        residual = float(np.abs(updated - rank).sum())
        rank = updated
        if residual < tolerance:
            logger.debug("PageRank converged after %s iterations", iteration + 1)
            break

    rank = rank / rank.sum()
    return {node_id: float(rank[i]) for node_id, i in index.items()}


def _orient(pair_votes: List[Any], low: int, high: int) -> Tuple[int, int]:
    """Majority upgrade direction; ties go to the direction with more votes, then low -> high."""
    upgrades = {(low, high): 0, (high, low): 0}
    totals = {(low, high): 0, (high, low): 0}
    for vote in pair_votes:
        direction = (vote.from_value_id, vote.to_value_id)
        totals[direction] += 1
        if VoteType(vote.type) is VoteType.UPGRADE:
            upgrades[direction] += 1

    forward, backward = (low, high), (high, low)
    if upgrades[backward] > upgrades[forward]:
        return backward
    if upgrades[backward] == upgrades[forward] and totals[backward] > totals[forward]:
        return backward
    return forward


def _tally(pair_votes: List[Any], source: int, wiser: int) -> EdgeCounts:
    counts = EdgeCounts()
    for vote in pair_votes:
        vote_type = VoteType(vote.type)
        if vote_type is VoteType.NOT_SURE:
            counts.marked_unsure += 1
        elif vote_type is VoteType.NO_UPGRADE:
            counts.marked_not_wiser += 1
        elif vote.from_value_id == source and vote.to_value_id == wiser:
            counts.marked_wiser += 1
        else:
            counts.marked_less_wise += 1
    counts.impressions = counts.marked_wiser + counts.marked_not_wiser + counts.marked_less_wise
    return counts


class GraphSummarizer:
    """Builds MoralGraphSummary views from canonical values and votes."""

    def __init__(self, repo=None):
        self.repo = repo

    def summarize(
        self,
        values: Sequence[Any],
        edges: Sequence[Any],
        options: Optional[SummaryOptions] = None,
    ) -> MoralGraphSummary:
        options = options or SummaryOptions()
        ordered_values = sorted(values, key=lambda value: value.id)
        known_ids = {value.id for value in ordered_values}

        pairs: Dict[Tuple[int, int], List[Any]] = {}
        skipped = 0
        for vote in edges:
            if vote.from_value_id == vote.to_value_id:
                logger.error("Ignoring self-loop vote on value %s", vote.from_value_id)
                skipped += 1
                continue
            if vote.from_value_id not in known_ids or vote.to_value_id not in known_ids:
                logger.error(
                    "Ignoring vote %s -> %s referencing an unknown value",
                    vote.from_value_id,
                    vote.to_value_id,
                )
                skipped += 1
                continue
            try:
                VoteType(vote.type)
            except ValueError:
                logger.error("Ignoring vote %s -> %s with unknown type %r", vote.from_value_id, vote.to_value_id, vote.type)
                skipped += 1
                continue
            key = (min(vote.from_value_id, vote.to_value_id), max(vote.from_value_id, vote.to_value_id))
            pairs.setdefault(key, []).append(vote)

        all_edges: List[EdgeStats] = []
        for (low, high) in sorted(pairs):
            pair_votes = pairs[(low, high)]
            source, wiser = _orient(pair_votes, low, high)
            counts = _tally(pair_votes, source, wiser)
            all_edges.append(
                EdgeStats(
                    source_value_id=source,
                    wiser_value_id=wiser,
                    contexts=sorted({vote.context_id for vote in pair_votes}),
                    counts=counts,
                    summary=EdgeSummary(
                        wiser_likelihood=wiser_likelihood(counts),
                        entropy=vote_entropy(counts),
                    ),
                )
            )

        if options.marked_wiser_threshold is not None:
            ranked_edges = [
                edge for edge in all_edges
                if edge.counts.marked_wiser >= options.marked_wiser_threshold
            ]
        else:
            ranked_edges = all_edges

        page_ranks: Dict[int, float] = {}
        if options.include_ranking:
            page_ranks = weighted_pagerank(
                [value.id for value in ordered_values],
                [
                    (edge.source_value_id, edge.wiser_value_id, edge_weight(edge.summary))
                    for edge in ranked_edges
                ],
            )

        summary_values = [
            SummaryValue(
                id=value.id,
                title=value.title,
                description=value.description,
                policies=list(value.policies or []),
                page_rank=page_ranks.get(value.id) if options.include_ranking else None,
            )
            for value in ordered_values
        ]

        return MoralGraphSummary(
            values=summary_values,
            edges=all_edges if options.include_all_edges else ranked_edges,
            skipped_votes=skipped,
        )

    async def summarize_deliberation(
        self,
        deliberation_id: int,
        options: Optional[SummaryOptions] = None,
        context_id: Optional[str] = None,
    ) -> MoralGraphSummary:
        if self.repo is None:
            raise ValueError("GraphSummarizer needs a repository to load a deliberation")
        values = await self.repo.list_canonical_values(deliberation_id)
        votes = await self.repo.list_votes(deliberation_id, context_id=context_id)
        return self.summarize(values, votes, options)


def restrict_to_component(summary: MoralGraphSummary, value_id: int) -> MoralGraphSummary:
    """Subgraph of `summary` connected to `value_id`, ignoring edge direction."""
    if value_id not in {value.id for value in summary.values}:
        raise NotFoundError("value", value_id)

    members = component_containing(
        value_id,
        [(edge.source_value_id, edge.wiser_value_id) for edge in summary.edges],
    )
    return MoralGraphSummary(
        values=[value for value in summary.values if value.id in members],
        edges=[edge for edge in summary.edges if edge.source_value_id in members],
        skipped_votes=summary.skipped_votes,
    )
