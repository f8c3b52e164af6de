"""
Tests for the weighted hypothesis sampler. Randomness is always seeded;
distributional checks run over many draws.
"""

import random
from collections import Counter
from datetime import datetime, timezone

import pytest

from moral_graph_backend.models import VoteType
from moral_graph_backend.services.errors import InvariantViolation
from moral_graph_backend.services.hypothesis_sampler import (
    HypothesisSampler,
    SamplerWeights,
    SelectionCriterion,
    build_orderings,
    score_hypotheses,
)
from moral_graph_backend.tests.conftest import make_hypothesis, make_value, make_vote

POPULAR_ONLY = SamplerWeights(popularity=1.0, convergence=0.0, sparsity=0.0)
CONVERGENCE_ONLY = SamplerWeights(popularity=0.0, convergence=1.0, sparsity=0.0)
SPARSE_ONLY = SamplerWeights(popularity=0.0, convergence=0.0, sparsity=1.0)


def _seed_values(repo, count):
    for value_id in range(1, count + 1):
        repo.add_value(make_value(value_id))


def _add_votes(repo, from_value_id, to_value_id, upgrades=0, others=0, first_user=1):
    user = first_user
    for _ in range(upgrades):
        repo.add_vote(make_vote(user, from_value_id, to_value_id, VoteType.UPGRADE))
        user += 1
    for _ in range(others):
        repo.add_vote(make_vote(user, from_value_id, to_value_id, VoteType.NO_UPGRADE))
        user += 1
    return user


@pytest.mark.asyncio
async def test_popularity_prefers_most_agreed(repo):
    _seed_values(repo, 4)
    repo.add_hypothesis(make_hypothesis(1, 2))
    repo.add_hypothesis(make_hypothesis(3, 4))
    _add_votes(repo, 3, 4, upgrades=3)

    drawn = await HypothesisSampler(repo, random.Random(1)).draw(1, 1, POPULAR_ONLY)

    assert (drawn[0].from_value["id"], drawn[0].to_value["id"]) == (3, 4)
    assert drawn[0].reason.selected_due_to is SelectionCriterion.POPULARITY
    assert drawn[0].reason.total_agrees == 3
    assert drawn[0].reason.total_votes == 3


@pytest.mark.asyncio
async def test_sparsity_prefers_least_voted(repo):
    _seed_values(repo, 4)
    repo.add_hypothesis(make_hypothesis(1, 2))
    repo.add_hypothesis(make_hypothesis(3, 4))
    _add_votes(repo, 1, 2, others=2)

    drawn = await HypothesisSampler(repo, random.Random(1)).draw(1, 1, SPARSE_ONLY)

    assert (drawn[0].from_value["id"], drawn[0].to_value["id"]) == (3, 4)
    assert drawn[0].reason.selected_due_to is SelectionCriterion.SPARSITY


@pytest.mark.asyncio
async def test_convergence_prefers_unvalidated_edges_to_validated_targets(repo):
    _seed_values(repo, 5)
    repo.add_hypothesis(make_hypothesis(1, 2))  # validated edge into 2
    repo.add_hypothesis(make_hypothesis(4, 5))  # unrelated target, no votes
    repo.add_hypothesis(make_hypothesis(3, 2))  # unvalidated edge into 2
    _add_votes(repo, 1, 2, upgrades=4)

    drawn = await HypothesisSampler(repo, random.Random(1)).draw(1, 1, CONVERGENCE_ONLY)

    assert (drawn[0].from_value["id"], drawn[0].to_value["id"]) == (3, 2)
    assert drawn[0].reason.selected_due_to is SelectionCriterion.CONVERGENCE


def test_convergence_score_ordering():
    hypotheses = [make_hypothesis(1, 2), make_hypothesis(3, 2), make_hypothesis(4, 2)]
    votes = [make_vote(u, 1, 2) for u in range(4)] + [make_vote(u, 3, 2) for u in range(10, 12)]

    orderings = build_orderings(score_hypotheses(hypotheses, votes))

    assert [item.pair for item in orderings.convergence] == [(4, 2), (3, 2), (1, 2)]


@pytest.mark.asyncio
async def test_same_pair_in_two_contexts_is_drawn_once(repo):
    _seed_values(repo, 2)
    repo.add_hypothesis(make_hypothesis(1, 2, "When in distress"))
    repo.add_hypothesis(make_hypothesis(1, 2, "When grieving"))

    drawn = await HypothesisSampler(repo, random.Random(3)).draw(1, 5)

    assert len(drawn) == 1


@pytest.mark.asyncio
async def test_exhausted_pool_stops_early(repo):
    _seed_values(repo, 4)
    for pair in [(1, 2), (2, 3), (3, 4)]:
        repo.add_hypothesis(make_hypothesis(*pair))

    drawn = await HypothesisSampler(repo, random.Random(5)).draw(1, 10)

    assert len(drawn) == 3
    assert len({(d.from_value["id"], d.to_value["id"]) for d in drawn}) == 3


@pytest.mark.asyncio
async def test_archived_hypotheses_are_never_drawn(repo):
    _seed_values(repo, 4)
    repo.add_hypothesis(make_hypothesis(1, 2, archived_at=datetime.now(timezone.utc)))
    repo.add_hypothesis(make_hypothesis(3, 4))

    drawn = await HypothesisSampler(repo, random.Random(5)).draw(1, 5)

    assert [(d.from_value["id"], d.to_value["id"]) for d in drawn] == [(3, 4)]


@pytest.mark.asyncio
async def test_participant_does_not_see_pairs_they_voted_on(repo):
    _seed_values(repo, 4)
    repo.add_hypothesis(make_hypothesis(1, 2))
    repo.add_hypothesis(make_hypothesis(3, 4))
    repo.add_vote(make_vote(42, 1, 2))

    drawn = await HypothesisSampler(repo, random.Random(5)).draw(1, 5, user_id=42)

    assert [(d.from_value["id"], d.to_value["id"]) for d in drawn] == [(3, 4)]


@pytest.mark.asyncio
async def test_excluded_values_are_not_drawn(repo):
    repo.add_value(make_value(1))
    repo.add_value(make_value(2, is_excluded=True))
    repo.add_value(make_value(3))
    repo.add_hypothesis(make_hypothesis(1, 2))
    repo.add_hypothesis(make_hypothesis(1, 3))

    drawn = await HypothesisSampler(repo, random.Random(5)).draw(1, 5)

    assert [(d.from_value["id"], d.to_value["id"]) for d in drawn] == [(1, 3)]


@pytest.mark.asyncio
async def test_drawn_items_carry_hypothesis_fields(repo):
    _seed_values(repo, 2)
    repo.add_hypothesis(make_hypothesis(1, 2, run_id="run-9", story="I learned"))

    drawn = await HypothesisSampler(repo, random.Random(5)).draw(1, 1)

    assert drawn[0].story == "I learned"
    assert drawn[0].hypothesis_run_id == "run-9"
    assert drawn[0].context_id == "When in distress"
    assert drawn[0].deliberation_id == 1
    assert drawn[0].from_value["policies"] == ["POLICY 1"]


@pytest.mark.parametrize(
    "weights",
    [
        {"popularity": 0.5, "convergence": 0.5, "sparsity": 0.5},
        {"popularity": -0.2, "convergence": 0.6, "sparsity": 0.6},
    ],
)
def test_invalid_weights_are_rejected(weights):
    with pytest.raises(InvariantViolation):
        SamplerWeights(**weights)


@pytest.mark.slow
@pytest.mark.asyncio
async def test_criteria_follow_configured_weights(repo):
    _seed_values(repo, 60)
    user = 1
    for i in range(1, 51):
        repo.add_hypothesis(make_hypothesis(i, i + 1))
        user = _add_votes(repo, i, i + 1, upgrades=i % 4, others=i % 3, first_user=user)

    sampler = HypothesisSampler(repo, random.Random(20240601))
    weights = SamplerWeights(popularity=0.3, convergence=0.3, sparsity=0.4)

    counts = Counter()
    total = 0
    while total < 10_000:
        for item in await sampler.draw(1, 5, weights):
            counts[item.reason.selected_due_to] += 1
            total += 1

    assert counts[SelectionCriterion.POPULARITY] / total == pytest.approx(0.3, abs=0.05)
    assert counts[SelectionCriterion.CONVERGENCE] / total == pytest.approx(0.3, abs=0.05)
    assert counts[SelectionCriterion.SPARSITY] / total == pytest.approx(0.4, abs=0.05)
