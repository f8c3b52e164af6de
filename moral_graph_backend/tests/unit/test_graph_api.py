import importlib
import random
import sys
import types

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from moral_graph_backend.schemas import DuplicateChoice
from moral_graph_backend.services.errors import TransientProviderError
from moral_graph_backend.tests.conftest import (
    FakeArbiter,
    FakeEmbeddingService,
    FakeValueRepository,
    make_context,
    make_hypothesis,
    make_submission,
    make_value,
    make_vote,
)


def _load_graph_api_with_stubs(monkeypatch):
    async def dummy_get_async_session():
        yield object()

    dummy_db_session = types.ModuleType("moral_graph_backend.db_session")
    dummy_db_session.get_async_session = dummy_get_async_session

    monkeypatch.setitem(sys.modules, "moral_graph_backend.db_session", dummy_db_session)
    sys.modules.pop("moral_graph_backend.graph_api", None)
    return importlib.import_module("moral_graph_backend.graph_api")


@pytest.fixture
def api(monkeypatch):
    graph_api = _load_graph_api_with_stubs(monkeypatch)
    repo = FakeValueRepository()
    arbiter = FakeArbiter()
    embeddings = FakeEmbeddingService()

    app = FastAPI()
    app.include_router(graph_api.router)
    app.dependency_overrides[graph_api.get_repository] = lambda: repo
    app.dependency_overrides[graph_api.get_embedding_service] = lambda: embeddings
    app.dependency_overrides[graph_api.get_llm_arbiter] = lambda: arbiter
    app.dependency_overrides[graph_api.get_rng] = lambda: random.Random(7)

    return types.SimpleNamespace(client=TestClient(app), repo=repo, arbiter=arbiter)


def _seed_graph(repo):
    for value_id in (1, 2, 3):
        repo.add_value(make_value(value_id))
    repo.add_context(make_context("When in distress"), question_ids=[1])
    for user in range(1, 4):
        repo.add_vote(make_vote(user, 1, 2))
    repo.add_vote(make_vote(9, 2, 3))


def test_graph_returns_values_and_edges(api):
    _seed_graph(api.repo)

    response = api.client.get("/api/deliberations/1/graph", params={"include_ranking": "true"})

    assert response.status_code == 200
    body = response.json()
    assert {value["id"] for value in body["values"]} == {1, 2, 3}
    assert len(body["edges"]) == 2
    assert all(value["page_rank"] is not None for value in body["values"])


def test_graph_threshold_and_subgraph(api):
    _seed_graph(api.repo)
    api.repo.add_value(make_value(4))

    response = api.client.get(
        "/api/deliberations/1/graph",
        params={"marked_wiser_threshold": 2, "value_id": 1},
    )

    assert response.status_code == 200
    body = response.json()
    assert len(body["edges"]) == 1
    assert {value["id"] for value in body["values"]} == {1, 2}


def test_graph_unknown_value_is_404(api):
    _seed_graph(api.repo)

    response = api.client.get("/api/deliberations/1/graph", params={"value_id": 42})

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "RESOURCE_NOT_FOUND"


def test_vote_is_recorded(api):
    _seed_graph(api.repo)

    response = api.client.post(
        "/api/deliberations/1/votes",
        json={"user_id": 5, "from_value_id": 2, "to_value_id": 3, "context_id": "When in distress", "type": "upgrade"},
    )

    assert response.status_code == 200
    assert response.json()["type"] == "upgrade"
    assert any(vote.user_id == 5 for vote in api.repo.votes)


def test_self_loop_vote_is_422(api):
    _seed_graph(api.repo)

    response = api.client.post(
        "/api/deliberations/1/votes",
        json={"user_id": 5, "from_value_id": 2, "to_value_id": 2, "context_id": "When in distress", "type": "upgrade"},
    )

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "INVARIANT_VIOLATION"


def test_vote_on_unknown_context_is_404(api):
    _seed_graph(api.repo)

    response = api.client.post(
        "/api/deliberations/1/votes",
        json={"user_id": 5, "from_value_id": 1, "to_value_id": 2, "context_id": "Nowhere", "type": "no_upgrade"},
    )

    assert response.status_code == 404


def test_draw_returns_annotated_hypotheses(api):
    _seed_graph(api.repo)
    api.repo.add_hypothesis(make_hypothesis(1, 3))

    response = api.client.get("/api/deliberations/1/hypotheses/draw", params={"size": 3})

    assert response.status_code == 200
    drawn = response.json()
    assert len(drawn) == 1
    assert drawn[0]["from"]["id"] == 1
    assert drawn[0]["to"]["id"] == 3
    assert drawn[0]["reason"]["selected_due_to"] in {"popular", "convergence", "sparse"}


def test_draw_with_bad_weights_is_422(api):
    response = api.client.get(
        "/api/deliberations/1/hypotheses/draw",
        params={"popularity": 0.9, "convergence": 0.9, "sparsity": 0.9},
    )

    assert response.status_code == 422


def test_deduplicate_reports_counts(api):
    api.repo.add_value(make_value(1, embedding=[1.0, 0.0]))
    api.repo.add_submission(make_submission(10, embedding=[0.9, 0.3]))
    api.arbiter.responses["find_duplicate_value"] = [DuplicateChoice(duplicate_id=1)]

    response = api.client.post("/api/deliberations/1/deduplicate", json={"batch_limit": 10})

    assert response.status_code == 200
    assert response.json()["linked_existing_count"] == 1


def test_add_context_creates_context(api):
    response = api.client.post(
        "/api/deliberations/1/contexts",
        json={"question_id": 3, "text": "When grieving"},
    )

    assert response.status_code == 200
    assert response.json() == {"context_id": "When grieving", "created": True}


def test_provider_outage_is_503(api):
    _seed_graph(api.repo)
    for value_id in (1, 2, 3):
        api.repo.add_submission(make_submission(100 + value_id, question_id=1, canonical_value_id=value_id))
    api.arbiter.responses["generate_upgrades"] = [TransientProviderError("anthropic", "overloaded")]

    response = api.client.post(
        "/api/deliberations/1/hypotheses/generate",
        params={"context_id": "When in distress"},
    )

    assert response.status_code == 503
    assert response.json()["detail"]["retryable"] is True
