from __future__ import annotations

import pytest

from reasonchain.schemas.complexity import ComplexityConfig, ComplexityExample
from reasonchain.schemas.confidence import ConfidenceScorerOutput
from reasonchain.schemas.requests import new_request_context
from reasonchain.services.examples import InMemoryExampleStore, cosine_similarity
from reasonchain.services.scoring import ConfidenceScorer
from reasonchain.services.storage import InMemoryOutputStore, save_best_effort

from tests.helpers.stubs import FailingOutputStore


async def _output(request_id: str) -> ConfidenceScorerOutput:
    return await ConfidenceScorer().evaluate([], request_context=new_request_context(request_id=request_id))


def _example(example_id: str, passes: int = 2) -> ComplexityExample:
    return ComplexityExample(
        id=example_id,
        query=f"query {example_id}",
        config=ComplexityConfig(complexity_score=0.5, reasoning_passes=passes),
    )


@pytest.mark.asyncio
async def test_output_store_keeps_one_document_per_request():
    store = InMemoryOutputStore()
    first = await _output("req-1")
    await store.save(first)
    await store.save(first.model_copy(update={"reasoning": "updated"}))
    await store.save(await _output("req-2"))

    stored = await store.get_by_request_id("req-1", "confidence-scorer")
    recent = await store.list_recent("confidence-scorer")

    assert stored["reasoning"] == "updated"
    assert [doc["request_id"] for doc in recent] == ["req-2", "req-1"]
    assert await store.get_by_request_id("req-1", "executor-agent") is None
    assert await store.list_recent("confidence-scorer", limit=0) == []


@pytest.mark.asyncio
async def test_save_best_effort_reports_failures():
    failing = FailingOutputStore()
    output = await _output("req-3")

    assert await save_best_effort(failing, output) is False
    assert await save_best_effort(None, output) is False
    assert await save_best_effort(InMemoryOutputStore(), output) is True
    assert failing.attempts == 1


def test_cosine_similarity_edge_cases():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
    assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


@pytest.mark.asyncio
async def test_example_store_query_orders_and_filters():
    store = InMemoryExampleStore()
    await store.add_example(_example("exact"), [1.0, 0.0])
    await store.add_example(_example("close"), [0.9, 0.1])
    await store.add_example(_example("far"), [0.0, 1.0])

    matches = await store.query([1.0, 0.0], top_k=5, min_score=0.5)

    assert [match.example.id for match in matches] == ["exact", "close"]
    assert matches[0].similarity == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_example_store_usage_and_deletion():
    store = InMemoryExampleStore()
    await store.add_example(_example("a"), [1.0, 0.0])
    await store.add_example(_example("b"), [0.0, 1.0])

    await store.increment_usage_count("a")
    await store.increment_usage_count("missing")

    assert (await store.get_example("a")).usage_count == 1
    assert [example.id for example in await store.list_examples()] == ["a", "b"]
    assert await store.delete_example("a") is True
    assert await store.delete_example("a") is False
    assert [example.id for example in await store.list_examples()] == ["b"]
