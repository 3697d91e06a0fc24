from __future__ import annotations

import pytest

from reasonchain.agents.capability import ModelCapability
from reasonchain.complexity.llm import LLMStrategy
from reasonchain.complexity.semantic import SemanticStrategy
from reasonchain.complexity.types import DetectionContext
from reasonchain.core.exceptions import NoConfidentMatchError, StrategyError, StrategyUnavailableError
from reasonchain.schemas.complexity import ComplexityConfig, ComplexityExample
from reasonchain.services.examples import InMemoryExampleStore

from tests.helpers.stubs import StubEmbeddingService, json_reply, make_llm_service


def _context(query: str = "compare contaminant trends", **signals: float) -> DetectionContext:
    return DetectionContext(query=query, request_id="req-1", **signals)


async def _store(vector: list[float]) -> InMemoryExampleStore:
    store = InMemoryExampleStore()
    example = ComplexityExample(
        id="ex-1",
        query="compare contaminant trends",
        config=ComplexityConfig(complexity_score=0.75, reasoning_passes=3),
        usage_count=4,
    )
    await store.add_example(example, vector)
    return store


@pytest.mark.asyncio
async def test_semantic_strategy_returns_matched_example():
    embeddings = StubEmbeddingService({"compare contaminant trends": [1.0, 0.0, 0.0, 0.0]})
    strategy = SemanticStrategy(embeddings=embeddings, store=await _store([1.0, 0.0, 0.0, 0.0]))

    result = await strategy.detect(_context())

    assert result.score == 0.75
    assert result.reasoning_passes == 3
    assert result.confidence == 1.0
    assert result.metadata == {"matched_example_id": "ex-1", "similarity": 1.0, "usage_count": 4}


@pytest.mark.asyncio
async def test_semantic_strategy_rejects_weak_matches():
    # cos = 0.7 sits above the 0.675 candidate floor but below the 0.75 threshold.
    embeddings = StubEmbeddingService({"compare contaminant trends": [0.7, 0.71414284, 0.0, 0.0]})
    strategy = SemanticStrategy(embeddings=embeddings, store=await _store([1.0, 0.0, 0.0, 0.0]))

    with pytest.raises(NoConfidentMatchError):
        await strategy.detect(_context())


@pytest.mark.asyncio
async def test_semantic_strategy_without_candidates_has_no_opinion():
    strategy = SemanticStrategy(embeddings=StubEmbeddingService(), store=InMemoryExampleStore())

    with pytest.raises(StrategyUnavailableError):
        await strategy.detect(_context())


def test_semantic_strategy_needs_backends():
    strategy = SemanticStrategy(embeddings=None, store=None)

    assert strategy.can_use(_context()) is False
    assert strategy.get_priority(_context()) == 100


@pytest.mark.asyncio
async def test_llm_strategy_parses_json_reply():
    service, client = make_llm_service([json_reply(score=0.82, reasoningPasses=3, reasoning="Needs synthesis.")])
    strategy = LLMStrategy(capability=ModelCapability(agent_name="complexity-detector", llm=service))
    context = _context(semantic_score=0.2, keyword_score=0.9, similarity=0.6)

    result = await strategy.detect(context)

    assert result.score == 0.82
    assert result.reasoning_passes == 3
    assert result.confidence == 0.6
    assert result.metadata["reasoning"] == "Needs synthesis."
    assert client.calls[0]["kwargs"]["format"] == "json"
    assert "disagreement between semantic and keyword: 0.700" in client.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_llm_strategy_repairs_invalid_reply_fields():
    service, _ = make_llm_service(['Sure! {"score": 7, "reasoningPasses": 9}'])
    strategy = LLMStrategy(capability=ModelCapability(agent_name="complexity-detector", llm=service))

    result = await strategy.detect(_context())

    assert result.score == 1.0
    assert result.reasoning_passes == 3
    assert result.confidence == 0.8


@pytest.mark.asyncio
async def test_llm_strategy_defaults_score_when_missing():
    service, _ = make_llm_service([json_reply(reasoning="unsure")])
    strategy = LLMStrategy(capability=ModelCapability(agent_name="complexity-detector", llm=service))

    result = await strategy.detect(_context())

    assert result.score == 0.5
    assert result.reasoning_passes == 2


@pytest.mark.asyncio
async def test_llm_strategy_wraps_failures():
    service, _ = make_llm_service(["no json here"])
    strategy = LLMStrategy(capability=ModelCapability(agent_name="complexity-detector", llm=service))

    with pytest.raises(StrategyError):
        await strategy.detect(_context())


def test_llm_strategy_priority_depends_on_available_signals():
    strategy = LLMStrategy(capability=None)

    assert strategy.get_priority(_context(semantic_score=0.1, keyword_score=0.2)) == 75
    assert strategy.get_priority(_context(keyword_score=0.2)) == 25
    assert strategy.can_use(_context()) is False
