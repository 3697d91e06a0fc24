from __future__ import annotations

import pytest
import structlog

from reasonchain.schemas.confidence import ConfidenceScore, RoutingDecision, ScorePattern
from reasonchain.schemas.requests import new_request_context
from reasonchain.services.scoring import ConfidenceScorer, agent_weight, canonical_agent_name, decide_route
from reasonchain.services.storage import InMemoryOutputStore

from tests.helpers.stubs import ContextRecordingOutputStore, FailingOutputStore, make_llm_service


def _scores(**values: float) -> list[ConfidenceScore]:
    return [ConfidenceScore(agent_name=f"{name}-agent", score=value) for name, value in values.items()]


FULL_CHAIN = _scores(thought=0.9, planner=0.8, critic=0.7, meta=0.6)


@pytest.mark.parametrize(
    ("weighted", "decision"),
    [
        (0.95, RoutingDecision.EXECUTE),
        (0.8, RoutingDecision.EXECUTE),
        (0.79999, RoutingDecision.REVIEW),
        (0.6, RoutingDecision.REVIEW),
        (0.59999, RoutingDecision.RETHINK),
        (0.4, RoutingDecision.RETHINK),
        (0.39999, RoutingDecision.ESCALATE),
        (0.0, RoutingDecision.ESCALATE),
    ],
)
def test_decision_bands(weighted, decision):
    assert decide_route(weighted) is decision


def test_agent_names_are_canonicalized_for_weights():
    assert canonical_agent_name(" Critic ") == "critic-agent"
    assert agent_weight("critic") == 0.35
    assert agent_weight("planner-agent") == 0.30
    assert agent_weight("translator-agent") == 0.10


def test_weighted_confidence_uses_agent_weights():
    assessment = ConfidenceScorer().score(FULL_CHAIN)

    assert assessment.weighted_confidence == pytest.approx(0.77)
    assert assessment.overall_confidence == pytest.approx(0.75)
    assert assessment.variance == pytest.approx(0.0125)
    assert assessment.decision is RoutingDecision.REVIEW
    assert assessment.pattern is ScorePattern.MIXED


def test_raising_any_score_never_lowers_the_weighted_confidence():
    scorer = ConfidenceScorer()
    baseline = scorer.score(FULL_CHAIN).weighted_confidence
    for index in range(len(FULL_CHAIN)):
        raised = list(FULL_CHAIN)
        raised[index] = raised[index].model_copy(update={"score": 1.0})
        assert scorer.score(raised).weighted_confidence >= baseline


def test_single_agent_weight_cancels_out():
    assessment = ConfidenceScorer().score(_scores(critic=0.8))

    assert assessment.weighted_confidence == pytest.approx(0.8)
    assert assessment.decision is RoutingDecision.EXECUTE


def test_routing_uses_the_unrounded_weighted_confidence():
    assessment = ConfidenceScorer().score(_scores(critic=0.7999996))

    assert assessment.weighted_confidence == 0.8
    assert assessment.decision is RoutingDecision.REVIEW


@pytest.mark.parametrize(
    ("scores", "pattern"),
    [
        (_scores(thought=0.85, planner=0.85, critic=0.85), ScorePattern.CONSISTENT),
        (_scores(thought=0.7, critic=0.95), ScorePattern.ALL_HIGH),
        (_scores(thought=0.1, critic=0.4), ScorePattern.ALL_LOW),
        (_scores(thought=0.2, critic=0.9), ScorePattern.MIXED),
    ],
)
def test_score_patterns(scores, pattern):
    assert ConfidenceScorer().score(scores).pattern is pattern


def test_breakdown_groups_agents():
    breakdown = ConfidenceScorer().score(_scores(thought=0.9, meta=0.5, planner=0.6, critic=0.8)).breakdown

    assert breakdown.reasoning == pytest.approx(0.7)
    assert breakdown.planning == pytest.approx(0.7)
    assert breakdown.execution == 0.5


def test_analysis_flags_low_scores_from_heavy_agents():
    analysis = ConfidenceScorer().score(_scores(thought=0.9, critic=0.3, meta=0.2)).analysis

    assert analysis.primary_driver == "thought-agent"
    assert analysis.lowest_confidence == "meta-agent"
    assert analysis.highest_confidence == "thought-agent"
    assert analysis.concerns == ["critic-agent (30%)"]


def test_no_scores_yield_a_neutral_assessment():
    assessment = ConfidenceScorer().score([])

    assert assessment.weighted_confidence == 0.5
    assert assessment.decision is RoutingDecision.RETHINK
    assert assessment.pattern is ScorePattern.MIXED
    assert assessment.analysis.primary_driver is None


@pytest.mark.asyncio
async def test_evaluate_builds_output_with_fallback_reasoning():
    store = InMemoryOutputStore()
    context = new_request_context("Compare facilities", request_id="req-42")

    output = await ConfidenceScorer(output_store=store).evaluate(FULL_CHAIN, request_context=context)

    assert output.request_id == "req-42"
    assert output.request_context.agent_chain == ("confidence-scorer",)
    assert output.decision is RoutingDecision.REVIEW
    assert output.threshold_used == 0.6
    assert output.routing_recommendation.startswith("Moderate confidence")
    assert output.reasoning == (
        "Overall weighted confidence: 77% based on scores from "
        "thought-agent, planner-agent, critic-agent, meta-agent. Decision: review."
    )
    stored = await store.get_by_request_id("req-42", "confidence-scorer")
    assert stored is not None
    assert stored["decision"] == "review"


@pytest.mark.asyncio
async def test_escalate_threshold_is_reported():
    output = await ConfidenceScorer().evaluate(_scores(critic=0.1))

    assert output.decision is RoutingDecision.ESCALATE
    assert output.threshold_used == 0.2


@pytest.mark.asyncio
async def test_model_reasoning_is_used_when_available():
    service, client = make_llm_service(["The critic is cautious, so a review is warranted."])
    scorer = ConfidenceScorer.from_settings(llm_service=service)

    output = await scorer.evaluate(FULL_CHAIN)

    assert output.reasoning == "The critic is cautious, so a review is warranted."
    assert output.decision is RoutingDecision.REVIEW
    assert "Decision: review" in client.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_model_failure_keeps_the_decision():
    service, _ = make_llm_service([RuntimeError("ollama unavailable")])
    scorer = ConfidenceScorer.from_settings(llm_service=service)

    output = await scorer.evaluate(FULL_CHAIN)

    assert output.decision is RoutingDecision.REVIEW
    assert output.reasoning.startswith("Overall weighted confidence: 77%")


@pytest.mark.asyncio
async def test_storage_failure_does_not_fail_scoring():
    store = FailingOutputStore()

    output = await ConfidenceScorer(output_store=store).evaluate(FULL_CHAIN)

    assert output.decision is RoutingDecision.REVIEW
    assert store.attempts == 1


@pytest.mark.asyncio
async def test_request_id_is_bound_to_log_context_during_evaluation():
    store = ContextRecordingOutputStore()
    scorer = ConfidenceScorer(output_store=store)

    output = await scorer.evaluate(FULL_CHAIN)

    assert store.bound_request_ids == [output.request_id]
    assert "request_id" not in structlog.contextvars.get_contextvars()
