from __future__ import annotations

import pytest

from reasonchain.complexity.orchestrator import ComplexityDetector
from reasonchain.core.config import Settings
from reasonchain.core.exceptions import PlanRejectedError
from reasonchain.execution.engine import ExecutionEngine
from reasonchain.orchestration.pipeline import ReasoningPipeline
from reasonchain.schemas.confidence import ConfidenceScore, RoutingDecision
from reasonchain.schemas.plans import RunStatus
from reasonchain.services.scoring import ConfidenceScorer

from tests.helpers.stubs import ScriptedStepExecutor, StaticPlanProvider, make_plan

CONFIDENT = [
    ConfidenceScore(agent_name="planner-agent", score=0.9),
    ConfidenceScore(agent_name="critic-agent", score=0.85),
]
HESITANT = [
    ConfidenceScore(agent_name="planner-agent", score=0.7),
    ConfidenceScore(agent_name="critic-agent", score=0.6),
]


def _pipeline(executor: ScriptedStepExecutor) -> ReasoningPipeline:
    return ReasoningPipeline(
        detector=ComplexityDetector.from_settings(Settings()),
        scorer=ConfidenceScorer(),
        engine=ExecutionEngine(step_executor=executor),
    )


@pytest.mark.asyncio
async def test_confident_plans_are_executed():
    executor = ScriptedStepExecutor()
    provider = StaticPlanProvider(make_plan(("lookup", []), ("answer", ["lookup"])))

    result = await _pipeline(executor).run("list facility ABC", plan_provider=provider, agent_scores=CONFIDENT)

    assert provider.requests == [("list facility ABC", 1)]
    assert result.confidence.decision is RoutingDecision.EXECUTE
    assert result.executed is True
    assert result.execution.status is RunStatus.COMPLETED
    assert result.execution.reasoning_passes == 1
    assert executor.calls == ["lookup", "answer"]
    assert result.execution.output.request_context.agent_chain == (
        "complexity-detector",
        "confidence-scorer",
        "executor-agent",
    )
    assert result.execution.output.request_id == result.complexity.request_id


@pytest.mark.asyncio
async def test_execution_is_withheld_below_execute_threshold():
    executor = ScriptedStepExecutor()
    provider = StaticPlanProvider(make_plan(("lookup", [])))

    result = await _pipeline(executor).run("list facility ABC", plan_provider=provider, agent_scores=HESITANT)

    assert result.confidence.decision is RoutingDecision.REVIEW
    assert result.executed is False
    assert executor.calls == []
    assert result.as_dict()["execution"] is None
    assert result.as_dict()["plan"]["id"] == "plan-1"


@pytest.mark.asyncio
async def test_rejected_plan_is_not_executed():
    executor = ScriptedStepExecutor()
    provider = StaticPlanProvider(make_plan(("lookup", [])))

    with pytest.raises(PlanRejectedError):
        await _pipeline(executor).run(
            "list facility ABC",
            plan_provider=provider,
            agent_scores=CONFIDENT,
            critique_recommendation="reject",
        )

    assert executor.calls == []
