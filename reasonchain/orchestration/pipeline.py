from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from ..complexity.orchestrator import ComplexityDetector
from ..core.logging import get_logger
from ..execution.engine import ExecutionEngine, ExecutionRun
from ..schemas.complexity import ComplexityDetectorOutput
from ..schemas.confidence import ConfidenceScore, ConfidenceScorerOutput, RoutingDecision
from ..schemas.plans import Plan
from ..schemas.requests import RequestContext, new_request_context
from ..services.scoring import ConfidenceScorer

logger = get_logger(name=__name__)


class PlanProvider(Protocol):
    """Produces the plan for a query; planning itself lives outside this package."""

    async def create_plan(
        self,
        query: str,
        *,
        complexity: ComplexityDetectorOutput,
        request_context: RequestContext,
    ) -> Plan:
        ...


@dataclass(slots=True)
class PipelineResult:
    complexity: ComplexityDetectorOutput
    plan: Plan
    confidence: ConfidenceScorerOutput
    execution: ExecutionRun | None = None

    @property
    def executed(self) -> bool:
        return self.execution is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "complexity": self.complexity.model_dump(mode="json"),
            "plan": self.plan.model_dump(mode="json"),
            "confidence": self.confidence.model_dump(mode="json"),
            "execution": self.execution.output.model_dump(mode="json") if self.execution else None,
        }


class ReasoningPipeline:
    """Detect complexity, fetch a plan, score confidence and execute when the score allows it."""

    def __init__(
        self,
        *,
        detector: ComplexityDetector,
        scorer: ConfidenceScorer,
        engine: ExecutionEngine,
    ) -> None:
        self._detector = detector
        self._scorer = scorer
        self._engine = engine

    async def run(
        self,
        query: str,
        *,
        plan_provider: PlanProvider,
        agent_scores: Sequence[ConfidenceScore] = (),
        critique_recommendation: str | None = None,
        request_context: RequestContext | None = None,
    ) -> PipelineResult:
        context = request_context or new_request_context(query)
        complexity = await self._detector.detect(query, request_context=context)
        passes = complexity.complexity.reasoning_passes

        plan = await plan_provider.create_plan(
            query,
            complexity=complexity,
            request_context=complexity.request_context,
        )
        logger.info(
            "pipeline_plan_received",
            request_id=context.request_id,
            plan_id=plan.id,
            steps=len(plan.steps),
            reasoning_passes=passes,
        )

        confidence = await self._scorer.evaluate(agent_scores, request_context=complexity.request_context)
        if confidence.decision is not RoutingDecision.EXECUTE:
            logger.info(
                "pipeline_execution_withheld",
                request_id=context.request_id,
                decision=confidence.decision.value,
                weighted_confidence=confidence.weighted_confidence,
            )
            return PipelineResult(complexity=complexity, plan=plan, confidence=confidence)

        execution = await self._engine.execute_plan(
            plan,
            reasoning_passes=passes,
            request_context=confidence.request_context,
            critique_recommendation=critique_recommendation,
        )
        return PipelineResult(complexity=complexity, plan=plan, confidence=confidence, execution=execution)
