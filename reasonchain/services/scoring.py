from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from ..agents.capability import ModelCapability
from ..core.exceptions import LLMCallError
from ..core.logging import bind_request_id, clear_request_id, get_logger
from ..core.metrics import record_routing_decision
from ..schemas.confidence import (
    CONFIDENCE_AGENT_NAME,
    AgentAnalysis,
    ConfidenceBreakdown,
    ConfidenceScore,
    ConfidenceScorerOutput,
    RoutingDecision,
    ScorePattern,
)
from ..schemas.requests import RequestContext, add_agent_to_chain, new_request_context
from .llm import LLMService
from .storage import OutputStore, save_best_effort

logger = get_logger(name=__name__)

AGENT_WEIGHTS: Mapping[str, float] = {
    "thought-agent": 0.25,
    "planner-agent": 0.30,
    "critic-agent": 0.35,
    "meta-agent": 0.10,
}
DEFAULT_AGENT_WEIGHT = 0.10

# Lower bound of each band, inclusive. Fixed so runs stay comparable.
DECISION_THRESHOLDS: tuple[tuple[RoutingDecision, float], ...] = (
    (RoutingDecision.EXECUTE, 0.8),
    (RoutingDecision.REVIEW, 0.6),
    (RoutingDecision.RETHINK, 0.4),
)
ESCALATE_THRESHOLD = 0.2

CONSISTENT_VARIANCE = 0.01
ALL_HIGH_SCORE = 0.7
ALL_LOW_SCORE = 0.4
CONCERN_SCORE = 0.5
CONCERN_WEIGHT = 0.25

BREAKDOWN_GROUPS: Mapping[str, tuple[str, ...]] = {
    "reasoning": ("thought-agent", "meta-agent"),
    "planning": ("planner-agent", "critic-agent"),
    "execution": ("executor-agent",),
}

ROUTING_RECOMMENDATIONS: Mapping[RoutingDecision, str] = {
    RoutingDecision.EXECUTE: "High confidence: proceed with execution of the plan.",
    RoutingDecision.REVIEW: "Moderate confidence: have the plan reviewed before executing it.",
    RoutingDecision.RETHINK: "Low confidence: return to the reasoning stage and rethink the approach.",
    RoutingDecision.ESCALATE: "Very low confidence: escalate to a human operator.",
}


KNOWN_AGENTS = frozenset({*AGENT_WEIGHTS, "executor-agent"})


def canonical_agent_name(name: str) -> str:
    key = name.strip().lower()
    if not key.endswith("-agent") and f"{key}-agent" in KNOWN_AGENTS:
        return f"{key}-agent"
    return key


def agent_weight(name: str) -> float:
    return AGENT_WEIGHTS.get(canonical_agent_name(name), DEFAULT_AGENT_WEIGHT)


def decide_route(weighted_confidence: float) -> RoutingDecision:
    for decision, threshold in DECISION_THRESHOLDS:
        if weighted_confidence >= threshold:
            return decision
    return RoutingDecision.ESCALATE


def threshold_for(decision: RoutingDecision) -> float:
    for candidate, threshold in DECISION_THRESHOLDS:
        if candidate is decision:
            return threshold
    return ESCALATE_THRESHOLD


@dataclass(slots=True)
class ConfidenceAssessment:
    overall_confidence: float
    weighted_confidence: float
    decision: RoutingDecision
    variance: float
    pattern: ScorePattern
    breakdown: ConfidenceBreakdown
    analysis: AgentAnalysis
    scores: list[ConfidenceScore] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "overall_confidence": self.overall_confidence,
            "weighted_confidence": self.weighted_confidence,
            "decision": self.decision.value,
            "variance": self.variance,
            "pattern": self.pattern.value,
            "breakdown": self.breakdown.model_dump(),
            "analysis": self.analysis.model_dump(),
        }


# Only absorbs float error from the weight division; reported values keep 6 places.
DECISION_PRECISION = 12

class ConfidenceScorer:
    """Combine per-agent confidence into one routing decision.

    The decision depends only on the weighted score. Reasoning text comes from
    the model when one is available and from a fixed template otherwise.
    """

    def __init__(
        self,
        *,
        capability: ModelCapability | None = None,
        output_store: OutputStore | None = None,
    ) -> None:
        self._capability = capability
        self._output_store = output_store

    @classmethod
    def from_settings(
        cls,
        *,
        llm_service: LLMService | None = None,
        output_store: OutputStore | None = None,
    ) -> "ConfidenceScorer":
        capability = (
            ModelCapability(agent_name=CONFIDENCE_AGENT_NAME, llm=llm_service) if llm_service is not None else None
        )
        return cls(capability=capability, output_store=output_store)

    def score(self, scores: Sequence[ConfidenceScore]) -> ConfidenceAssessment:
        values = [entry.score for entry in scores]
        weights = [agent_weight(entry.agent_name) for entry in scores]

        if scores:
            total_weight = sum(weights)
            weighted = sum(value * weight for value, weight in zip(values, weights)) / total_weight
            overall = statistics.fmean(values)
            variance = statistics.pvariance(values)
        else:
            weighted = 0.5
            overall = 0.5
            variance = 0.0

        return ConfidenceAssessment(
            overall_confidence=round(overall, 6),
            weighted_confidence=round(weighted, 6),
            decision=decide_route(round(weighted, DECISION_PRECISION)),
            variance=round(variance, 6),
            pattern=self._pattern(values, variance),
            breakdown=self._breakdown(scores),
            analysis=self._analysis(scores),
            scores=list(scores),
        )

    async def evaluate(
        self,
        scores: Sequence[ConfidenceScore],
        *,
        request_context: RequestContext | None = None,
    ) -> ConfidenceScorerOutput:
        request_context = add_agent_to_chain(request_context or new_request_context(), CONFIDENCE_AGENT_NAME)
        bind_request_id(request_context.request_id)
        try:
            assessment = self.score(scores)
            reasoning = await self._reasoning(assessment)
            output = ConfidenceScorerOutput(
                request_id=request_context.request_id,
                request_context=request_context,
                overall_confidence=assessment.overall_confidence,
                weighted_confidence=assessment.weighted_confidence,
                decision=assessment.decision,
                confidence_breakdown=assessment.breakdown,
                agent_analysis=assessment.analysis,
                score_variance=assessment.variance,
                score_pattern=assessment.pattern,
                routing_recommendation=ROUTING_RECOMMENDATIONS[assessment.decision],
                threshold_used=threshold_for(assessment.decision),
                reasoning=reasoning,
                agent_scores=list(scores),
            )
            record_routing_decision(decision=assessment.decision.value, pattern=assessment.pattern.value)
            logger.info(
                "confidence_scored",
                request_id=request_context.request_id,
                weighted_confidence=assessment.weighted_confidence,
                decision=assessment.decision.value,
                pattern=assessment.pattern.value,
                agents=len(scores),
            )
            await save_best_effort(self._output_store, output)
            return output
        finally:
            clear_request_id()

    @staticmethod
    def _pattern(values: Sequence[float], variance: float) -> ScorePattern:
        if not values:
            return ScorePattern.MIXED
        if variance < CONSISTENT_VARIANCE:
            return ScorePattern.CONSISTENT
        if all(value >= ALL_HIGH_SCORE for value in values):
            return ScorePattern.ALL_HIGH
        if all(value <= ALL_LOW_SCORE for value in values):
            return ScorePattern.ALL_LOW
        return ScorePattern.MIXED

    @staticmethod
    def _breakdown(scores: Sequence[ConfidenceScore]) -> ConfidenceBreakdown:
        grouped: dict[str, float] = {}
        for group, members in BREAKDOWN_GROUPS.items():
            matching = [entry.score for entry in scores if canonical_agent_name(entry.agent_name) in members]
            grouped[group] = round(statistics.fmean(matching), 4) if matching else 0.5
        return ConfidenceBreakdown(**grouped)

    @staticmethod
    def _analysis(scores: Sequence[ConfidenceScore]) -> AgentAnalysis:
        if not scores:
            return AgentAnalysis()
        primary = max(scores, key=lambda entry: entry.score * agent_weight(entry.agent_name))
        lowest = min(scores, key=lambda entry: entry.score)
        highest = max(scores, key=lambda entry: entry.score)
        concerns = [
            f"{entry.agent_name} ({round(entry.score * 100)}%)"
            for entry in scores
            if entry.score < CONCERN_SCORE and agent_weight(entry.agent_name) >= CONCERN_WEIGHT
        ]
        return AgentAnalysis(
            primary_driver=primary.agent_name,
            lowest_confidence=lowest.agent_name,
            highest_confidence=highest.agent_name,
            concerns=concerns,
        )

    @staticmethod
    def fallback_reasoning(assessment: ConfidenceAssessment) -> str:
        agents = ", ".join(entry.agent_name for entry in assessment.scores) or "no agents"
        return (
            f"Overall weighted confidence: {round(assessment.weighted_confidence * 100)}% "
            f"based on scores from {agents}. Decision: {assessment.decision.value}."
        )

    async def _reasoning(self, assessment: ConfidenceAssessment) -> str:
        fallback = self.fallback_reasoning(assessment)
        if self._capability is None or not self._capability.available or not assessment.scores:
            return fallback
        lines = [
            f"- {entry.agent_name}: {entry.score:.2f} (weight {agent_weight(entry.agent_name):.2f}) {entry.reasoning}".rstrip()
            for entry in assessment.scores
        ]
        prompt = (
            "Explain in two or three sentences why the combined confidence below leads to the stated decision.\n"
            f"Weighted confidence: {assessment.weighted_confidence:.2f}\n"
            f"Decision: {assessment.decision.value}\n"
            f"Score pattern: {assessment.pattern.value} (variance {assessment.variance:.4f})\n"
            "Agent scores:\n" + "\n".join(lines)
        )
        try:
            text = await self._capability.call_model(prompt, temperature=0.3, max_tokens=200)
        except LLMCallError as exc:
            logger.warning("confidence_reasoning_failed", error=str(exc))
            return fallback
        return text.strip() or fallback
