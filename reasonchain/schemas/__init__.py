from .complexity import ComplexityDetectorOutput, ComplexityExample, ComplexityScore, DetectionMethod
from .confidence import ConfidenceScore, ConfidenceScorerOutput, RoutingDecision, ScorePattern
from .plans import (
    Adaptation,
    ErrorType,
    ExecutionQuestion,
    ExecutionResult,
    ExecutorAgentOutput,
    Plan,
    PlanExecutionResult,
    PlanStep,
    PlanUpdate,
    RunStatus,
    UserFeedback,
)
from .requests import RequestContext, add_agent_to_chain, new_request_context

__all__ = [
    "Adaptation",
    "ComplexityDetectorOutput",
    "ComplexityExample",
    "ComplexityScore",
    "ConfidenceScore",
    "ConfidenceScorerOutput",
    "DetectionMethod",
    "ErrorType",
    "ExecutionQuestion",
    "ExecutionResult",
    "ExecutorAgentOutput",
    "Plan",
    "PlanExecutionResult",
    "PlanStep",
    "PlanUpdate",
    "RequestContext",
    "RoutingDecision",
    "RunStatus",
    "ScorePattern",
    "UserFeedback",
    "add_agent_to_chain",
    "new_request_context",
]
