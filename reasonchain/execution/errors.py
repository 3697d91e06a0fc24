from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal, Protocol

from pydantic import BaseModel

from ..agents.capability import ModelCapability
from ..core.exceptions import LLMCallError
from ..core.logging import get_logger
from ..schemas.plans import ErrorType, ExecutionResult, PlanStep
from .state import ExecutionState

logger = get_logger(name=__name__)


class ErrorAction(str, Enum):
    RETRY = "retry"
    ASK_USER = "ask-user"
    ADAPT = "adapt"
    SKIP = "skip"


DEFAULT_ACTIONS: dict[ErrorType | None, ErrorAction] = {
    ErrorType.TIMEOUT: ErrorAction.RETRY,
    ErrorType.TOOL_ERROR: ErrorAction.ASK_USER,
    ErrorType.VALIDATION_ERROR: ErrorAction.ASK_USER,
    ErrorType.COORDINATION_ERROR: ErrorAction.ASK_USER,
    None: ErrorAction.ASK_USER,
}

ERROR_SYSTEM_PROMPT = (
    "A plan step failed. Choose how execution should proceed: retry, ask-user, adapt or skip. "
    'Reply with JSON: {"decision": "...", "reasoning": "<short>", "suggestion": "<optional>"}.'
)


class ErrorReply(BaseModel):
    decision: Literal["retry", "ask-user", "adapt", "skip"]
    reasoning: str = ""
    suggestion: str | None = None


@dataclass(slots=True)
class ErrorDecision:
    action: ErrorAction
    reasoning: str
    suggestion: str | None = None
    source: str = "rules"


class ErrorPolicy(Protocol):
    async def decide(
        self,
        error: str,
        error_type: ErrorType | None,
        step: PlanStep,
        state: ExecutionState,
        result: ExecutionResult,
    ) -> ErrorDecision:
        ...


class ErrorHandler:
    """Decides what happens after a failed step; rules apply when no model answers."""

    def __init__(self, *, capability: ModelCapability | None = None) -> None:
        self._capability = capability

    @staticmethod
    def rule_based(error_type: ErrorType | None) -> ErrorDecision:
        action = DEFAULT_ACTIONS.get(error_type, ErrorAction.ASK_USER)
        label = error_type.value if error_type else "unclassified error"
        return ErrorDecision(action=action, reasoning=f"Default handling for {label}: {action.value}.")

    async def decide(
        self,
        error: str,
        error_type: ErrorType | None,
        step: PlanStep,
        state: ExecutionState,
        result: ExecutionResult,
    ) -> ErrorDecision:
        if self._capability is None or not self._capability.available:
            return self.rule_based(error_type)
        prompt = "\n".join(
            [
                f"Goal: {state.plan.goal}",
                f"Failed step {step.order}: {step.description or step.action}",
                f"Tool: {step.action}",
                f"Parameters: {result.parameters_used}",
                f"Error type: {error_type.value if error_type else 'unknown'}",
                f"Error: {error}",
                f"Attempts already made by the executor: {result.retries + 1}",
                f"Steps executed so far: {len(state.executed_steps)}/{len(state.plan.steps)}",
            ]
        )
        try:
            reply = await self._capability.call_structured(
                prompt,
                ErrorReply,
                system_prompt=ERROR_SYSTEM_PROMPT,
                temperature=0.1,
                max_tokens=300,
            )
        except LLMCallError as exc:
            logger.warning("execution_error_policy_llm_failed", step_id=step.id, error=str(exc))
            return self.rule_based(error_type)
        return ErrorDecision(
            action=ErrorAction(reply.decision),
            reasoning=reply.reasoning,
            suggestion=reply.suggestion,
            source="llm",
        )
