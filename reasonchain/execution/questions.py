from __future__ import annotations

from typing import Literal, Protocol

from pydantic import BaseModel, Field

from ..agents.capability import ModelCapability
from ..core.exceptions import LLMCallError
from ..core.logging import get_logger
from ..schemas.plans import ErrorType, ExecutionQuestion, PlanStep, QuestionContext
from .state import ExecutionState, get_progress

logger = get_logger(name=__name__)

QUESTION_SYSTEM_PROMPT = (
    "Write one clear question for the user that would let a failed plan step succeed. "
    'Reply with JSON: {"question": "...", "category": "missing-data|error-recovery|coordination|ambiguity|user-choice", '
    '"priority": "low|medium|high", "suggestion": "<optional>"}.'
)

CATEGORY_BY_ERROR: dict[ErrorType | None, str] = {
    ErrorType.VALIDATION_ERROR: "missing-data",
    ErrorType.COORDINATION_ERROR: "coordination",
    ErrorType.TOOL_ERROR: "error-recovery",
    ErrorType.TIMEOUT: "error-recovery",
    None: "error-recovery",
}


class QuestionReply(BaseModel):
    question: str = Field(min_length=1)
    category: Literal["missing-data", "error-recovery", "coordination", "ambiguity", "user-choice"] = "error-recovery"
    priority: Literal["low", "medium", "high"] = "medium"
    suggestion: str | None = None


class QuestionSource(Protocol):
    async def generate_error_question(
        self,
        error: str,
        error_type: ErrorType | None,
        step: PlanStep,
        state: ExecutionState,
    ) -> ExecutionQuestion | None:
        ...


class QuestionGenerator:
    """Builds the question shown to the user when a run pauses.

    Returns ``None`` once a step has been asked about ``max_questions_per_step``
    times so a resumed run cannot pause forever on the same step.
    """

    def __init__(self, *, capability: ModelCapability | None = None, max_questions_per_step: int = 2) -> None:
        self._capability = capability
        self._max_questions_per_step = max_questions_per_step

    async def generate_error_question(
        self,
        error: str,
        error_type: ErrorType | None,
        step: PlanStep,
        state: ExecutionState,
    ) -> ExecutionQuestion | None:
        asked = sum(1 for question in state.questions_asked if question.context.step_id == step.id)
        if asked >= self._max_questions_per_step:
            logger.info("execution_question_limit_reached", step_id=step.id, asked=asked)
            return None

        progress = get_progress(state)
        context = QuestionContext(
            step_id=step.id,
            step_order=step.order,
            what_failed=error,
            what_was_tried=f"Called {step.action} with {step.parameters}",
            current_state=f"{progress.completed}/{progress.total} steps executed",
        )
        if self._capability is not None and self._capability.available:
            try:
                reply = await self._capability.call_structured(
                    self._build_prompt(error, error_type, step, state),
                    QuestionReply,
                    system_prompt=QUESTION_SYSTEM_PROMPT,
                    temperature=0.3,
                    max_tokens=300,
                )
            except LLMCallError as exc:
                logger.warning("execution_question_llm_failed", step_id=step.id, error=str(exc))
            else:
                return ExecutionQuestion(
                    question=reply.question,
                    category=reply.category,
                    priority=reply.priority,
                    context=context.model_copy(update={"suggestion": reply.suggestion}),
                )
        return self.fallback_question(error, error_type, step, state, context)

    @staticmethod
    def fallback_question(
        error: str,
        error_type: ErrorType | None,
        step: PlanStep,
        state: ExecutionState,
        context: QuestionContext,
    ) -> ExecutionQuestion:
        has_dependents = any(step.id in other.dependencies for other in state.plan.steps)
        description = step.description or step.action
        if error_type is ErrorType.VALIDATION_ERROR:
            text = f"Step {step.order} ({description}) is missing or has invalid input: {error}. What values should it use?"
        elif error_type is ErrorType.COORDINATION_ERROR:
            text = f"Step {step.order} ({description}) could not use the output of an earlier step: {error}. How should it proceed?"
        else:
            text = f"Step {step.order} ({description}) failed: {error}. Should it be retried with different parameters, or skipped?"
        return ExecutionQuestion(
            question=text,
            category=CATEGORY_BY_ERROR.get(error_type, "error-recovery"),  # type: ignore[arg-type]
            priority="high" if has_dependents else "medium",
            context=context,
        )

    @staticmethod
    def _build_prompt(error: str, error_type: ErrorType | None, step: PlanStep, state: ExecutionState) -> str:
        return "\n".join(
            [
                f"Goal: {state.plan.goal}",
                f"Step {step.order}: {step.description or step.action}",
                f"Tool: {step.action}",
                f"Parameters: {step.parameters}",
                f"Expected outcome: {step.expected_outcome or 'n/a'}",
                f"Error type: {error_type.value if error_type else 'unknown'}",
                f"Error: {error}",
            ]
        )
