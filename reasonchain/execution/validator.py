from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, Field

from ..agents.capability import ModelCapability
from ..core.exceptions import LLMCallError
from ..core.logging import get_logger
from ..schemas.plans import ExecutionResult
from .state import ExecutionState, get_progress, is_goal_achieved, pending_steps

logger = get_logger(name=__name__)

CHECKPOINT_SYSTEM_PROMPT = (
    "You supervise the execution of a plan. After each step decide whether execution should continue. "
    'Reply with JSON: {"should_continue": bool, "should_adapt": bool, "should_replan": bool, '
    '"goal_achieved": bool, "reasoning": "<short>"}.'
)


class CheckpointReply(BaseModel):
    should_continue: bool
    should_adapt: bool = False
    should_replan: bool = False
    goal_achieved: bool = False
    reasoning: str = Field(default="", max_length=2000)


@dataclass(slots=True)
class CheckpointDecision:
    should_continue: bool
    should_adapt: bool
    should_replan: bool
    goal_achieved: bool
    reasoning: str
    source: str

    @property
    def should_stop(self) -> bool:
        return not (self.should_continue or self.should_adapt or self.should_replan)

    def as_dict(self) -> dict[str, object]:
        return {
            "should_continue": self.should_continue,
            "should_adapt": self.should_adapt,
            "should_replan": self.should_replan,
            "goal_achieved": self.goal_achieved,
            "reasoning": self.reasoning,
            "source": self.source,
        }


class PlanValidator:
    """Meta-reasoning checkpoint run after every step."""

    def __init__(
        self,
        *,
        capability: ModelCapability | None = None,
        max_errors: int = 3,
        min_reasoning_passes: int = 2,
    ) -> None:
        self._capability = capability
        self._max_errors = max_errors
        self._min_reasoning_passes = min_reasoning_passes

    def rule_based(self, state: ExecutionState, last_result: ExecutionResult | None) -> CheckpointDecision:
        remaining = bool(pending_steps(state))
        error_count = len(state.errors)
        should_continue = remaining and error_count < self._max_errors
        should_adapt = last_result is not None and not last_result.success
        if not remaining:
            reasoning = "All steps have been executed."
        elif not should_continue:
            reasoning = f"{error_count} errors reached the limit of {self._max_errors}."
        else:
            reasoning = f"{len(pending_steps(state))} step(s) remain."
        return CheckpointDecision(
            should_continue=should_continue,
            should_adapt=should_adapt,
            should_replan=False,
            goal_achieved=is_goal_achieved(state),
            reasoning=reasoning,
            source="rules",
        )

    async def checkpoint(
        self,
        state: ExecutionState,
        last_result: ExecutionResult | None,
        *,
        reasoning_passes: int = 1,
    ) -> CheckpointDecision:
        fallback = self.rule_based(state, last_result)
        if (
            self._capability is None
            or not self._capability.available
            or reasoning_passes < self._min_reasoning_passes
        ):
            return fallback
        try:
            reply = await self._capability.call_structured(
                self._build_prompt(state, last_result),
                CheckpointReply,
                system_prompt=CHECKPOINT_SYSTEM_PROMPT,
                temperature=0.1,
                max_tokens=300,
            )
        except LLMCallError as exc:
            logger.warning("execution_checkpoint_llm_failed", plan_id=state.plan.id, error=str(exc))
            return fallback
        return CheckpointDecision(
            should_continue=reply.should_continue,
            should_adapt=reply.should_adapt,
            should_replan=reply.should_replan,
            goal_achieved=reply.goal_achieved,
            reasoning=reply.reasoning,
            source="llm",
        )

    @staticmethod
    def _build_prompt(state: ExecutionState, last_result: ExecutionResult | None) -> str:
        progress = get_progress(state)
        lines = [
            f"Goal: {state.plan.goal}",
            f"Progress: {progress.completed}/{progress.total} steps executed, {progress.failed} failed.",
        ]
        if last_result is not None:
            if last_result.success:
                status = "succeeded"
            else:
                kind = last_result.error_type.value if last_result.error_type else "error"
                status = f"failed ({kind}: {last_result.error})"
            lines.append(f"Last step {last_result.step_order} ({last_result.tool_called}) {status}.")
        remaining = pending_steps(state)
        if remaining:
            lines.append("Remaining steps:")
            lines.extend(f"- {step.order}. {step.description or step.action}" for step in remaining)
        if state.errors:
            lines.append("Errors so far:")
            lines.extend(f"- {error}" for error in state.errors)
        return "\n".join(lines)
