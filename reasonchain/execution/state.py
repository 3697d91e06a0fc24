"""Pure transitions over an immutable execution snapshot.

Every function returns a new :class:`ExecutionState`; none of them touch their
inputs. Only the execution engine that created a snapshot advances it.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from ..schemas.plans import (
    Adaptation,
    ExecutionQuestion,
    ExecutionResult,
    Plan,
    PlanExecutionResult,
    PlanStep,
    PlanUpdate,
    RunStatus,
    UserFeedback,
)


def _empty_mapping() -> Mapping[str, Any]:
    return MappingProxyType({})


def _frozen_mapping(values: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(values))


def step_error_prefix(step: PlanStep) -> str:
    return f"Step {step.order}: "


@dataclass(frozen=True, slots=True)
class ExecutionState:
    plan: Plan
    executed_steps: frozenset[str] = frozenset()
    partial_results: Mapping[str, Any] = field(default_factory=_empty_mapping)
    execution_results: tuple[ExecutionResult, ...] = ()
    errors: tuple[str, ...] = ()
    questions_asked: tuple[ExecutionQuestion, ...] = ()
    adaptations: tuple[Adaptation, ...] = ()
    plan_updates: tuple[PlanUpdate, ...] = ()
    skipped_steps: frozenset[str] = frozenset()
    user_answers: Mapping[str, str] = field(default_factory=_empty_mapping)
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True, slots=True)
class StepContext:
    """What a step executor sees about the run when executing one step."""

    step: PlanStep
    goal: str
    dependency_results: Mapping[str, Any]
    partial_results: Mapping[str, Any]
    user_answer: str | None
    completed_steps: int
    total_steps: int


@dataclass(frozen=True, slots=True)
class ExecutionProgress:
    completed: int
    total: int
    failed: int
    skipped: int

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 100.0
        return round(self.completed / self.total * 100, 2)

    def as_dict(self) -> dict[str, float | int]:
        return {
            "completed": self.completed,
            "total": self.total,
            "failed": self.failed,
            "skipped": self.skipped,
            "percentage": self.percentage,
        }


def build_initial_state(plan: Plan, *, start_time: datetime | None = None) -> ExecutionState:
    return ExecutionState(plan=plan, start_time=start_time or datetime.now(timezone.utc))


def build_step_context(step: PlanStep, state: ExecutionState) -> StepContext:
    dependency_results = {dep: state.partial_results[dep] for dep in step.dependencies if dep in state.partial_results}
    return StepContext(
        step=step,
        goal=state.plan.goal,
        dependency_results=_frozen_mapping(dependency_results),
        partial_results=state.partial_results,
        user_answer=state.user_answers.get(step.id),
        completed_steps=len(state.executed_steps),
        total_steps=len(state.plan.steps),
    )


def update_state_after_step(
    state: ExecutionState,
    result: ExecutionResult,
    plan_update: PlanUpdate | None = None,
) -> ExecutionState:
    partial_results = dict(state.partial_results)
    errors = state.errors
    if result.success:
        partial_results[result.step_id] = result.result
    else:
        errors = (*errors, f"Step {result.step_order}: {result.error or 'unknown error'}")

    plan = state.plan
    plan_updates = state.plan_updates
    if plan_update is not None:
        plan = plan.with_step_parameters(plan_update.step_id, plan_update.parameters)
        plan_updates = (*plan_updates, plan_update)

    return replace(
        state,
        plan=plan,
        executed_steps=state.executed_steps | {result.step_id},
        partial_results=_frozen_mapping(partial_results),
        execution_results=(*state.execution_results, result),
        errors=errors,
        plan_updates=plan_updates,
    )


def get_ready_steps(plan: Plan, executed: Iterable[str]) -> list[PlanStep]:
    """Steps not yet executed whose dependencies have all been executed."""
    done = frozenset(executed)
    ready = [
        step
        for step in plan.steps
        if step.id not in done and all(dep in done for dep in step.dependencies)
    ]
    return sorted(ready, key=lambda step: step.order)


def get_progress(state: ExecutionState) -> ExecutionProgress:
    failed = {result.step_id for result in state.execution_results if not result.success}
    failed -= state.skipped_steps
    failed &= state.executed_steps
    return ExecutionProgress(
        completed=len(state.executed_steps),
        total=len(state.plan.steps),
        failed=len(failed),
        skipped=len(state.skipped_steps),
    )


def all_steps_executed(state: ExecutionState) -> bool:
    return all(step.id in state.executed_steps for step in state.plan.steps)


def is_goal_achieved(state: ExecutionState) -> bool:
    return all_steps_executed(state) and not state.errors


def pending_steps(state: ExecutionState) -> list[PlanStep]:
    return [step for step in state.plan.steps if step.id not in state.executed_steps]


def mark_step_skipped(state: ExecutionState, step: PlanStep) -> ExecutionState:
    """Keep the step executed but stop its failure from counting against the run."""
    prefix = step_error_prefix(step)
    return replace(
        state,
        executed_steps=state.executed_steps | {step.id},
        errors=tuple(error for error in state.errors if not error.startswith(prefix)),
        skipped_steps=state.skipped_steps | {step.id},
    )


def record_question(state: ExecutionState, question: ExecutionQuestion) -> ExecutionState:
    return replace(state, questions_asked=(*state.questions_asked, question))


def record_adaptation(state: ExecutionState, adaptation: Adaptation) -> ExecutionState:
    return replace(state, adaptations=(*state.adaptations, adaptation))


def record_error(state: ExecutionState, message: str) -> ExecutionState:
    return replace(state, errors=(*state.errors, message))


def apply_user_feedback(state: ExecutionState, feedback: UserFeedback) -> ExecutionState:
    """Answer a pending question and re-queue the step it was asked about."""
    question = next((item for item in state.questions_asked if item.id == feedback.question_id), None)
    if question is None:
        raise ValueError(f"Unknown question id '{feedback.question_id}'")
    step = state.plan.get_step(question.context.step_id)
    if step is None:
        raise ValueError(f"Question '{question.id}' refers to unknown step '{question.context.step_id}'")

    answered = question.model_copy(update={"answer": feedback.answer})
    questions = tuple(answered if item.id == question.id else item for item in state.questions_asked)
    prefix = step_error_prefix(step)

    plan = state.plan
    plan_updates = state.plan_updates
    if feedback.parameter_overrides:
        update = PlanUpdate(
            step_id=step.id,
            parameters=dict(feedback.parameter_overrides),
            reason=f"User feedback: {feedback.answer}",
        )
        plan = plan.with_step_parameters(step.id, update.parameters)
        plan_updates = (*plan_updates, update)

    partial_results = {key: value for key, value in state.partial_results.items() if key != step.id}
    return replace(
        state,
        plan=plan,
        executed_steps=state.executed_steps - {step.id},
        partial_results=_frozen_mapping(partial_results),
        errors=tuple(error for error in state.errors if not error.startswith(prefix)),
        questions_asked=questions,
        plan_updates=plan_updates,
        skipped_steps=state.skipped_steps - {step.id},
        user_answers=_frozen_mapping({**state.user_answers, step.id: feedback.answer}),
    )


def to_plan_execution_result(
    state: ExecutionState,
    status: RunStatus,
    *,
    finished_at: datetime | None = None,
) -> PlanExecutionResult:
    finished = finished_at or datetime.now(timezone.utc)
    return PlanExecutionResult(
        plan_id=state.plan.id,
        status=status,
        overall_success=is_goal_achieved(state),
        steps=list(state.execution_results),
        partial_results=dict(state.partial_results),
        errors=list(state.errors),
        total_duration=round(max((finished - state.start_time).total_seconds(), 0.0), 4),
        questions_asked=list(state.questions_asked),
        adaptations=list(state.adaptations),
        plan_updates=list(state.plan_updates),
        executed_steps=[step.id for step in state.plan.steps if step.id in state.executed_steps],
        blocked_steps=[step.id for step in pending_steps(state)],
    )
