from __future__ import annotations

import asyncio
from dataclasses import dataclass

from ..agents.capability import ModelCapability
from ..core.config import Settings
from ..core.exceptions import PlanRejectedError
from ..core.logging import bind_request_id, clear_request_id, get_logger
from ..core.metrics import record_error_decision, record_run_status, record_step_outcome
from ..schemas.plans import (
    EXECUTOR_AGENT_NAME,
    Adaptation,
    ErrorType,
    ExecutionResult,
    ExecutorAgentOutput,
    Plan,
    PlanStep,
    RunStatus,
    UserFeedback,
)
from ..schemas.requests import RequestContext, add_agent_to_chain, new_request_context
from ..services.llm import LLMService
from ..services.storage import OutputStore, save_best_effort
from .errors import ErrorAction, ErrorHandler, ErrorPolicy
from .questions import QuestionGenerator, QuestionSource
from .state import (
    ExecutionState,
    all_steps_executed,
    apply_user_feedback,
    build_initial_state,
    build_step_context,
    get_ready_steps,
    mark_step_skipped,
    pending_steps,
    record_adaptation,
    record_error,
    record_question,
    to_plan_execution_result,
    update_state_after_step,
)
from .step_executor import StepExecutor, StepOutcome
from .validator import PlanValidator

logger = get_logger(name=__name__)


@dataclass(slots=True)
class ExecutionRun:
    """Final snapshot of a run plus the record handed downstream.

    Keep ``state`` to resume a paused run.
    """

    state: ExecutionState
    status: RunStatus
    output: ExecutorAgentOutput
    reasoning_passes: int = 1

    @property
    def requires_user_feedback(self) -> bool:
        return self.output.requires_user_feedback


@dataclass(slots=True)
class _Attempt:
    step: PlanStep
    outcome: StepOutcome
    unexpected: bool = False


class ExecutionEngine:
    """Runs a plan over its dependency graph until completion, pause, deadlock or stop.

    The engine reports failures in its output instead of raising. The single
    exception is a critique that rejects the plan, which prevents the run from
    starting at all.
    """

    def __init__(
        self,
        *,
        step_executor: StepExecutor,
        validator: PlanValidator | None = None,
        error_policy: ErrorPolicy | None = None,
        question_generator: QuestionSource | None = None,
        output_store: OutputStore | None = None,
        max_concurrency: int = 1,
    ) -> None:
        self._step_executor = step_executor
        self._validator = validator or PlanValidator()
        self._error_policy = error_policy or ErrorHandler()
        self._questions = question_generator or QuestionGenerator()
        self._output_store = output_store
        self._max_concurrency = max(1, max_concurrency)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        step_executor: StepExecutor,
        llm_service: LLMService | None = None,
        output_store: OutputStore | None = None,
    ) -> "ExecutionEngine":
        capability = ModelCapability(agent_name=EXECUTOR_AGENT_NAME, llm=llm_service) if llm_service is not None else None
        execution = settings.execution
        return cls(
            step_executor=step_executor,
            validator=PlanValidator(
                capability=capability,
                max_errors=execution.max_errors_before_stop,
                min_reasoning_passes=execution.checkpoint_min_reasoning_passes,
            ),
            error_policy=ErrorHandler(capability=capability),
            question_generator=QuestionGenerator(capability=capability),
            output_store=output_store,
            max_concurrency=execution.max_concurrency,
        )

    async def execute_plan(
        self,
        plan: Plan,
        *,
        reasoning_passes: int = 1,
        request_context: RequestContext | None = None,
        critique_recommendation: str | None = None,
    ) -> ExecutionRun:
        if critique_recommendation is not None and critique_recommendation.strip().lower() == "reject":
            raise PlanRejectedError(f"Plan {plan.id} was rejected by critique; execution not started")
        state = build_initial_state(plan)
        return await self._finish(
            state,
            reasoning_passes=reasoning_passes,
            request_context=request_context,
            critique_recommendation=critique_recommendation,
        )

    async def resume(
        self,
        state: ExecutionState,
        feedback: UserFeedback,
        *,
        reasoning_passes: int = 1,
        request_context: RequestContext | None = None,
        critique_recommendation: str | None = None,
    ) -> ExecutionRun:
        """Apply the user's answer to a paused run and continue it."""
        resumed = apply_user_feedback(state, feedback)
        logger.info("execution_resumed", plan_id=state.plan.id, question_id=feedback.question_id)
        return await self._finish(
            resumed,
            reasoning_passes=reasoning_passes,
            request_context=request_context,
            critique_recommendation=critique_recommendation,
        )

    async def _finish(
        self,
        state: ExecutionState,
        *,
        reasoning_passes: int,
        request_context: RequestContext | None,
        critique_recommendation: str | None,
    ) -> ExecutionRun:
        request_context = add_agent_to_chain(request_context or new_request_context(state.plan.goal), EXECUTOR_AGENT_NAME)
        bind_request_id(request_context.request_id)
        try:
            log = logger.bind(request_id=request_context.request_id, plan_id=state.plan.id)
            log.info("execution_started", steps=len(state.plan.steps), reasoning_passes=reasoning_passes)

            state, status = await self.run(state, reasoning_passes=reasoning_passes)

            execution_result = to_plan_execution_result(state, status)
            output = ExecutorAgentOutput(
                request_id=request_context.request_id,
                request_context=request_context,
                execution_result=execution_result,
                requires_user_feedback=status is RunStatus.PAUSED,
                critique_available=critique_recommendation is not None,
                critique_recommendation=critique_recommendation,
            )
            record_run_status(status=status.value)
            log.info(
                "execution_finished",
                status=status.value,
                overall_success=execution_result.overall_success,
                executed=len(state.executed_steps),
                errors=len(state.errors),
            )
            await save_best_effort(self._output_store, output)
            return ExecutionRun(state=state, status=status, output=output, reasoning_passes=reasoning_passes)
        finally:
            clear_request_id()

    async def run(self, state: ExecutionState, *, reasoning_passes: int = 1) -> tuple[ExecutionState, RunStatus]:
        """Drive the scheduling loop from ``state`` and return the final snapshot."""
        while True:
            ready = get_ready_steps(state.plan, state.executed_steps)
            if not ready:
                if all_steps_executed(state):
                    return state, RunStatus.COMPLETED
                blocked = pending_steps(state)
                orders = ", ".join(str(step.order) for step in blocked)
                logger.warning(
                    "execution_deadlock",
                    plan_id=state.plan.id,
                    blocked_steps=[step.id for step in blocked],
                )
                return record_error(state, f"Execution deadlock: Steps {orders} cannot execute"), RunStatus.DEADLOCKED

            if self._max_concurrency > 1 and len(ready) > 1:
                attempts = await self._execute_concurrently(ready, state)
            else:
                attempts = None

            for index, step in enumerate(ready):
                attempt = attempts[index] if attempts is not None else await self._execute_step(step, state)
                state, halt = await self._fold(attempt, state, reasoning_passes)
                if halt is not None:
                    return state, halt

    async def _execute_concurrently(self, ready: list[PlanStep], state: ExecutionState) -> list[_Attempt]:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def gated(step: PlanStep) -> _Attempt:
            async with semaphore:
                return await self._execute_step(step, state)

        return list(await asyncio.gather(*(gated(step) for step in ready)))

    async def _execute_step(self, step: PlanStep, state: ExecutionState) -> _Attempt:
        context = build_step_context(step, state)
        logger.debug("execution_step_started", step_id=step.id, action=step.action, order=step.order)
        try:
            outcome = await self._step_executor.execute(step, context)
        except Exception as exc:
            logger.exception("execution_step_unexpected_error", step_id=step.id, error=str(exc))
            result = ExecutionResult(
                step_id=step.id,
                step_order=step.order,
                success=False,
                error=f"Unexpected error: {exc}",
                error_type=ErrorType.TOOL_ERROR,
                tool_called=step.action,
                parameters_used=dict(step.parameters),
            )
            return _Attempt(step=step, outcome=StepOutcome(result=result), unexpected=True)
        return _Attempt(step=step, outcome=outcome)

    async def _fold(
        self,
        attempt: _Attempt,
        state: ExecutionState,
        reasoning_passes: int,
    ) -> tuple[ExecutionState, RunStatus | None]:
        step = attempt.step
        result = attempt.outcome.result
        state = update_state_after_step(state, result, attempt.outcome.plan_update)
        record_step_outcome(
            success=result.success,
            error_type=result.error_type.value if result.error_type else None,
            action=result.tool_called,
            duration=result.duration,
        )
        logger.info(
            "execution_step_completed",
            step_id=step.id,
            success=result.success,
            error_type=result.error_type.value if result.error_type else None,
            retries=result.retries,
        )
        if attempt.unexpected:
            return state, None

        checkpoint = await self._validator.checkpoint(state, result, reasoning_passes=reasoning_passes)
        if checkpoint.should_stop:
            logger.info("execution_checkpoint_stop", step_id=step.id, **checkpoint.as_dict())
            return state, RunStatus.COMPLETED if all_steps_executed(state) else RunStatus.STOPPED

        if not result.success:
            state, paused = await self._handle_failure(step, result, state)
            if paused:
                return state, RunStatus.PAUSED

        if checkpoint.goal_achieved:
            logger.info("execution_goal_achieved", step_id=step.id, remaining=len(pending_steps(state)))
            return state, RunStatus.COMPLETED
        return state, None

    async def _handle_failure(
        self,
        step: PlanStep,
        result: ExecutionResult,
        state: ExecutionState,
    ) -> tuple[ExecutionState, bool]:
        error = result.error or "unknown error"
        decision = await self._error_policy.decide(error, result.error_type, step, state, result)
        record_error_decision(decision=decision.action.value, source=decision.source)
        logger.info(
            "execution_error_decision",
            step_id=step.id,
            action=decision.action.value,
            source=decision.source,
            reasoning=decision.reasoning,
        )

        if decision.action is ErrorAction.ASK_USER:
            question = await self._questions.generate_error_question(error, result.error_type, step, state)
            if question is not None:
                return record_question(state, question), True
            return state, False
        if decision.action is ErrorAction.ADAPT:
            # Recorded for audit only; the plan itself is not rewritten.
            adaptation = Adaptation(step_id=step.id, reason=decision.reasoning or error, suggestion=decision.suggestion)
            return record_adaptation(state, adaptation), False
        if decision.action is ErrorAction.SKIP:
            return mark_step_skipped(state, step), False
        # RETRY: the step executor already spent its retry budget.
        return state, False
