from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol

from tenacity import AsyncRetrying, retry_if_not_exception_type, stop_after_attempt, wait_incrementing

from ..agents.capability import ModelCapability
from ..core.config import ExecutionSettings
from ..core.exceptions import CoordinationError, StepExecutionError, StepTimeoutError, StepValidationError
from ..core.logging import get_logger
from ..schemas.plans import ErrorType, ExecutionResult, PlanStep, PlanUpdate
from .parameters import ParameterResolver
from .state import StepContext
from .tools import ToolRegistry

logger = get_logger(name=__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*steps\.(?P<step>[\w\-]+)(?:\.(?P<key>[\w\-]+))?\s*\}\}")


@dataclass(slots=True)
class ToolResponse:
    """Tool output that also asks for a parameter change on a later step."""

    value: Any
    plan_update: PlanUpdate | None = None


@dataclass(slots=True)
class StepOutcome:
    result: ExecutionResult
    plan_update: PlanUpdate | None = None


class StepExecutor(Protocol):
    async def execute(self, step: PlanStep, context: StepContext) -> StepOutcome:
        ...


ToolInvoker = Callable[[str, dict[str, Any], StepContext], Awaitable[Any]]


def resolve_parameters(parameters: Mapping[str, Any], partial_results: Mapping[str, Any]) -> dict[str, Any]:
    """Substitute ``{{steps.<id>}}`` / ``{{steps.<id>.<key>}}`` references with earlier results."""
    return {key: _resolve_value(value, partial_results) for key, value in parameters.items()}


def _lookup(match: re.Match[str], partial_results: Mapping[str, Any]) -> Any:
    step_id = match.group("step")
    if step_id not in partial_results:
        raise StepValidationError(f"Parameter references result of step '{step_id}' which is not available")
    value = partial_results[step_id]
    key = match.group("key")
    if key is None:
        return value
    if isinstance(value, Mapping) and key in value:
        return value[key]
    raise StepValidationError(f"Result of step '{step_id}' has no field '{key}'")


def _resolve_value(value: Any, partial_results: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole is not None:
            return _lookup(whole, partial_results)
        return _PLACEHOLDER.sub(lambda match: str(_lookup(match, partial_results)), value)
    if isinstance(value, Mapping):
        return {key: _resolve_value(item, partial_results) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_resolve_value(item, partial_results) for item in value]
    return value


def classify_error(exc: BaseException) -> ErrorType:
    if isinstance(exc, (asyncio.TimeoutError, StepTimeoutError)):
        return ErrorType.TIMEOUT
    if isinstance(exc, StepExecutionError):
        return ErrorType(exc.error_type)
    return ErrorType.TOOL_ERROR


class ToolStepExecutor:
    """Runs a step by invoking its tool with bounded retries.

    Required parameters still missing after placeholder substitution go through
    the ``ParameterResolver`` first. ``tool-error`` and ``timeout`` failures are
    retried up to ``max_attempts`` with a linearly growing wait; validation and
    coordination errors fail at once.
    Failures come back as unsuccessful results, never as exceptions.
    """

    def __init__(
        self,
        invoker: ToolInvoker,
        *,
        max_attempts: int = 3,
        base_backoff_seconds: float = 1.0,
        timeout_seconds: float | None = None,
        resolver: ParameterResolver | None = None,
    ) -> None:
        self._invoker = invoker
        self._resolver = resolver or ParameterResolver()
        self._max_attempts = max(1, max_attempts)
        self._base_backoff = max(0.0, base_backoff_seconds)
        self._timeout = timeout_seconds

    @classmethod
    def from_settings(
        cls,
        settings: ExecutionSettings,
        invoker: ToolInvoker,
        *,
        capability: ModelCapability | None = None,
    ) -> "ToolStepExecutor":
        requirements = invoker.required_parameters if isinstance(invoker, ToolRegistry) else None
        return cls(
            invoker,
            max_attempts=settings.max_step_retries,
            base_backoff_seconds=settings.base_backoff_seconds,
            timeout_seconds=settings.step_timeout_seconds,
            resolver=ParameterResolver(capability=capability, requirements=requirements),
        )

    async def execute(self, step: PlanStep, context: StepContext) -> StepOutcome:
        started = time.perf_counter()
        attempts = 0
        parameters: dict[str, Any] = dict(step.parameters)
        try:
            parameters = resolve_parameters(step.parameters, context.partial_results)
            parameters = await self._resolver.resolve(step, parameters, context)
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_incrementing(start=self._base_backoff, increment=self._base_backoff),
                retry=retry_if_not_exception_type((StepValidationError, CoordinationError)),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        logger.info("execution_step_retry", step_id=step.id, attempt=attempts, action=step.action)
                    response = await self._invoke(step, parameters, context)
        except Exception as exc:
            error_type = classify_error(exc)
            logger.warning(
                "execution_step_failed",
                step_id=step.id,
                action=step.action,
                error_type=error_type.value,
                attempts=attempts,
                error=str(exc),
            )
            result = ExecutionResult(
                step_id=step.id,
                step_order=step.order,
                success=False,
                error=str(exc) or exc.__class__.__name__,
                error_type=error_type,
                duration=round(time.perf_counter() - started, 4),
                retries=max(attempts - 1, 0),
                tool_called=step.action,
                parameters_used=parameters,
            )
            return StepOutcome(result=result)

        plan_update = None
        value = response
        if isinstance(response, ToolResponse):
            value = response.value
            plan_update = response.plan_update
        result = ExecutionResult(
            step_id=step.id,
            step_order=step.order,
            success=True,
            result=value,
            duration=round(time.perf_counter() - started, 4),
            retries=max(attempts - 1, 0),
            tool_called=step.action,
            parameters_used=parameters,
        )
        return StepOutcome(result=result, plan_update=plan_update)

    async def _invoke(self, step: PlanStep, parameters: dict[str, Any], context: StepContext) -> Any:
        call = self._invoker(step.action, dict(parameters), context)
        if self._timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise StepTimeoutError(f"Tool '{step.action}' timed out after {self._timeout} seconds") from exc
