from __future__ import annotations

import json
from typing import Any, Callable, Iterable, Mapping, Sequence

from pydantic import BaseModel, Field

from ..agents.capability import ModelCapability
from ..core.exceptions import CoordinationError, LLMCallError
from ..core.logging import get_logger
from ..schemas.plans import PlanStep
from .state import StepContext

logger = get_logger(name=__name__)

PARAMETER_SYSTEM_PROMPT = (
    "You fill in missing tool parameters from the results of earlier steps. "
    "Only use values that appear in those results; never invent identifiers. "
    'Reply with JSON: {"parameters": {"<name>": <value>}, "missing": ["<name>"]}.'
)

_ID_FIELDS = ("_id", "id")
_RESULT_PREVIEW_CHARS = 1500

RequirementLookup = Callable[[str], Sequence[str]]


class ParameterReply(BaseModel):
    parameters: dict[str, Any] = Field(default_factory=dict)
    missing: list[str] = Field(default_factory=list)


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in {"", "null", "none"}
    if isinstance(value, (list, tuple, dict)):
        return not value
    return False


def _field_candidates(name: str) -> tuple[str, ...]:
    if name == "id" or name.endswith("_id") or name.endswith("Id"):
        return (name, *_ID_FIELDS)
    return (name,)


def extract_from_result(value: Any, name: str) -> Any:
    """Pull ``name`` out of an earlier step result.

    Mappings are searched for the name itself and, for id-like names, for
    ``_id`` / ``id``. Lists yield the first item that carries the field.
    """
    if isinstance(value, Mapping):
        for field_name in _field_candidates(name):
            candidate = value.get(field_name)
            if not is_blank(candidate):
                return candidate
        return None
    if isinstance(value, (list, tuple)):
        for item in value:
            found = extract_from_result(item, name)
            if found is not None:
                return found
    return None


class ParameterResolver:
    """Completes a step's required parameters before its tool is invoked.

    Values already present win. Missing ones are looked up in dependency
    results, then requested from the model when one is available. Anything
    still missing raises ``CoordinationError`` so the run can ask the user.
    """

    def __init__(
        self,
        *,
        capability: ModelCapability | None = None,
        requirements: RequirementLookup | None = None,
    ) -> None:
        self._capability = capability
        self._requirements = requirements

    def required_parameters(self, step: PlanStep) -> list[str]:
        names: Iterable[str] = step.required_parameters
        if self._requirements is not None:
            names = [*names, *self._requirements(step.action)]
        return list(dict.fromkeys(names))

    def missing_parameters(self, step: PlanStep, parameters: Mapping[str, Any]) -> list[str]:
        return [name for name in self.required_parameters(step) if is_blank(parameters.get(name))]

    async def resolve(self, step: PlanStep, parameters: dict[str, Any], context: StepContext) -> dict[str, Any]:
        missing = self.missing_parameters(step, parameters)
        if not missing:
            return parameters

        resolved = dict(parameters)
        for name in list(missing):
            for dependency_id in step.dependencies:
                value = extract_from_result(context.dependency_results.get(dependency_id), name)
                if value is not None:
                    resolved[name] = value
                    missing.remove(name)
                    logger.info(
                        "execution_parameter_extracted",
                        step_id=step.id,
                        parameter=name,
                        source_step=dependency_id,
                    )
                    break

        if missing and self._capability is not None and self._capability.available:
            inferred = await self._infer(step, resolved, context, missing)
            for name in list(missing):
                value = inferred.get(name)
                if not is_blank(value):
                    resolved[name] = value
                    missing.remove(name)
            if inferred:
                logger.info("execution_parameters_inferred", step_id=step.id, parameters=sorted(inferred))

        if missing:
            raise CoordinationError(
                f"Step {step.order} ({step.action}) is missing required parameter(s): {', '.join(missing)}"
            )
        return resolved

    async def _infer(
        self,
        step: PlanStep,
        parameters: Mapping[str, Any],
        context: StepContext,
        missing: Sequence[str],
    ) -> dict[str, Any]:
        try:
            reply = await self._capability.call_structured(
                self._build_prompt(step, parameters, context, missing),
                ParameterReply,
                system_prompt=PARAMETER_SYSTEM_PROMPT,
                temperature=0.2,
                max_tokens=600,
            )
        except LLMCallError as exc:
            logger.warning("execution_parameter_inference_failed", step_id=step.id, error=str(exc))
            return {}
        return {name: value for name, value in reply.parameters.items() if name in missing}

    @staticmethod
    def _build_prompt(
        step: PlanStep,
        parameters: Mapping[str, Any],
        context: StepContext,
        missing: Sequence[str],
    ) -> str:
        lines = [
            f"Goal: {context.goal}",
            f"Step {step.order}: {step.description or step.action}",
            f"Tool: {step.action}",
            f"Known parameters: {json.dumps(dict(parameters), default=str)}",
            f"Missing parameters: {', '.join(missing)}",
        ]
        if context.user_answer:
            lines.append(f"User answer: {context.user_answer}")
        if context.dependency_results:
            lines.append("Earlier step results:")
            for step_id, value in context.dependency_results.items():
                if isinstance(value, (list, tuple)) and not value:
                    rendered = "EMPTY: the lookup found nothing, report the parameter as missing."
                else:
                    rendered = json.dumps(value, default=str)[:_RESULT_PREVIEW_CHARS]
                lines.append(f"- {step_id}: {rendered}")
        else:
            lines.append("No earlier step results are available.")
        return "\n".join(lines)


__all__ = ["ParameterReply", "ParameterResolver", "extract_from_result", "is_blank"]
