from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..core.exceptions import PlanValidationError
from .requests import RequestContext

EXECUTOR_AGENT_NAME = "executor-agent"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorType(str, Enum):
    TOOL_ERROR = "tool-error"
    VALIDATION_ERROR = "validation-error"
    TIMEOUT = "timeout"
    COORDINATION_ERROR = "coordination-error"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    DEADLOCKED = "deadlocked"
    STOPPED = "stopped"


class PlanStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    order: int = Field(ge=0)
    description: str = ""
    action: str = Field(min_length=1, description="Name of the tool invoked for this step.")
    parameters: dict[str, Any] = Field(default_factory=dict)
    expected_outcome: str = ""
    dependencies: tuple[str, ...] = Field(default_factory=tuple)
    required_parameters: tuple[str, ...] = Field(
        default_factory=tuple,
        description="Parameters the tool cannot run without; filled from earlier results when absent.",
    )
    status: StepStatus = StepStatus.PENDING


class Plan(BaseModel):
    """Dependency-annotated steps for one goal. Refinement produces a new Plan."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()), min_length=1)
    goal: str = ""
    steps: tuple[PlanStep, ...] = Field(default_factory=tuple)
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    estimated_complexity: float = Field(0.5, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_graph(self) -> "Plan":
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise PlanValidationError(f"Duplicate step id '{step.id}' in plan {self.id}")
            seen.add(step.id)
        for step in self.steps:
            unknown = [dep for dep in step.dependencies if dep not in seen]
            if unknown:
                raise PlanValidationError(
                    f"Step '{step.id}' depends on unknown step(s): {', '.join(unknown)}"
                )
        return self

    @property
    def step_ids(self) -> tuple[str, ...]:
        return tuple(step.id for step in self.steps)

    def get_step(self, step_id: str) -> PlanStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def with_step_parameters(self, step_id: str, parameters: dict[str, Any]) -> "Plan":
        steps = tuple(
            step.model_copy(update={"parameters": {**step.parameters, **parameters}}) if step.id == step_id else step
            for step in self.steps
        )
        return self.model_copy(update={"steps": steps})


class ExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str
    step_order: int
    success: bool
    result: Any = None
    error: str | None = None
    error_type: ErrorType | None = None
    duration: float = Field(0.0, ge=0.0, description="Seconds spent on the step, retries included.")
    retries: int = Field(0, ge=0)
    tool_called: str = ""
    parameters_used: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class QuestionContext(BaseModel):
    step_id: str
    step_order: int
    what_failed: str = ""
    what_was_tried: str = ""
    current_state: str = ""
    suggestion: str | None = None


class ExecutionQuestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"q-{uuid4().hex[:12]}")
    question: str = Field(min_length=1)
    category: Literal["missing-data", "error-recovery", "coordination", "ambiguity", "user-choice"] = "error-recovery"
    priority: Literal["low", "medium", "high"] = "medium"
    context: QuestionContext
    answer: str | None = None
    asked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class UserFeedback(BaseModel):
    question_id: str = Field(min_length=1)
    answer: str = Field(min_length=1)
    parameter_overrides: dict[str, Any] | None = None


class Adaptation(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str
    reason: str
    suggestion: str | None = None
    decided_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PlanUpdate(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""


class PlanExecutionResult(BaseModel):
    plan_id: str
    status: RunStatus
    overall_success: bool
    steps: list[ExecutionResult] = Field(default_factory=list)
    partial_results: dict[str, Any] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    total_duration: float = 0.0
    questions_asked: list[ExecutionQuestion] = Field(default_factory=list)
    adaptations: list[Adaptation] = Field(default_factory=list)
    plan_updates: list[PlanUpdate] = Field(default_factory=list)
    executed_steps: list[str] = Field(default_factory=list)
    blocked_steps: list[str] = Field(default_factory=list)


class ExecutorAgentOutput(BaseModel):
    request_id: str
    agent_name: str = EXECUTOR_AGENT_NAME
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_context: RequestContext
    execution_result: PlanExecutionResult
    requires_user_feedback: bool = False
    critique_available: bool = False
    critique_recommendation: str | None = None
