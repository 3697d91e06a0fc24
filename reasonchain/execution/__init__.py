from .engine import ExecutionEngine, ExecutionRun
from .errors import ErrorAction, ErrorDecision, ErrorHandler, ErrorPolicy
from .parameters import ParameterResolver
from .paused import PausedRunRegistry
from .questions import QuestionGenerator
from .state import (
    ExecutionState,
    apply_user_feedback,
    build_initial_state,
    build_step_context,
    get_progress,
    get_ready_steps,
    is_goal_achieved,
    update_state_after_step,
)
from .step_executor import StepExecutor, StepOutcome, ToolResponse, ToolStepExecutor
from .tools import ToolRegistry, default_tool_registry
from .validator import CheckpointDecision, PlanValidator

__all__ = [
    "CheckpointDecision",
    "ErrorAction",
    "ErrorDecision",
    "ErrorHandler",
    "ErrorPolicy",
    "ExecutionEngine",
    "ExecutionRun",
    "ExecutionState",
    "ParameterResolver",
    "PausedRunRegistry",
    "PlanValidator",
    "QuestionGenerator",
    "StepExecutor",
    "StepOutcome",
    "ToolResponse",
    "ToolRegistry",
    "ToolStepExecutor",
    "apply_user_feedback",
    "build_initial_state",
    "build_step_context",
    "default_tool_registry",
    "get_progress",
    "get_ready_steps",
    "is_goal_achieved",
    "update_state_after_step",
]
