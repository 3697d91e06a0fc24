from __future__ import annotations


class ReasonChainError(RuntimeError):
    """Base class for reasoning-core failures."""


class StrategyUnavailableError(ReasonChainError):
    """Raised when a detection strategy cannot run for the given context."""


class NoConfidentMatchError(StrategyUnavailableError):
    """Raised when no stored example is similar enough to the query."""


class StrategyError(ReasonChainError):
    """Raised when a detection strategy fails while producing a judgment."""


class LLMCallError(ReasonChainError):
    """Raised when a language model call fails, times out, or is not configured."""


class StepExecutionError(ReasonChainError):
    """Raised by step executors when a tool invocation fails."""

    error_type = "tool-error"


class StepValidationError(StepExecutionError):
    """Raised when step parameters or tool output fail validation."""

    error_type = "validation-error"


class StepTimeoutError(StepExecutionError):
    """Raised when a step exceeds its time budget."""

    error_type = "timeout"


class CoordinationError(StepExecutionError):
    """Raised when a step cannot obtain what it needs from another step."""

    error_type = "coordination-error"


class PlanValidationError(ReasonChainError):
    """Raised when a plan graph references unknown or duplicate step ids."""


class PlanRejectedError(ReasonChainError):
    """Raised when the critique recommends rejecting a plan before execution."""
