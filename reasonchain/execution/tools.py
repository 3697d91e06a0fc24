from __future__ import annotations

import inspect
import re
from typing import Any, Callable, Dict, Iterator, Tuple

from ..core.exceptions import StepValidationError
from ..core.logging import get_logger
from .state import StepContext

__all__ = ["normalize_tool_name", "ToolRegistry", "default_tool_registry"]

logger = get_logger(name=__name__)

_NAME_PATTERN = re.compile(r"[\\/\s]+")
_DOT_COLLAPSE = re.compile(r"\.+")

ToolFunction = Callable[[Dict[str, Any], StepContext], Any]


def normalize_tool_name(name: str) -> str:
    """Return a normalized identifier used for registry lookups."""
    if not isinstance(name, str):
        raise TypeError("Tool name must be a string")
    collapsed = _NAME_PATTERN.sub(".", name.strip())
    collapsed = _DOT_COLLAPSE.sub(".", collapsed)
    return collapsed.strip(".").lower()


class ToolRegistry:
    """Maps step actions to tool callables; an instance is a valid ``ToolInvoker``."""

    def __init__(self) -> None:
        self._registry: Dict[str, ToolFunction] = {}
        self._display: Dict[str, str] = {}
        self._required: Dict[str, Tuple[str, ...]] = {}

    def register(self, name: str, tool: ToolFunction, *, required: Tuple[str, ...] = ()) -> None:
        key = normalize_tool_name(name)
        if not key:
            raise ValueError("Tool name must not be empty")
        self._registry[key] = tool
        self._display[key] = name.strip()
        self._required[key] = tuple(required)

    def unregister(self, name: str) -> None:
        key = normalize_tool_name(name)
        self._registry.pop(key, None)
        self._display.pop(key, None)
        self._required.pop(key, None)

    def get(self, name: str) -> ToolFunction | None:
        return self._registry.get(normalize_tool_name(name))

    def required_parameters(self, name: str) -> Tuple[str, ...]:
        return self._required.get(normalize_tool_name(name), ())

    def list(self) -> list[str]:
        return sorted(self._display.values())

    def items(self) -> Iterator[Tuple[str, ToolFunction]]:
        for key, tool in self._registry.items():
            yield self._display[key], tool

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_tool_name(name) in self._registry

    async def __call__(self, action: str, parameters: dict[str, Any], context: StepContext) -> Any:
        tool = self.get(action)
        if tool is None:
            logger.warning("execution_tool_unknown", action=action, available=self.list())
            raise StepValidationError(f"Unknown tool '{action}'")
        result = tool(parameters, context)
        if inspect.isawaitable(result):
            result = await result
        return result


def _echo(parameters: dict[str, Any], context: StepContext) -> dict[str, Any]:
    return dict(parameters)


def _collect(parameters: dict[str, Any], context: StepContext) -> dict[str, Any]:
    return dict(context.dependency_results)


def default_tool_registry() -> ToolRegistry:
    """Registry with the built-in tools: ``echo`` returns its parameters, ``collect`` gathers dependency results."""
    registry = ToolRegistry()
    registry.register("echo", _echo)
    registry.register("collect", _collect)
    return registry
