from __future__ import annotations

import pytest

from reasonchain.core.exceptions import StepValidationError
from reasonchain.execution.state import build_initial_state, build_step_context, update_state_after_step
from reasonchain.execution.tools import ToolRegistry, default_tool_registry, normalize_tool_name
from reasonchain.schemas.plans import Plan, PlanStep

from tests.helpers.stubs import ok


def _context(step: PlanStep, plan: Plan | None = None):
    return build_step_context(step, build_initial_state(plan or Plan(id="p", steps=(step,))))


def test_normalize_tool_name_collapses_separators():
    assert normalize_tool_name(" Research / Search ") == "research.search"
    assert normalize_tool_name("finance..snapshot") == "finance.snapshot"


@pytest.mark.asyncio
async def test_registry_invokes_sync_and_async_tools():
    registry = ToolRegistry()

    async def lookup(parameters, context):
        return {"facility": parameters["facility"], "step": context.step.id}

    registry.register("Facility Lookup", lookup)
    registry.register("count", lambda parameters, context: len(parameters))
    step = PlanStep(id="s1", order=1, action="facility.lookup", parameters={"facility": "ABC"})

    assert await registry("facility lookup", {"facility": "ABC"}, _context(step)) == {"facility": "ABC", "step": "s1"}
    assert await registry("count", {"a": 1, "b": 2}, _context(step)) == 2
    assert registry.list() == ["Facility Lookup", "count"]
    assert "facility.lookup" in registry


@pytest.mark.asyncio
async def test_unknown_tool_is_a_validation_error():
    registry = ToolRegistry()
    step = PlanStep(id="s1", order=1, action="missing")

    with pytest.raises(StepValidationError):
        await registry("missing", {}, _context(step))

    registry.register("missing", lambda parameters, context: None)
    registry.unregister("missing")
    assert "missing" not in registry


@pytest.mark.asyncio
async def test_default_tools():
    registry = default_tool_registry()
    first = PlanStep(id="a", order=1, action="echo")
    second = PlanStep(id="b", order=2, action="collect", dependencies=("a",))
    plan = Plan(id="p", steps=(first, second))
    state = update_state_after_step(build_initial_state(plan), ok(first, {"value": 1}).result)

    assert await registry("echo", {"x": 1}, _context(first, plan)) == {"x": 1}
    assert await registry("collect", {}, build_step_context(second, state)) == {"a": {"value": 1}}
