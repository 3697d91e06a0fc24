from __future__ import annotations

import pytest

from reasonchain.core.config import ExecutionSettings
from reasonchain.execution.engine import ExecutionEngine
from reasonchain.execution.paused import PausedRunRegistry
from reasonchain.schemas.plans import ErrorType
from reasonchain.schemas.requests import new_request_context

from tests.helpers.stubs import ScriptedStepExecutor, failed, make_plan


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _run(request_id: str, *, pause: bool = True):
    scripts = {"a": [lambda step, context: failed(step, "need input", ErrorType.VALIDATION_ERROR)]} if pause else {}
    engine = ExecutionEngine(step_executor=ScriptedStepExecutor(scripts))
    return await engine.execute_plan(
        make_plan(("a", [])),
        request_context=new_request_context(request_id=request_id),
    )


@pytest.mark.asyncio
async def test_paused_runs_are_kept_until_they_finish():
    registry = PausedRunRegistry()
    paused = await _run("req-1")

    await registry.remember(paused)

    assert await registry.get("req-1") is paused
    await registry.remember(await _run("req-1", pause=False))
    assert await registry.get("req-1") is None
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_oldest_pause_is_evicted_past_capacity():
    registry = PausedRunRegistry(max_runs=2, ttl_seconds=None)

    for request_id in ("req-1", "req-2", "req-3"):
        await registry.remember(await _run(request_id))

    assert len(registry) == 2
    assert "req-1" not in registry
    assert await registry.get("req-3") is not None


@pytest.mark.asyncio
async def test_expired_pauses_are_dropped_on_access():
    clock = FakeClock()
    registry = PausedRunRegistry(ttl_seconds=60.0, clock=clock)
    await registry.remember(await _run("req-old"))
    clock.now += 45.0
    await registry.remember(await _run("req-new"))

    clock.now += 30.0

    assert await registry.get("req-old") is None
    assert await registry.get("req-new") is not None
    assert len(registry) == 1


def test_limits_come_from_execution_settings():
    registry = PausedRunRegistry.from_settings(ExecutionSettings(max_paused_runs=5, paused_run_ttl_seconds=10.0))

    assert registry._max_runs == 5
    assert registry._ttl == 10.0
