from __future__ import annotations

import json
from collections import deque
from typing import Any, Callable, Iterable, Mapping, Sequence

import structlog
from langchain_core.messages import AIMessage

from reasonchain.complexity.types import DetectionContext, DetectionResult, StrategyName
from reasonchain.core.config import LLMSettings, Settings
from reasonchain.core.exceptions import StrategyError
from reasonchain.execution.state import StepContext
from reasonchain.execution.step_executor import StepOutcome
from reasonchain.schemas.complexity import ComplexityDetectorOutput
from reasonchain.schemas.plans import ErrorType, ExecutionResult, Plan, PlanStep, PlanUpdate
from reasonchain.schemas.requests import RequestContext
from reasonchain.services.embedding import EmbeddingModelInfo, EmbeddingRecord
from reasonchain.services.llm import LLMService


class StubChatClient:
    """Stands in for ChatOllama; replies are scripted or computed from the prompt."""

    def __init__(self, replies: Iterable[str | Exception] | Callable[[str], str] | None = None) -> None:
        self._responder = replies if callable(replies) else None
        self._replies: deque[str | Exception] = deque() if callable(replies) or replies is None else deque(replies)
        self.calls: list[dict[str, Any]] = []

    async def ainvoke(self, messages: Sequence[Any], **kwargs: Any) -> AIMessage:
        prompt = str(messages[-1].content) if messages else ""
        self.calls.append({"messages": list(messages), "prompt": prompt, "kwargs": kwargs})
        if self._responder is not None:
            return AIMessage(content=self._responder(prompt))
        if not self._replies:
            raise RuntimeError("stub chat client has no scripted reply left")
        reply = self._replies.popleft()
        if isinstance(reply, Exception):
            raise reply
        return AIMessage(content=reply)


def make_llm_service(
    replies: Iterable[str | Exception] | Callable[[str], str] | None = None,
    *,
    enabled: bool = True,
    max_retries: int = 1,
) -> tuple[LLMService, StubChatClient]:
    settings = Settings(
        llm=LLMSettings(
            enabled=enabled,
            max_retries=max_retries,
            base_backoff_seconds=0.0,
            request_timeout_seconds=5.0,
        )
    )
    client = StubChatClient(replies)
    return LLMService(settings=settings, _client=client, model="stub-model"), client


def json_reply(**payload: Any) -> str:
    return json.dumps(payload)


class StubEmbeddingService:
    """Deterministic embedding provider that never reaches external systems.

    Texts listed in ``vectors`` get that vector; anything else maps onto a
    shared axis that no stored example uses.
    """

    default_vector = [0.0, 0.0, 0.0, 1.0]

    def __init__(self, vectors: Mapping[str, list[float]] | None = None) -> None:
        self._vectors = dict(vectors or {})
        self.requests: list[str] = []
        self.info = EmbeddingModelInfo(provider="stub", model_name="stub-embedding", vector_dimension=4)

    async def embed_text(self, text: str) -> EmbeddingRecord:
        records = await self.embed_documents([text])
        return records[0]

    async def embed_documents(self, documents: Sequence[str]) -> list[EmbeddingRecord]:
        records: list[EmbeddingRecord] = []
        for text in documents:
            normalized = text.strip()
            self.requests.append(normalized)
            vector = list(self._vectors.get(normalized, self.default_vector))
            records.append(EmbeddingRecord(vector=vector, metadata={"cached": False}, cache_key=f"stub:{normalized}"))
        return records

    async def aclose(self) -> None:
        return


class StubStrategy:
    """Detection strategy returning a fixed result, or raising, and counting calls."""

    def __init__(
        self,
        name: StrategyName,
        *,
        score: float = 0.5,
        passes: int = 2,
        confidence: float = 0.8,
        metadata: dict[str, Any] | None = None,
        error: Exception | None = None,
        usable: bool = True,
    ) -> None:
        self.name = name
        self._result = DetectionResult(score=score, reasoning_passes=passes, confidence=confidence, metadata=metadata or {})
        self._error = error
        self._usable = usable
        self.calls: list[DetectionContext] = []

    def can_use(self, context: DetectionContext) -> bool:  # noqa: ARG002
        return self._usable

    def get_priority(self, context: DetectionContext) -> int:  # noqa: ARG002
        return 0

    async def detect(self, context: DetectionContext) -> DetectionResult:
        self.calls.append(context)
        if self._error is not None:
            raise self._error
        return self._result


def failing_strategy(name: StrategyName) -> StubStrategy:
    return StubStrategy(name, error=StrategyError(f"{name.value} exploded"))


def ok(step: PlanStep, value: Any = None, *, plan_update: PlanUpdate | None = None) -> StepOutcome:
    result = ExecutionResult(
        step_id=step.id,
        step_order=step.order,
        success=True,
        result=value if value is not None else f"{step.id}-done",
        tool_called=step.action,
        parameters_used=dict(step.parameters),
    )
    return StepOutcome(result=result, plan_update=plan_update)


def failed(step: PlanStep, error: str, error_type: ErrorType = ErrorType.TOOL_ERROR) -> StepOutcome:
    result = ExecutionResult(
        step_id=step.id,
        step_order=step.order,
        success=False,
        error=error,
        error_type=error_type,
        tool_called=step.action,
        parameters_used=dict(step.parameters),
    )
    return StepOutcome(result=result)


Script = Callable[[PlanStep, StepContext], StepOutcome]


class ScriptedStepExecutor:
    """Step executor whose behaviour per step id is scripted by the test.

    Each script entry is a list consumed one call at a time; the last entry is
    reused once the list runs out. Steps without a script succeed.
    """

    def __init__(self, scripts: Mapping[str, Sequence[Script | Exception]] | None = None) -> None:
        self._scripts = {step_id: list(entries) for step_id, entries in (scripts or {}).items()}
        self.calls: list[str] = []
        self.contexts: dict[str, StepContext] = {}

    async def execute(self, step: PlanStep, context: StepContext) -> StepOutcome:
        self.calls.append(step.id)
        self.contexts[step.id] = context
        entries = self._scripts.get(step.id)
        if not entries:
            return ok(step)
        entry = entries.pop(0) if len(entries) > 1 else entries[0]
        if isinstance(entry, Exception):
            raise entry
        return entry(step, context)


class RecordingInvoker:
    """``ToolInvoker`` that replays scripted values or exceptions per action."""

    def __init__(self, script: Mapping[str, Sequence[Any]] | None = None) -> None:
        self._script = {action: deque(values) for action, values in (script or {}).items()}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def __call__(self, action: str, parameters: dict[str, Any], context: StepContext) -> Any:  # noqa: ARG002
        self.calls.append((action, dict(parameters)))
        queue = self._script.get(action)
        if not queue:
            return {"action": action, "parameters": parameters}
        value = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(value, BaseException):
            raise value
        return value


class FailingOutputStore:
    def __init__(self) -> None:
        self.attempts = 0

    async def save(self, output: Any) -> None:
        self.attempts += 1
        raise ConnectionError("database unavailable")

    async def get_by_request_id(self, request_id: str, agent_name: str) -> dict[str, Any] | None:  # noqa: ARG002
        return None

    async def list_recent(self, agent_name: str, *, limit: int = 20) -> list[dict[str, Any]]:  # noqa: ARG002
        return []


class StaticPlanProvider:
    def __init__(self, plan: Plan) -> None:
        self.plan = plan
        self.requests: list[tuple[str, int]] = []

    async def create_plan(
        self,
        query: str,
        *,
        complexity: ComplexityDetectorOutput,
        request_context: RequestContext,  # noqa: ARG002
    ) -> Plan:
        self.requests.append((query, complexity.complexity.reasoning_passes))
        return self.plan


def make_plan(*steps: tuple[str, Sequence[str]], goal: str = "Answer the request", **step_fields: Any) -> Plan:
    """Build a plan from ``(step_id, dependencies)`` pairs, ordered as given."""
    return Plan(
        id="plan-1",
        goal=goal,
        steps=tuple(
            PlanStep(
                id=step_id,
                order=index + 1,
                description=f"Run {step_id}",
                action=step_fields.get("action", "echo"),
                dependencies=tuple(dependencies),
            )
            for index, (step_id, dependencies) in enumerate(steps)
        ),
    )


class ContextRecordingOutputStore:
    """Remembers the log context that was bound while each output was saved."""

    def __init__(self) -> None:
        self.bound_request_ids: list[str | None] = []

    async def save(self, output: Any) -> None:  # noqa: ARG002
        self.bound_request_ids.append(structlog.contextvars.get_contextvars().get("request_id"))

    async def get_by_request_id(self, request_id: str, agent_name: str) -> dict[str, Any] | None:  # noqa: ARG002
        return None

    async def list_recent(self, agent_name: str, *, limit: int = 20) -> list[dict[str, Any]]:  # noqa: ARG002
        return []
