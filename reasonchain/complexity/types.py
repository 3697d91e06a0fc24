from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Protocol

SIMPLE_THRESHOLD = 0.4
COMPLEX_THRESHOLD = 0.7


class StrategyName(str, Enum):
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    LLM = "llm"


@dataclass(frozen=True, slots=True)
class DetectionContext:
    """Per-request input threaded through the strategies.

    Strategies never mutate it; the orchestrator derives an extended copy as
    each score becomes known.
    """

    query: str
    request_id: str
    semantic_score: float | None = None
    keyword_score: float | None = None
    similarity: float | None = None

    def extend(self, **changes: Any) -> "DetectionContext":
        return replace(self, **changes)


@dataclass(slots=True)
class DetectionResult:
    score: float
    reasoning_passes: int
    confidence: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "reasoning_passes": self.reasoning_passes,
            "confidence": self.confidence,
            "metadata": dict(self.metadata),
        }


class DetectionStrategy(Protocol):
    name: StrategyName

    def can_use(self, context: DetectionContext) -> bool:
        ...

    async def detect(self, context: DetectionContext) -> DetectionResult:
        ...

    def get_priority(self, context: DetectionContext) -> int:
        ...


def passes_for_score(score: float) -> int:
    if score > COMPLEX_THRESHOLD:
        return 3
    if score > SIMPLE_THRESHOLD:
        return 2
    return 1
