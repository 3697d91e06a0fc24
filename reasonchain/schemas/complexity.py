from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .requests import RequestContext

COMPLEXITY_AGENT_NAME = "complexity-detector"


class DetectionMethod(str, Enum):
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    LLM = "llm"


class ComplexityScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: float = Field(ge=0.0, le=1.0)
    reasoning_passes: Literal[1, 2, 3]
    factors: dict[str, float] | None = None


class ComplexityDetectorOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    agent_name: str = COMPLEXITY_AGENT_NAME
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_context: RequestContext
    complexity: ComplexityScore
    user_query: str
    detected_keywords: list[str] = Field(default_factory=list)
    matched_example_id: str | None = None
    similarity: float | None = None
    detection_method: DetectionMethod
    llm_used: bool = False
    llm_explanation: str | None = None
    llm_confidence: float | None = None


class ComplexityConfig(BaseModel):
    complexity_score: float = Field(ge=0.0, le=1.0)
    reasoning_passes: Literal[1, 2, 3]


class ComplexityExample(BaseModel):
    """A labelled query the semantic strategy compares incoming requests against."""

    id: str = Field(min_length=1)
    query: str = Field(min_length=1)
    config: ComplexityConfig
    usage_count: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ExampleMatch(BaseModel):
    example: ComplexityExample
    similarity: float
