from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from .confidence import ConfidenceScore


class ComplexityDetectionRequest(BaseModel):
    query: str = Field(min_length=1, max_length=10_000)
    request_id: str | None = None


class ConfidenceScoringRequest(BaseModel):
    scores: list[ConfidenceScore] = Field(default_factory=list)
    request_id: str | None = None


class ExecutionRequest(BaseModel):
    # Validated into a Plan by the route so graph errors map to 422.
    plan: dict[str, Any]
    reasoning_passes: Literal[1, 2, 3] = 1
    critique_recommendation: str | None = None
    request_id: str | None = None


class ComplexityExampleCreate(BaseModel):
    query: str = Field(min_length=1, max_length=10_000)
    complexity_score: float = Field(ge=0.0, le=1.0)
    reasoning_passes: Literal[1, 2, 3]
