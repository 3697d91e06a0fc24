from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from .requests import RequestContext

CONFIDENCE_AGENT_NAME = "confidence-scorer"


class RoutingDecision(str, Enum):
    EXECUTE = "execute"
    REVIEW = "review"
    RETHINK = "rethink"
    ESCALATE = "escalate"


class ScorePattern(str, Enum):
    CONSISTENT = "consistent"
    ALL_HIGH = "all-high"
    ALL_LOW = "all-low"
    MIXED = "mixed"


class ConfidenceScore(BaseModel):
    agent_name: str = Field(min_length=1)
    score: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class ConfidenceBreakdown(BaseModel):
    reasoning: float
    planning: float
    execution: float


class AgentAnalysis(BaseModel):
    primary_driver: str | None = None
    lowest_confidence: str | None = None
    highest_confidence: str | None = None
    concerns: list[str] = Field(default_factory=list)


class ConfidenceScorerOutput(BaseModel):
    request_id: str
    agent_name: str = CONFIDENCE_AGENT_NAME
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_context: RequestContext
    overall_confidence: float
    weighted_confidence: float
    decision: RoutingDecision
    confidence_breakdown: ConfidenceBreakdown
    agent_analysis: AgentAnalysis
    score_variance: float
    score_pattern: ScorePattern
    routing_recommendation: str
    threshold_used: float
    reasoning: str
    agent_scores: list[ConfidenceScore] = Field(default_factory=list)
