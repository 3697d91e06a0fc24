from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from ..core.config import DEFAULT_DOMAIN_KEYWORDS
from .types import DetectionContext, DetectionResult, StrategyName, passes_for_score

MULTI_STEP_KEYWORDS: tuple[str, ...] = (
    "then",
    "after",
    "next",
    "follow",
    "sequence",
    "step",
    "first",
    "second",
    "finally",
    "then do",
    "after that",
)

ANALYSIS_KEYWORDS: tuple[str, ...] = (
    "analyze",
    "compare",
    "evaluate",
    "assess",
    "examine",
    "review",
    "study",
    "investigate",
    "break down",
    "analysis",
    "performance",
    "trends",
    "patterns",
    "correlation",
)

AGGREGATION_KEYWORDS: tuple[str, ...] = (
    "all",
    "every",
    "total",
    "summarize",
    "overview",
    "summary",
    "across",
    "combined",
    "aggregate",
    "consolidate",
    "comprehensive",
    "entire",
    "complete",
)

WEIGHTS: dict[str, float] = {
    "query_length": 0.15,
    "multiple_questions": 0.10,
    "multi_step": 0.20,
    "analysis": 0.25,
    "aggregation": 0.15,
    "domain_complexity": 0.15,
}

MAX_QUERY_LENGTH = 500
MAX_DOMAIN_KEYWORDS = 5


def _normalize(value: float, minimum: float, maximum: float) -> float:
    if maximum == minimum:
        return 0.0
    return min(1.0, max(0.0, (value - minimum) / (maximum - minimum)))


def _compile(keywords: Iterable[str]) -> list[tuple[str, re.Pattern[str]]]:
    # Matches at word starts so "all" does not fire inside "small".
    return [(keyword, re.compile(rf"\b{re.escape(keyword.lower())}")) for keyword in keywords]


@dataclass(slots=True)
class KeywordAnalysis:
    score: float
    reasoning_passes: int
    factors: dict[str, float]
    detected_keywords: list[str]


class KeywordStrategy:
    """Weighted heuristic over six normalized query features. Always usable."""

    name = StrategyName.KEYWORD

    def __init__(self, *, domain_keywords: Sequence[str] | None = None) -> None:
        domain = tuple(domain_keywords) if domain_keywords is not None else DEFAULT_DOMAIN_KEYWORDS
        self._multi_step = _compile(MULTI_STEP_KEYWORDS)
        self._analysis = _compile(ANALYSIS_KEYWORDS)
        self._aggregation = _compile(AGGREGATION_KEYWORDS)
        self._domain = _compile(domain)

    def can_use(self, context: DetectionContext) -> bool:  # noqa: ARG002 - always available
        return True

    def get_priority(self, context: DetectionContext) -> int:  # noqa: ARG002
        return 50

    async def detect(self, context: DetectionContext) -> DetectionResult:
        analysis = self.analyze(context.query)
        return DetectionResult(
            score=analysis.score,
            reasoning_passes=analysis.reasoning_passes,
            confidence=0.7,
            metadata={
                "factors": analysis.factors,
                "detected_keywords": analysis.detected_keywords,
            },
        )

    def analyze(self, query: str) -> KeywordAnalysis:
        lowered = query.lower()
        question_count = query.count("?")
        domain_hits = self._matches(lowered, self._domain)

        factors = {
            "query_length": round(_normalize(len(query), 0, MAX_QUERY_LENGTH), 4),
            "multiple_questions": 1.0 if question_count > 1 else 0.0,
            "multi_step": 1.0 if self._matches(lowered, self._multi_step) else 0.0,
            "analysis": 1.0 if self._matches(lowered, self._analysis) else 0.0,
            "aggregation": 1.0 if self._matches(lowered, self._aggregation) else 0.0,
            "domain_complexity": round(_normalize(len(domain_hits), 0, MAX_DOMAIN_KEYWORDS), 4),
        }
        raw = sum(factors[key] * weight for key, weight in WEIGHTS.items())
        score = round(min(1.0, max(0.0, raw)), 4)
        return KeywordAnalysis(
            score=score,
            reasoning_passes=passes_for_score(score),
            factors=factors,
            detected_keywords=self.detected_keywords(query),
        )

    def detected_keywords(self, query: str) -> list[str]:
        lowered = query.lower()
        detected: list[str] = []
        for group in (self._multi_step, self._analysis, self._aggregation, self._domain):
            for keyword in self._matches(lowered, group):
                if keyword not in detected:
                    detected.append(keyword)
        return detected

    @staticmethod
    def _matches(lowered: str, patterns: list[tuple[str, re.Pattern[str]]]) -> list[str]:
        return [keyword for keyword, pattern in patterns if pattern.search(lowered)]
