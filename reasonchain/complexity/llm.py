from __future__ import annotations

from ..agents.capability import ModelCapability
from ..core.exceptions import LLMCallError, StrategyError, StrategyUnavailableError
from ..utils.parsing import JSONExtractionError, coerce_unit_float, parse_json_object
from .types import DetectionContext, DetectionResult, StrategyName, passes_for_score

SYSTEM_PROMPT = (
    "You judge how much reasoning a user query needs. Reply with a single JSON object "
    '{"score": <0..1>, "reasoningPasses": <1|2|3>, "reasoning": "<one or two sentences>"}. '
    "1 pass: direct lookups. 2 passes: moderate analysis. 3 passes: multi-step analysis, comparison or synthesis."
)


def _format_score(value: float | None) -> str:
    return "unavailable" if value is None else f"{value:.3f}"


class LLMStrategy:
    """Model judgment used as a tie-breaker between the other strategies."""

    name = StrategyName.LLM

    def __init__(self, *, capability: ModelCapability | None) -> None:
        self._capability = capability

    def can_use(self, context: DetectionContext) -> bool:  # noqa: ARG002
        return self._capability is not None and self._capability.available

    def get_priority(self, context: DetectionContext) -> int:
        if context.semantic_score is not None and context.keyword_score is not None:
            return 75
        return 25

    def build_prompt(self, context: DetectionContext) -> str:
        lines = [
            f"Query: {context.query}",
            "",
            "Signals from other detectors:",
            f"- semantic score: {_format_score(context.semantic_score)}",
            f"- semantic similarity: {_format_score(context.similarity)}",
            f"- keyword score: {_format_score(context.keyword_score)}",
        ]
        if context.semantic_score is not None and context.keyword_score is not None:
            difference = abs(context.semantic_score - context.keyword_score)
            lines.append(f"- disagreement between semantic and keyword: {difference:.3f}")
        lines.extend(["", "Return only the JSON object."])
        return "\n".join(lines)

    async def detect(self, context: DetectionContext) -> DetectionResult:
        if self._capability is None or not self._capability.available:
            raise StrategyUnavailableError("LLM strategy requires a configured model")
        try:
            reply = await self._capability.call_model(
                self.build_prompt(context),
                system_prompt=SYSTEM_PROMPT,
                temperature=0.1,
                max_tokens=256,
                json_mode=True,
            )
            payload = parse_json_object(reply)
        except (LLMCallError, JSONExtractionError) as exc:
            raise StrategyError(f"LLM complexity judgment failed: {exc}") from exc

        score = coerce_unit_float(payload.get("score"), 0.5)
        raw_passes = payload.get("reasoningPasses", payload.get("reasoning_passes"))
        passes = raw_passes if isinstance(raw_passes, int) and not isinstance(raw_passes, bool) else None
        if passes not in (1, 2, 3):
            passes = passes_for_score(score)

        reasoning = payload.get("reasoning")
        return DetectionResult(
            score=round(score, 4),
            reasoning_passes=passes,
            confidence=context.similarity if context.similarity is not None else 0.8,
            metadata={
                "reasoning": reasoning if isinstance(reasoning, str) else "",
                "semantic_score": context.semantic_score,
                "keyword_score": context.keyword_score,
            },
        )
