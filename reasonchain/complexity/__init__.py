from .keyword import KeywordStrategy
from .llm import LLMStrategy
from .orchestrator import ComplexityDetector
from .semantic import SemanticStrategy
from .types import DetectionContext, DetectionResult, DetectionStrategy, StrategyName, passes_for_score

__all__ = [
    "ComplexityDetector",
    "DetectionContext",
    "DetectionResult",
    "DetectionStrategy",
    "KeywordStrategy",
    "LLMStrategy",
    "SemanticStrategy",
    "StrategyName",
    "passes_for_score",
]
