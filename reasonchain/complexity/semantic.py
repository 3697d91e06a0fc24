from __future__ import annotations

from ..core.exceptions import NoConfidentMatchError, StrategyUnavailableError
from ..core.logging import get_logger
from ..services.embedding import DETERMINISTIC_PROVIDER, EmbeddingService
from ..services.examples import ComplexityExampleStore
from .types import DetectionContext, DetectionResult, StrategyName

logger = get_logger(name=__name__)


class SemanticStrategy:
    """Nearest labelled example by embedding similarity.

    Below ``threshold`` the strategy raises ``NoConfidentMatchError`` instead of
    returning a weak guess so the orchestrator can fall through. When only the
    hash fallback backend could embed the query the strategy has no opinion.
    """

    name = StrategyName.SEMANTIC

    def __init__(
        self,
        *,
        embeddings: EmbeddingService | None,
        store: ComplexityExampleStore | None,
        threshold: float = 0.75,
        top_k: int = 5,
    ) -> None:
        self._embeddings = embeddings
        self._store = store
        self.threshold = threshold
        self._top_k = top_k

    def can_use(self, context: DetectionContext) -> bool:
        return self._embeddings is not None and self._store is not None and bool(context.query.strip())

    def get_priority(self, context: DetectionContext) -> int:  # noqa: ARG002
        return 100

    async def detect(self, context: DetectionContext) -> DetectionResult:
        if self._embeddings is None or self._store is None:
            raise StrategyUnavailableError("Semantic strategy requires embeddings and an example store")

        record = await self._embeddings.embed_text(context.query)
        if record.metadata.get("model_provider") == DETERMINISTIC_PROVIDER:
            raise StrategyUnavailableError("Hash fallback embeddings carry no similarity signal")
        # Candidates down to 90% of the threshold are fetched; acceptance still needs the full threshold.
        matches = await self._store.query(record.vector, top_k=self._top_k, min_score=self.threshold * 0.9)
        if not matches:
            raise NoConfidentMatchError("No semantic match found")

        best = max(matches, key=lambda match: match.similarity)
        if best.similarity < self.threshold:
            logger.info(
                "semantic_match_below_threshold",
                request_id=context.request_id,
                similarity=round(best.similarity, 4),
                threshold=self.threshold,
                example_id=best.example.id,
            )
            raise NoConfidentMatchError(
                f"Best similarity {best.similarity:.3f} below threshold {self.threshold:.2f}"
            )

        config = best.example.config
        return DetectionResult(
            score=config.complexity_score,
            reasoning_passes=config.reasoning_passes,
            confidence=round(best.similarity, 4),
            metadata={
                "matched_example_id": best.example.id,
                "similarity": round(best.similarity, 4),
                "usage_count": best.example.usage_count,
            },
        )
