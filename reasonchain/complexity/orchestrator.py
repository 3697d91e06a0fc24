from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from uuid import uuid4

from ..agents.capability import ModelCapability
from ..core.config import ComplexitySettings, Settings
from ..core.exceptions import LLMCallError, StrategyUnavailableError
from ..core.logging import bind_request_id, clear_request_id, get_logger
from ..core.metrics import record_detection, record_llm_escalation, record_strategy_failure
from ..schemas.complexity import (
    COMPLEXITY_AGENT_NAME,
    ComplexityConfig,
    ComplexityDetectorOutput,
    ComplexityExample,
    ComplexityScore,
    DetectionMethod,
)
from ..schemas.requests import RequestContext, add_agent_to_chain, new_request_context
from ..services.embedding import EmbeddingService
from ..services.examples import ComplexityExampleStore
from ..services.llm import LLMService
from ..services.storage import OutputStore, save_best_effort
from .keyword import KeywordStrategy
from .llm import LLMStrategy
from .semantic import SemanticStrategy
from .types import DetectionContext, DetectionResult, DetectionStrategy, StrategyName

logger = get_logger(name=__name__)

FALLBACK_EXPLANATIONS: dict[int, str] = {
    1: "Simple query: a direct lookup or single operation, so one reasoning pass is enough.",
    2: "Moderately complex query: some analysis or filtering is involved, so two reasoning passes are allotted.",
    3: "Complex query: multi-step analysis, comparison or aggregation is involved, so three reasoning passes are allotted.",
}

EXPLANATION_PROMPT = (
    "In two sentences, explain to an operator why the query below needs {passes} reasoning pass(es) "
    "(complexity score {score:.2f}, decided by the {method} detector).\n\nQuery: {query}"
)


class ComplexityDetector:
    """Arbitrates the semantic, keyword and LLM strategies for one query.

    Strategy failures are logged and count as "no opinion". Keyword detection
    cannot fail, so ``detect`` always returns a result.
    """

    def __init__(
        self,
        *,
        settings: ComplexitySettings,
        keyword: KeywordStrategy | None = None,
        semantic: SemanticStrategy | None = None,
        llm: LLMStrategy | None = None,
        explainer: ModelCapability | None = None,
        example_store: ComplexityExampleStore | None = None,
        embeddings: EmbeddingService | None = None,
        output_store: OutputStore | None = None,
    ) -> None:
        self._settings = settings
        self._keyword = keyword or KeywordStrategy(domain_keywords=settings.domain_keywords)
        self._explainer = explainer
        self._example_store = example_store
        self._embeddings = embeddings
        self._output_store = output_store
        self._strategies: dict[StrategyName, DetectionStrategy] = {StrategyName.KEYWORD: self._keyword}
        enabled = set(settings.strategies)
        if semantic is not None and StrategyName.SEMANTIC.value in enabled:
            self._strategies[StrategyName.SEMANTIC] = semantic
        if llm is not None and StrategyName.LLM.value in enabled:
            self._strategies[StrategyName.LLM] = llm

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        llm_service: LLMService | None = None,
        embeddings: EmbeddingService | None = None,
        example_store: ComplexityExampleStore | None = None,
        output_store: OutputStore | None = None,
    ) -> "ComplexityDetector":
        complexity = settings.complexity
        capability = ModelCapability(agent_name=COMPLEXITY_AGENT_NAME, llm=llm_service) if llm_service is not None else None
        semantic = None
        if embeddings is not None and example_store is not None:
            semantic = SemanticStrategy(
                embeddings=embeddings,
                store=example_store,
                threshold=complexity.semantic_threshold,
                top_k=complexity.semantic_top_k,
            )
        return cls(
            settings=complexity,
            keyword=KeywordStrategy(domain_keywords=complexity.domain_keywords),
            semantic=semantic,
            llm=LLMStrategy(capability=capability),
            explainer=capability,
            example_store=example_store,
            embeddings=embeddings,
            output_store=output_store,
        )

    @property
    def strategies(self) -> tuple[StrategyName, ...]:
        return tuple(self._strategies)

    async def detect(
        self,
        query: str,
        *,
        request_context: RequestContext | None = None,
    ) -> ComplexityDetectorOutput:
        request_context = add_agent_to_chain(request_context or new_request_context(query), COMPLEXITY_AGENT_NAME)
        bind_request_id(request_context.request_id)
        try:
            context = DetectionContext(query=query, request_id=request_context.request_id)

            if self._settings.enabled:
                semantic_result, keyword_result = await asyncio.gather(
                    self._run(StrategyName.SEMANTIC, context),
                    self._run(StrategyName.KEYWORD, context),
                )
            else:
                semantic_result, keyword_result = None, await self._run(StrategyName.KEYWORD, context)

            similarity = _similarity(semantic_result)
            context = context.extend(
                semantic_score=semantic_result.score if semantic_result else None,
                keyword_score=keyword_result.score if keyword_result else None,
                similarity=similarity,
            )
            if similarity is not None and similarity >= self._settings.high_similarity_threshold:
                logger.info("complexity_semantic_high_similarity", request_id=context.request_id, similarity=similarity)

            llm_result: DetectionResult | None = None
            if self._settings.enabled and self._should_use_llm(context, semantic_result, keyword_result):
                record_llm_escalation(policy=self._settings.llm_policy)
                llm_result = await self._run(StrategyName.LLM, context)

            final, method = self._select(semantic_result, keyword_result, llm_result, similarity)
            if final is None:
                logger.warning("complexity_all_strategies_failed", request_id=context.request_id)
                keyword_result = await self._keyword.detect(context)
                final, method = keyword_result, DetectionMethod.KEYWORD

            if method is DetectionMethod.SEMANTIC:
                await self._increment_usage(final.metadata.get("matched_example_id"))

            llm_used = llm_result is not None
            explanation = None
            if final.reasoning_passes == 3 or llm_used:
                explanation = await self._explain(query, final, method, llm_result)

            factors = keyword_result.metadata.get("factors") if keyword_result else None
            output = ComplexityDetectorOutput(
                request_id=request_context.request_id,
                request_context=request_context,
                complexity=ComplexityScore(
                    score=final.score,
                    reasoning_passes=final.reasoning_passes,
                    factors=factors,
                ),
                user_query=query,
                detected_keywords=self._keyword.detected_keywords(query),
                matched_example_id=semantic_result.metadata.get("matched_example_id") if semantic_result else None,
                similarity=similarity,
                detection_method=method,
                llm_used=llm_used,
                llm_explanation=explanation,
                llm_confidence=llm_result.confidence if llm_result else None,
            )
            record_detection(method=method.value, passes=final.reasoning_passes)
            logger.info(
                "complexity_detected",
                request_id=request_context.request_id,
                method=method.value,
                score=final.score,
                reasoning_passes=final.reasoning_passes,
                llm_used=llm_used,
            )
            await save_best_effort(self._output_store, output)
            return output
        finally:
            clear_request_id()

    async def _run(self, name: StrategyName, context: DetectionContext) -> DetectionResult | None:
        strategy = self._strategies.get(name)
        if strategy is None or not strategy.can_use(context):
            return None
        try:
            return await strategy.detect(context)
        except StrategyUnavailableError as exc:
            record_strategy_failure(strategy=name.value, reason="unavailable")
            logger.info("complexity_strategy_no_opinion", strategy=name.value, reason=str(exc))
        except Exception as exc:
            record_strategy_failure(strategy=name.value, reason="error")
            logger.warning(
                "complexity_strategy_failed",
                strategy=name.value,
                request_id=context.request_id,
                error=str(exc),
            )
        return None

    def _should_use_llm(
        self,
        context: DetectionContext,
        semantic_result: DetectionResult | None,
        keyword_result: DetectionResult | None,
    ) -> bool:
        strategy = self._strategies.get(StrategyName.LLM)
        if strategy is None or not strategy.can_use(context):
            return False
        policy = self._settings.llm_policy
        if policy == "always":
            return True
        if policy == "conflict":
            if semantic_result is not None and keyword_result is not None:
                return abs(semantic_result.score - keyword_result.score) > self._settings.conflict_threshold
            return semantic_result is None and keyword_result is not None
        # ambiguous
        return (
            len(context.query) < self._settings.ambiguous_query_length
            or semantic_result is None
            or (context.similarity is not None and context.similarity < self._settings.ambiguous_similarity_threshold)
        )

    def _select(
        self,
        semantic_result: DetectionResult | None,
        keyword_result: DetectionResult | None,
        llm_result: DetectionResult | None,
        similarity: float | None,
    ) -> tuple[DetectionResult | None, DetectionMethod]:
        if llm_result is not None:
            return llm_result, DetectionMethod.LLM
        if (
            semantic_result is not None
            and similarity is not None
            and similarity >= self._settings.semantic_preference_threshold
        ):
            return semantic_result, DetectionMethod.SEMANTIC
        if keyword_result is not None:
            return keyword_result, DetectionMethod.KEYWORD
        if semantic_result is not None:
            return semantic_result, DetectionMethod.SEMANTIC
        return None, DetectionMethod.KEYWORD

    async def _increment_usage(self, example_id: object) -> None:
        if self._example_store is None or not isinstance(example_id, str):
            return
        try:
            await self._example_store.increment_usage_count(example_id)
        except Exception as exc:
            logger.warning("complexity_example_usage_update_failed", example_id=example_id, error=str(exc))

    async def _explain(
        self,
        query: str,
        final: DetectionResult,
        method: DetectionMethod,
        llm_result: DetectionResult | None,
    ) -> str:
        fallback = FALLBACK_EXPLANATIONS.get(final.reasoning_passes, FALLBACK_EXPLANATIONS[2])
        if final.reasoning_passes == 3 and self._explainer is not None and self._explainer.available:
            prompt = EXPLANATION_PROMPT.format(
                passes=final.reasoning_passes,
                score=final.score,
                method=method.value,
                query=query,
            )
            try:
                text = await self._explainer.call_model(prompt, temperature=0.3, max_tokens=200)
            except LLMCallError as exc:
                logger.warning("complexity_explanation_failed", error=str(exc))
            else:
                if text.strip():
                    return text.strip()
        if llm_result is not None:
            reasoning = llm_result.metadata.get("reasoning")
            if isinstance(reasoning, str) and reasoning.strip():
                return reasoning.strip()
        return fallback

    async def add_example(
        self,
        query: str,
        *,
        complexity_score: float,
        reasoning_passes: int,
    ) -> ComplexityExample:
        if self._example_store is None or self._embeddings is None:
            raise StrategyUnavailableError("Example management requires embeddings and an example store")
        now = datetime.now(timezone.utc)
        example = ComplexityExample(
            id=str(uuid4()),
            query=query.strip(),
            config=ComplexityConfig(complexity_score=complexity_score, reasoning_passes=reasoning_passes),
            created_at=now,
            updated_at=now,
        )
        record = await self._embeddings.embed_text(example.query)
        stored = await self._example_store.add_example(example, record.vector)
        logger.info("complexity_example_added", example_id=stored.id, reasoning_passes=reasoning_passes)
        return stored

    async def list_examples(self) -> list[ComplexityExample]:
        if self._example_store is None:
            return []
        return await self._example_store.list_examples()

    async def delete_example(self, example_id: str) -> bool:
        if self._example_store is None:
            return False
        return await self._example_store.delete_example(example_id)


def _similarity(result: DetectionResult | None) -> float | None:
    if result is None:
        return None
    value = result.metadata.get("similarity")
    return float(value) if isinstance(value, (int, float)) else None
