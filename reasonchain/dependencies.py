from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends

from .agents.capability import ModelCapability
from .complexity.orchestrator import ComplexityDetector
from .core.config import Settings, get_settings
from .core.logging import get_logger
from .execution.engine import ExecutionEngine
from .execution.paused import PausedRunRegistry
from .execution.step_executor import ToolStepExecutor
from .execution.tools import ToolRegistry, default_tool_registry
from .schemas.plans import EXECUTOR_AGENT_NAME
from .services.embedding import EmbeddingService
from .services.examples import ComplexityExampleStore, InMemoryExampleStore, QdrantExampleStore
from .services.llm import LLMService
from .services.scoring import ConfidenceScorer
from .services.storage import InMemoryOutputStore, OutputStore, PostgresOutputStore

logger = get_logger(name=__name__)

_output_store_singleton: OutputStore | None = None
_example_store_singleton: ComplexityExampleStore | None = None
_embedding_service_singleton: EmbeddingService | None = None
_tool_registry_singleton: ToolRegistry | None = None
_paused_runs_singleton: PausedRunRegistry | None = None


async def get_output_store_singleton(settings: Settings) -> OutputStore:
    global _output_store_singleton
    if _output_store_singleton is None:
        if settings.postgres.enabled:
            _output_store_singleton = await PostgresOutputStore.from_settings(settings)
        else:
            _output_store_singleton = InMemoryOutputStore()
        logger.info("output_store_initialized", backend=type(_output_store_singleton).__name__)
    return _output_store_singleton


def get_example_store_singleton(settings: Settings) -> ComplexityExampleStore:
    global _example_store_singleton
    if _example_store_singleton is None:
        if settings.qdrant.enabled:
            _example_store_singleton = QdrantExampleStore.from_settings(settings)
        else:
            _example_store_singleton = InMemoryExampleStore()
        logger.info("example_store_initialized", backend=type(_example_store_singleton).__name__)
    return _example_store_singleton


def get_embedding_service_singleton(settings: Settings) -> EmbeddingService:
    global _embedding_service_singleton
    if _embedding_service_singleton is None:
        _embedding_service_singleton = EmbeddingService.from_settings(settings)
    return _embedding_service_singleton


def get_tool_registry_singleton() -> ToolRegistry:
    global _tool_registry_singleton
    if _tool_registry_singleton is None:
        _tool_registry_singleton = default_tool_registry()
    return _tool_registry_singleton


async def close_singletons() -> None:
    """Release pooled connections held by the process-wide services."""
    global _output_store_singleton, _example_store_singleton, _embedding_service_singleton, _paused_runs_singleton
    if isinstance(_output_store_singleton, PostgresOutputStore):
        await _output_store_singleton.close()
    if isinstance(_example_store_singleton, QdrantExampleStore):
        await _example_store_singleton.close()
    if _embedding_service_singleton is not None:
        await _embedding_service_singleton.aclose()
    _output_store_singleton = None
    _example_store_singleton = None
    _embedding_service_singleton = None
    _paused_runs_singleton = None


async def get_app_settings() -> AsyncIterator[Settings]:
    yield get_settings()


async def get_llm_service(
    settings: Settings = Depends(get_app_settings),
) -> AsyncIterator[LLMService]:
    yield LLMService.from_settings(settings)


async def get_output_store(
    settings: Settings = Depends(get_app_settings),
) -> AsyncIterator[OutputStore]:
    yield await get_output_store_singleton(settings)


async def get_complexity_detector(
    settings: Settings = Depends(get_app_settings),
    llm_service: LLMService = Depends(get_llm_service),
    output_store: OutputStore = Depends(get_output_store),
) -> AsyncIterator[ComplexityDetector]:
    yield ComplexityDetector.from_settings(
        settings,
        llm_service=llm_service,
        embeddings=get_embedding_service_singleton(settings),
        example_store=get_example_store_singleton(settings),
        output_store=output_store,
    )


async def get_confidence_scorer(
    llm_service: LLMService = Depends(get_llm_service),
    output_store: OutputStore = Depends(get_output_store),
) -> AsyncIterator[ConfidenceScorer]:
    yield ConfidenceScorer.from_settings(llm_service=llm_service, output_store=output_store)


async def get_execution_engine(
    settings: Settings = Depends(get_app_settings),
    llm_service: LLMService = Depends(get_llm_service),
    output_store: OutputStore = Depends(get_output_store),
) -> AsyncIterator[ExecutionEngine]:
    step_executor = ToolStepExecutor.from_settings(
        settings.execution,
        get_tool_registry_singleton(),
        capability=ModelCapability(agent_name=EXECUTOR_AGENT_NAME, llm=llm_service),
    )
    yield ExecutionEngine.from_settings(
        settings,
        step_executor=step_executor,
        llm_service=llm_service,
        output_store=output_store,
    )


def get_paused_run_registry_singleton(settings: Settings) -> PausedRunRegistry:
    global _paused_runs_singleton
    if _paused_runs_singleton is None:
        _paused_runs_singleton = PausedRunRegistry.from_settings(settings.execution)
    return _paused_runs_singleton


async def get_paused_runs(
    settings: Settings = Depends(get_app_settings),
) -> AsyncIterator[PausedRunRegistry]:
    yield get_paused_run_registry_singleton(settings)
