from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import ValidationError

from ..complexity.orchestrator import ComplexityDetector
from ..core.exceptions import PlanRejectedError, PlanValidationError, StrategyUnavailableError
from ..core.logging import get_logger
from ..dependencies import (
    get_complexity_detector,
    get_confidence_scorer,
    get_execution_engine,
    get_output_store,
    get_paused_runs,
)
from ..execution.engine import ExecutionEngine
from ..execution.paused import PausedRunRegistry
from ..schemas.api import (
    ComplexityDetectionRequest,
    ComplexityExampleCreate,
    ConfidenceScoringRequest,
    ExecutionRequest,
)
from ..schemas.complexity import COMPLEXITY_AGENT_NAME, ComplexityDetectorOutput, ComplexityExample
from ..schemas.confidence import CONFIDENCE_AGENT_NAME, ConfidenceScorerOutput
from ..schemas.plans import EXECUTOR_AGENT_NAME, ExecutorAgentOutput, Plan, UserFeedback
from ..schemas.requests import new_request_context
from ..services.scoring import ConfidenceScorer
from ..services.storage import OutputStore

logger = get_logger(name=__name__)

router = APIRouter()


async def _stored_output(store: OutputStore, request_id: str, agent_name: str) -> dict[str, Any]:
    document = await store.get_by_request_id(request_id, agent_name)
    if document is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No {agent_name} output for request")
    return document


@router.get("/health", tags=["health"])
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/complexity-detector", response_model=ComplexityDetectorOutput, tags=["complexity"])
async def detect_complexity(
    payload: ComplexityDetectionRequest,
    detector: ComplexityDetector = Depends(get_complexity_detector),
) -> ComplexityDetectorOutput:
    context = new_request_context(payload.query, request_id=payload.request_id)
    return await detector.detect(payload.query, request_context=context)


@router.get("/complexity-detector/history", tags=["complexity"])
async def list_complexity_history(
    limit: int = Query(20, ge=1, le=100),
    store: OutputStore = Depends(get_output_store),
) -> list[dict[str, Any]]:
    return await store.list_recent(COMPLEXITY_AGENT_NAME, limit=limit)


@router.get("/complexity-detector/{request_id}", tags=["complexity"])
async def get_complexity_output(
    request_id: str,
    store: OutputStore = Depends(get_output_store),
) -> dict[str, Any]:
    return await _stored_output(store, request_id, COMPLEXITY_AGENT_NAME)


@router.get("/complexity-examples", response_model=list[ComplexityExample], tags=["complexity"])
async def list_complexity_examples(
    detector: ComplexityDetector = Depends(get_complexity_detector),
) -> list[ComplexityExample]:
    return await detector.list_examples()


@router.post(
    "/complexity-examples",
    response_model=ComplexityExample,
    status_code=status.HTTP_201_CREATED,
    tags=["complexity"],
)
async def create_complexity_example(
    payload: ComplexityExampleCreate,
    detector: ComplexityDetector = Depends(get_complexity_detector),
) -> ComplexityExample:
    try:
        return await detector.add_example(
            payload.query,
            complexity_score=payload.complexity_score,
            reasoning_passes=payload.reasoning_passes,
        )
    except StrategyUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.delete(
    "/complexity-examples/{example_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["complexity"],
)
async def delete_complexity_example(
    example_id: str,
    detector: ComplexityDetector = Depends(get_complexity_detector),
) -> Response:
    if not await detector.delete_example(example_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Complexity example not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/confidence-scorer", response_model=ConfidenceScorerOutput, tags=["confidence"])
async def score_confidence(
    payload: ConfidenceScoringRequest,
    scorer: ConfidenceScorer = Depends(get_confidence_scorer),
) -> ConfidenceScorerOutput:
    context = new_request_context(request_id=payload.request_id)
    return await scorer.evaluate(payload.scores, request_context=context)


@router.get("/confidence-scorer/history", tags=["confidence"])
async def list_confidence_history(
    limit: int = Query(20, ge=1, le=100),
    store: OutputStore = Depends(get_output_store),
) -> list[dict[str, Any]]:
    return await store.list_recent(CONFIDENCE_AGENT_NAME, limit=limit)


@router.get("/confidence-scorer/{request_id}", tags=["confidence"])
async def get_confidence_output(
    request_id: str,
    store: OutputStore = Depends(get_output_store),
) -> dict[str, Any]:
    return await _stored_output(store, request_id, CONFIDENCE_AGENT_NAME)


@router.post("/executor-agent", response_model=ExecutorAgentOutput, tags=["execution"])
async def execute_plan(
    payload: ExecutionRequest,
    engine: ExecutionEngine = Depends(get_execution_engine),
    paused_runs: PausedRunRegistry = Depends(get_paused_runs),
) -> ExecutorAgentOutput:
    try:
        plan = Plan.model_validate(payload.plan)
    except (ValidationError, PlanValidationError) as exc:
        detail = exc.errors(include_url=False, include_context=False) if isinstance(exc, ValidationError) else str(exc)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail) from exc

    context = new_request_context(plan.goal or None, request_id=payload.request_id)
    try:
        run = await engine.execute_plan(
            plan,
            reasoning_passes=payload.reasoning_passes,
            request_context=context,
            critique_recommendation=payload.critique_recommendation,
        )
    except PlanRejectedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    await paused_runs.remember(run)
    return run.output


@router.post("/executor-agent/{request_id}/feedback", response_model=ExecutorAgentOutput, tags=["execution"])
async def resume_execution(
    request_id: str,
    feedback: UserFeedback,
    engine: ExecutionEngine = Depends(get_execution_engine),
    paused_runs: PausedRunRegistry = Depends(get_paused_runs),
) -> ExecutorAgentOutput:
    paused = await paused_runs.get(request_id)
    if paused is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No paused execution for request")
    output = paused.output
    try:
        run = await engine.resume(
            paused.state,
            feedback,
            reasoning_passes=paused.reasoning_passes,
            request_context=output.request_context,
            critique_recommendation=output.critique_recommendation,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    await paused_runs.remember(run)
    return run.output


@router.get("/executor-agent/history", tags=["execution"])
async def list_execution_history(
    limit: int = Query(20, ge=1, le=100),
    store: OutputStore = Depends(get_output_store),
) -> list[dict[str, Any]]:
    return await store.list_recent(EXECUTOR_AGENT_NAME, limit=limit)


@router.get("/executor-agent/{request_id}", tags=["execution"])
async def get_execution_output(
    request_id: str,
    store: OutputStore = Depends(get_output_store),
) -> dict[str, Any]:
    return await _stored_output(store, request_id, EXECUTOR_AGENT_NAME)
