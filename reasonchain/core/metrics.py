from __future__ import annotations

from prometheus_client import Counter, Histogram

COMPLEXITY_DETECTIONS_TOTAL = Counter(
    "reasonchain_complexity_detections_total",
    "Complexity detections grouped by the winning method and reasoning-pass budget",
    labelnames=("method", "passes"),
)

COMPLEXITY_STRATEGY_FAILURES_TOTAL = Counter(
    "reasonchain_complexity_strategy_failures_total",
    "Detection strategy failures treated as no opinion",
    labelnames=("strategy", "reason"),
)

COMPLEXITY_LLM_ESCALATIONS_TOTAL = Counter(
    "reasonchain_complexity_llm_escalations_total",
    "Times the orchestrator consulted the LLM strategy, grouped by policy",
    labelnames=("policy",),
)

LLM_CALLS_TOTAL = Counter(
    "reasonchain_llm_calls_total",
    "Language model calls grouped by outcome",
    labelnames=("model", "outcome"),
)

EXECUTION_STEP_OUTCOMES_TOTAL = Counter(
    "reasonchain_execution_step_outcomes_total",
    "Executed plan steps grouped by outcome and error type",
    labelnames=("outcome", "error_type"),
)

EXECUTION_STEP_LATENCY_SECONDS = Histogram(
    "reasonchain_execution_step_latency_seconds",
    "Wall-clock duration of individual plan steps",
    labelnames=("action",),
    buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

EXECUTION_RUNS_TOTAL = Counter(
    "reasonchain_execution_runs_total",
    "Plan runs grouped by final status",
    labelnames=("status",),
)

EXECUTION_DECISIONS_TOTAL = Counter(
    "reasonchain_execution_error_decisions_total",
    "Error policy decisions taken for failed steps",
    labelnames=("decision", "source"),
)

ROUTING_DECISIONS_TOTAL = Counter(
    "reasonchain_routing_decisions_total",
    "Confidence aggregator routing decisions",
    labelnames=("decision", "pattern"),
)


def record_detection(*, method: str, passes: int) -> None:
    COMPLEXITY_DETECTIONS_TOTAL.labels(method=method, passes=str(passes)).inc()


def record_strategy_failure(*, strategy: str, reason: str) -> None:
    COMPLEXITY_STRATEGY_FAILURES_TOTAL.labels(strategy=strategy, reason=reason).inc()


def record_llm_escalation(*, policy: str) -> None:
    COMPLEXITY_LLM_ESCALATIONS_TOTAL.labels(policy=policy).inc()


def record_llm_call(*, model: str, outcome: str) -> None:
    LLM_CALLS_TOTAL.labels(model=model, outcome=outcome).inc()


def record_step_outcome(*, success: bool, error_type: str | None, action: str, duration: float) -> None:
    outcome = "success" if success else "failure"
    EXECUTION_STEP_OUTCOMES_TOTAL.labels(outcome=outcome, error_type=error_type or "none").inc()
    EXECUTION_STEP_LATENCY_SECONDS.labels(action=action or "unknown").observe(max(duration, 0.0))


def record_run_status(*, status: str) -> None:
    EXECUTION_RUNS_TOTAL.labels(status=status).inc()


def record_error_decision(*, decision: str, source: str) -> None:
    EXECUTION_DECISIONS_TOTAL.labels(decision=decision, source=source).inc()


def record_routing_decision(*, decision: str, pattern: str) -> None:
    ROUTING_DECISIONS_TOTAL.labels(decision=decision, pattern=pattern).inc()
