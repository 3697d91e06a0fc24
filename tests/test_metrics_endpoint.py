from __future__ import annotations

import httpx
import pytest
from prometheus_client import REGISTRY

from reasonchain.core.metrics import (
    record_detection,
    record_error_decision,
    record_routing_decision,
    record_run_status,
    record_step_outcome,
)

SERIES = [
    ("reasonchain_complexity_detections_total", {"method": "keyword", "passes": "1"}),
    ("reasonchain_execution_step_outcomes_total", {"outcome": "failure", "error_type": "timeout"}),
    ("reasonchain_execution_step_latency_seconds_count", {"action": "inventory.lookup"}),
    ("reasonchain_execution_runs_total", {"status": "paused"}),
    ("reasonchain_execution_error_decisions_total", {"decision": "ask-user", "source": "rules"}),
    ("reasonchain_routing_decisions_total", {"decision": "review", "pattern": "mixed"}),
]


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.mark.asyncio
async def test_metrics_endpoint_includes_custom_series() -> None:
    from reasonchain import main

    before = {name: _sample(name, labels) for name, labels in SERIES}

    record_detection(method="keyword", passes=1)
    record_step_outcome(success=False, error_type="timeout", action="inventory.lookup", duration=1.5)
    record_run_status(status="paused")
    record_error_decision(decision="ask-user", source="rules")
    record_routing_decision(decision="review", pattern="mixed")

    for name, labels in SERIES:
        assert _sample(name, labels) == before[name] + 1.0, name

    transport = httpx.ASGITransport(app=main.app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.get("/metrics")
    finally:
        await transport.aclose()

    assert response.status_code == 200
    assert response.headers.get("content-type", "").startswith("text/plain")

    body = response.text
    for name, labels in SERIES:
        assert name in body
        for key, value in labels.items():
            assert f'{key}="{value}"' in body
    assert "reasonchain_execution_step_latency_seconds_bucket" in body
