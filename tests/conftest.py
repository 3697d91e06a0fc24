from __future__ import annotations

import pytest

from reasonchain.services.llm import LLMService


@pytest.fixture(autouse=True)
def reset_llm_circuit():
    LLMService.reset_circuit()
    yield
    LLMService.reset_circuit()
