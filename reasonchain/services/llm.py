from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, ClassVar, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama

from ..core.config import Settings
from ..core.exceptions import LLMCallError
from ..core.logging import get_logger
from ..core.metrics import record_llm_call

logger = get_logger(name=__name__)


def _build_base_url(host: str, port: int) -> str:
    if ":" in host.rsplit("/", maxsplit=1)[-1]:
        return host.rstrip("/")
    return f"{host.rstrip('/')}:{port}"


def build_messages(prompt: str, system_prompt: str | None = None) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


@dataclass
class LLMService:
    """LangChain-based client for Ollama models that raises instead of degrading.

    Callers own the fallback path: every failure (timeout, transport error,
    open circuit, disabled configuration) surfaces as ``LLMCallError``.
    """

    settings: Settings
    _client: Any
    model: str
    default_system_prompt: str = (
        "You are part of a multi-agent reasoning pipeline. Be concise and follow the requested output format."
    )
    _client_cache: ClassVar[dict[str, Any]] = {}
    _consecutive_failures: ClassVar[int] = 0
    _last_failure_time: ClassVar[float] = 0.0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        model: str | None = None,
        client: Any | None = None,
    ) -> "LLMService":
        model_name = model or settings.ollama.model
        if client is None and settings.llm.enabled:
            cache_key = f"{settings.ollama.host}:{settings.ollama.port}:{model_name}"
            cached = cls._client_cache.get(cache_key)
            if cached is None:
                base_url = _build_base_url(settings.ollama.host, settings.ollama.port)
                client_kwargs: dict[str, Any] = {}
                if settings.ollama.api_key:
                    client_kwargs["headers"] = {"Authorization": f"Bearer {settings.ollama.api_key}"}
                cached = ChatOllama(
                    model=model_name,
                    base_url=base_url,
                    temperature=settings.llm.temperature,
                    client_kwargs=client_kwargs,
                )
                cls._client_cache[cache_key] = cached
            client = cached
        return cls(settings=settings, _client=client, model=model_name)

    @property
    def is_configured(self) -> bool:
        return self.settings.llm.enabled and self._client is not None and bool(self.model)

    @classmethod
    def reset_circuit(cls) -> None:
        cls._consecutive_failures = 0
        cls._last_failure_time = 0.0

    async def call(
        self,
        messages: str | Sequence[BaseMessage],
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        """Send messages to the model and return the reply text."""
        if not self.is_configured:
            raise LLMCallError("LLM is not configured")
        if isinstance(messages, str):
            prepared = build_messages(messages, system_prompt or self.default_system_prompt)
        else:
            prepared = list(messages)

        self._guard_circuit()

        llm_settings = self.settings.llm
        options: dict[str, Any] = {
            "temperature": llm_settings.temperature if temperature is None else temperature,
            "num_predict": max_tokens or llm_settings.max_output_tokens,
        }
        invoke_kwargs: dict[str, Any] = {"options": options}
        if json_mode:
            invoke_kwargs["format"] = "json"

        last_error: Exception | None = None
        for attempt in range(llm_settings.max_retries):
            try:
                result = await asyncio.wait_for(
                    self._client.ainvoke(prepared, **invoke_kwargs),
                    timeout=llm_settings.request_timeout_seconds,
                )
            except asyncio.TimeoutError:
                last_error = asyncio.TimeoutError(
                    f"LLM request timed out after {llm_settings.request_timeout_seconds} seconds"
                )
                self._register_failure()
                logger.warning(
                    "llm_call_timeout",
                    attempt=attempt + 1,
                    max_attempts=llm_settings.max_retries,
                    model=self.model,
                )
            except Exception as exc:
                last_error = exc
                self._register_failure()
                logger.warning(
                    "llm_call_retry",
                    attempt=attempt + 1,
                    max_attempts=llm_settings.max_retries,
                    error=str(exc),
                    model=self.model,
                )
            else:
                LLMService._consecutive_failures = 0
                record_llm_call(model=self.model, outcome="success")
                return _extract_content(result)

            if attempt < llm_settings.max_retries - 1:
                delay = min(llm_settings.base_backoff_seconds * (2**attempt), llm_settings.max_backoff_seconds)
                if delay > 0:
                    await asyncio.sleep(delay)

        record_llm_call(model=self.model, outcome="failure")
        logger.error(
            "llm_call_failed",
            error=str(last_error) if last_error else "unknown",
            model=self.model,
            attempts=llm_settings.max_retries,
        )
        raise LLMCallError(f"LLM call failed after {llm_settings.max_retries} attempts: {last_error}") from last_error

    def _guard_circuit(self) -> None:
        llm_settings = self.settings.llm
        if LLMService._consecutive_failures < llm_settings.circuit_breaker_threshold:
            return
        since_failure = time.monotonic() - LLMService._last_failure_time
        if since_failure >= llm_settings.circuit_breaker_reset_seconds:
            logger.info("llm_circuit_breaker_reset", time_since_failure=since_failure, model=self.model)
            LLMService._consecutive_failures = 0
            return
        record_llm_call(model=self.model, outcome="circuit_open")
        logger.warning(
            "llm_circuit_breaker_open",
            consecutive_failures=LLMService._consecutive_failures,
            time_until_reset=llm_settings.circuit_breaker_reset_seconds - since_failure,
            model=self.model,
        )
        raise LLMCallError("LLM circuit breaker open")

    @staticmethod
    def _register_failure() -> None:
        LLMService._consecutive_failures += 1
        LLMService._last_failure_time = time.monotonic()


def _extract_content(result: Any) -> str:
    content = result.content if isinstance(result, AIMessage) or hasattr(result, "content") else result
    if isinstance(content, list):
        return " ".join(
            str(item.get("text", "")) if isinstance(item, dict) else str(item)
            for item in content
        )
    return str(content)
