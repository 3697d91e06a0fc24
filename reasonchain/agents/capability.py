from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from ..core.exceptions import LLMCallError
from ..core.logging import get_logger
from ..services.llm import LLMService
from ..utils.parsing import (
    JSONExtractionError,
    extract_list,
    extract_section,
    parse_json_object,
    parse_key_values,
)

logger = get_logger(name=__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


@dataclass(slots=True)
class ModelCapability:
    """Model access handed to an agent as a dependency.

    Agents hold one of these instead of inheriting model plumbing. Structured
    calls validate the reply against a pydantic schema; the text helpers are the
    fallback for replies that ignore the requested format.
    """

    agent_name: str
    llm: LLMService | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    _initialized: bool = field(default=False, init=False)

    def initialize(self) -> bool:
        """Return whether the capability can reach a model."""
        self._initialized = True
        available = self.available
        logger.debug("model_capability_initialized", agent=self.agent_name, available=available)
        return available

    @property
    def available(self) -> bool:
        return self.llm is not None and self.llm.is_configured

    async def call_model(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        if self.llm is None:
            raise LLMCallError(f"No model configured for {self.agent_name}")
        return await self.llm.call(
            prompt,
            system_prompt=system_prompt or self.system_prompt,
            temperature=self.temperature if temperature is None else temperature,
            max_tokens=max_tokens or self.max_tokens,
            json_mode=json_mode,
        )

    async def call_structured(
        self,
        prompt: str,
        schema: type[SchemaT],
        *,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> SchemaT:
        """Call the model in JSON mode and validate the reply against ``schema``.

        Replies that ignore JSON mode are read as ``key: value`` lines and
        bulleted sections before giving up.
        """
        text = await self.call_model(
            prompt,
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=True,
        )
        try:
            payload: dict[str, Any] = parse_json_object(text)
        except JSONExtractionError:
            payload = self._text_payload(text, schema)
            logger.info("model_structured_output_from_text", agent=self.agent_name, schema=schema.__name__)
        try:
            return schema.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "model_structured_output_invalid",
                agent=self.agent_name,
                schema=schema.__name__,
                error=str(exc),
            )
            raise LLMCallError(f"{self.agent_name} returned output not matching {schema.__name__}") from exc

    @staticmethod
    def _text_payload(text: str, schema: type[BaseModel]) -> dict[str, Any]:
        payload: dict[str, Any] = dict(parse_key_values(text))
        for name in schema.model_fields:
            if name in payload:
                continue
            items = extract_list(text, name.replace("_", " "))
            if items:
                payload[name] = items
        return payload

    @staticmethod
    def extract_section(text: str, name: str) -> str | None:
        return extract_section(text, name)

    @staticmethod
    def extract_list(text: str, name: str | None = None) -> list[str]:
        return extract_list(text, name)
