from __future__ import annotations

from typing import Sequence

import pytest

from reasonchain.services.embedding import (
    DETERMINISTIC_PROVIDER,
    DeterministicFallbackBackend,
    EmbeddingCache,
    EmbeddingModelInfo,
    EmbeddingService,
    EmbeddingServiceConfig,
)
from reasonchain.services.examples import cosine_similarity


class DummyBackend:
    def __init__(self, name: str, provider: str, dimension: int = 3) -> None:
        self.info = EmbeddingModelInfo(provider=provider, model_name=name, vector_dimension=dimension)
        self.calls: list[list[str]] = []

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        batch = list(texts)
        self.calls.append(batch)
        base = float(len(self.calls))
        return [[base + index for _ in range(self.info.vector_dimension or 1)] for index in range(len(batch))]

    async def close(self) -> None:
        return None


class FailingBackend:
    def __init__(self) -> None:
        self.info = EmbeddingModelInfo(provider="primary", model_name="unavailable", vector_dimension=3)

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        raise RuntimeError("backend down")

    async def close(self) -> None:
        return None


def _service(primary, fallbacks=(), *, cache_enabled: bool = True) -> EmbeddingService:
    return EmbeddingService(
        EmbeddingServiceConfig(model_name="primary-model"),
        cache=EmbeddingCache(None, namespace="test-cache", ttl=60, enabled=cache_enabled),
        primary_backend=primary,
        fallback_backends=list(fallbacks),
    )


@pytest.mark.asyncio
async def test_embedding_service_uses_cache() -> None:
    backend = DummyBackend("primary-model", "sentence")
    service = _service(backend)

    record_first = await service.embed_text("list facility ABC")
    record_second = await service.embed_text("  list facility ABC ")

    assert len(backend.calls) == 1
    assert record_first.vector == record_second.vector
    assert record_first.metadata["model_name"] == "primary-model"
    assert record_second.metadata["cached"] is True

    await service.aclose()


@pytest.mark.asyncio
async def test_disabled_cache_always_embeds() -> None:
    backend = DummyBackend("primary-model", "sentence")
    service = _service(backend, cache_enabled=False)

    await service.embed_text("compare facilities")
    await service.embed_text("compare facilities")

    assert len(backend.calls) == 2


@pytest.mark.asyncio
async def test_embedding_service_falls_back_when_primary_fails() -> None:
    fallback = DummyBackend("fallback-model", "fallback")
    service = _service(FailingBackend(), [fallback])

    records = await service.embed_documents(["first query", "second query"])

    assert fallback.calls == [["first query", "second query"]]
    assert [record.metadata["model_name"] for record in records] == ["fallback-model", "fallback-model"]


@pytest.mark.asyncio
async def test_all_backends_failing_raises() -> None:
    service = _service(FailingBackend(), [FailingBackend()])

    with pytest.raises(RuntimeError, match="all_embedding_backends_failed"):
        await service.embed_text("anything")


@pytest.mark.asyncio
async def test_deterministic_backend_is_stable() -> None:
    backend = DeterministicFallbackBackend(dimension=8)

    first, second, other = await backend.embed(["same text", "same text", "other text"])

    assert first == second
    assert first != other
    assert len(first) == 8
    assert all(-1.0 <= value < 1.0 for value in first)


@pytest.mark.asyncio
async def test_deterministic_vectors_for_unrelated_texts_are_near_orthogonal() -> None:
    backend = DeterministicFallbackBackend(dimension=384)

    first, other = await backend.embed(["list facility ABC", "compare contaminant trends"])

    assert abs(cosine_similarity(first, other)) < 0.3


@pytest.mark.asyncio
async def test_cached_records_keep_their_provider() -> None:
    service = _service(DeterministicFallbackBackend(dimension=8))

    fresh = await service.embed_text("list facility ABC")
    cached = await service.embed_text("list facility ABC")

    assert fresh.metadata["model_provider"] == DETERMINISTIC_PROVIDER
    assert cached.metadata["cached"] is True
    assert cached.metadata["model_provider"] == DETERMINISTIC_PROVIDER
    assert cached.vector == fresh.vector
