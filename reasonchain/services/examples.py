from __future__ import annotations

import asyncio
import math
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

from qdrant_client import AsyncQdrantClient, models

from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.complexity import ComplexityExample, ExampleMatch

logger = get_logger(name=__name__)


class ComplexityExampleStore(Protocol):
    async def query(self, embedding: Sequence[float], *, top_k: int, min_score: float) -> list[ExampleMatch]:
        ...

    async def add_example(self, example: ComplexityExample, embedding: Sequence[float]) -> ComplexityExample:
        ...

    async def increment_usage_count(self, example_id: str) -> None:
        ...

    async def list_examples(self) -> list[ComplexityExample]:
        ...

    async def delete_example(self, example_id: str) -> bool:
        ...


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    if len(left) != len(right) or not left:
        return 0.0
    dot = sum(a * b for a, b in zip(left, right))
    left_norm = math.sqrt(sum(a * a for a in left))
    right_norm = math.sqrt(sum(b * b for b in right))
    if left_norm == 0.0 or right_norm == 0.0:
        return 0.0
    return dot / (left_norm * right_norm)


class InMemoryExampleStore:
    """Example store kept in process memory; similarity is plain cosine."""

    def __init__(self) -> None:
        self._examples: dict[str, tuple[ComplexityExample, list[float]]] = {}
        self._lock = asyncio.Lock()

    async def query(self, embedding: Sequence[float], *, top_k: int, min_score: float) -> list[ExampleMatch]:
        scored = [
            ExampleMatch(example=example, similarity=round(cosine_similarity(embedding, vector), 6))
            for example, vector in self._examples.values()
        ]
        matches = [match for match in scored if match.similarity >= min_score]
        matches.sort(key=lambda match: match.similarity, reverse=True)
        return matches[:top_k]

    async def add_example(self, example: ComplexityExample, embedding: Sequence[float]) -> ComplexityExample:
        async with self._lock:
            self._examples[example.id] = (example, list(embedding))
        return example

    async def increment_usage_count(self, example_id: str) -> None:
        async with self._lock:
            entry = self._examples.get(example_id)
            if entry is None:
                return
            example, vector = entry
            updated = example.model_copy(
                update={"usage_count": example.usage_count + 1, "updated_at": datetime.now(timezone.utc)}
            )
            self._examples[example_id] = (updated, vector)

    async def get_example(self, example_id: str) -> ComplexityExample | None:
        entry = self._examples.get(example_id)
        return entry[0] if entry else None

    async def list_examples(self) -> list[ComplexityExample]:
        return sorted((example for example, _ in self._examples.values()), key=lambda item: item.created_at)

    async def delete_example(self, example_id: str) -> bool:
        async with self._lock:
            return self._examples.pop(example_id, None) is not None


class QdrantExampleStore:
    def __init__(self, client: AsyncQdrantClient, *, collection_name: str) -> None:
        self._client = client
        self._collection_name = collection_name
        self._collection_ready = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "QdrantExampleStore":
        client = AsyncQdrantClient(url=settings.qdrant.url, api_key=settings.qdrant.api_key)
        return cls(client, collection_name=settings.qdrant.collection_name)

    async def _ensure_collection(self, dimension: int) -> None:
        if self._collection_ready:
            return
        if not await self._client.collection_exists(self._collection_name):
            await self._client.create_collection(
                collection_name=self._collection_name,
                vectors_config=models.VectorParams(size=dimension, distance=models.Distance.COSINE),
            )
            logger.info("complexity_examples_collection_created", collection=self._collection_name, dimension=dimension)
        self._collection_ready = True

    async def query(self, embedding: Sequence[float], *, top_k: int, min_score: float) -> list[ExampleMatch]:
        if not await self._client.collection_exists(self._collection_name):
            return []
        response = await self._client.query_points(
            collection_name=self._collection_name,
            query=list(embedding),
            limit=top_k,
            score_threshold=min_score,
            with_payload=True,
        )
        matches: list[ExampleMatch] = []
        for point in response.points:
            example = self._example_from_payload(point.id, point.payload)
            if example is None:
                continue
            matches.append(ExampleMatch(example=example, similarity=float(point.score)))
        return matches

    async def add_example(self, example: ComplexityExample, embedding: Sequence[float]) -> ComplexityExample:
        await self._ensure_collection(len(embedding))
        await self._client.upsert(
            collection_name=self._collection_name,
            wait=True,
            points=[models.PointStruct(id=example.id, vector=list(embedding), payload=example.to_payload())],
        )
        return example

    async def increment_usage_count(self, example_id: str) -> None:
        records = await self._client.retrieve(
            collection_name=self._collection_name,
            ids=[example_id],
            with_payload=True,
        )
        if not records:
            return
        payload = dict(records[0].payload or {})
        await self._client.set_payload(
            collection_name=self._collection_name,
            payload={
                "usage_count": int(payload.get("usage_count", 0)) + 1,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
            points=[example_id],
        )

    async def list_examples(self) -> list[ComplexityExample]:
        if not await self._client.collection_exists(self._collection_name):
            return []
        examples: list[ComplexityExample] = []
        offset: Any = None
        while True:
            points, offset = await self._client.scroll(
                collection_name=self._collection_name,
                limit=256,
                offset=offset,
                with_payload=True,
            )
            for point in points:
                example = self._example_from_payload(point.id, point.payload)
                if example is not None:
                    examples.append(example)
            if offset is None:
                break
        return sorted(examples, key=lambda item: item.created_at)

    async def delete_example(self, example_id: str) -> bool:
        records = await self._client.retrieve(collection_name=self._collection_name, ids=[example_id])
        if not records:
            return False
        await self._client.delete(
            collection_name=self._collection_name,
            points_selector=models.PointIdsList(points=[example_id]),
        )
        return True

    @staticmethod
    def _example_from_payload(point_id: Any, payload: dict[str, Any] | None) -> ComplexityExample | None:
        if not payload:
            return None
        data = dict(payload)
        data.setdefault("id", str(point_id))
        try:
            return ComplexityExample.model_validate(data)
        except ValueError as exc:
            logger.warning("complexity_example_payload_invalid", point_id=str(point_id), error=str(exc))
            return None

    async def close(self) -> None:
        await self._client.close()
