from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Protocol, Sequence

import httpx
from redis.asyncio import Redis

from ..core.config import EmbeddingSettings, Settings
from ..core.logging import get_logger

logger = get_logger(name=__name__)

DETERMINISTIC_PROVIDER = "deterministic"


@dataclass(slots=True)
class EmbeddingServiceConfig:
    model_name: str = "all-MiniLM-L6-v2"
    fallback_model: str | None = "nomic-embed-text"
    cache_namespace: str = "reasonchain:embedding"
    cache_ttl_seconds: int = 86_400
    preferred_dimension: int | None = None
    cache_enabled: bool = True


@dataclass(slots=True)
class EmbeddingModelInfo:
    provider: str
    model_name: str
    vector_dimension: int | None


@dataclass(slots=True)
class CachedEmbedding:
    vector: list[float]
    provider: str | None = None


@dataclass(slots=True)
class EmbeddingRecord:
    vector: list[float]
    metadata: dict[str, Any]
    cache_key: str


class EmbeddingBackend(Protocol):
    info: EmbeddingModelInfo

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        ...

    async def close(self) -> None:  # pragma: no cover - optional cleanup hook
        ...


class EmbeddingCache:
    """Process-local vector cache, optionally mirrored into Redis."""

    def __init__(
        self,
        client: Redis | None,
        *,
        namespace: str,
        ttl: int,
        enabled: bool = True,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._ttl = ttl
        self._enabled = enabled
        self._local: dict[str, CachedEmbedding] = {}

    def _key(self, cache_key: str) -> str:
        return f"{self._namespace}:{cache_key}"

    async def get(self, cache_key: str) -> CachedEmbedding | None:
        if not self._enabled:
            return None
        if cache_key in self._local:
            return self._local[cache_key]
        if self._client is None:
            return None
        namespaced = self._key(cache_key)
        try:
            value = await self._client.get(namespaced)
        except Exception as exc:  # pragma: no cover - network failures
            logger.warning("embedding_cache_get_failed", key=namespaced, error=str(exc))
            return None
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        try:
            payload = json.loads(value)
            if isinstance(payload, dict):
                entry = CachedEmbedding(
                    vector=[float(v) for v in payload["vector"]],
                    provider=payload.get("provider"),
                )
            else:
                entry = CachedEmbedding(vector=[float(v) for v in payload])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:  # pragma: no cover
            logger.warning("embedding_cache_decode_failed", key=namespaced, error=str(exc))
            return None
        self._local[cache_key] = entry
        return entry

    async def set(self, cache_key: str, vector: Sequence[float], *, provider: str | None = None) -> None:
        if not self._enabled:
            return
        entry = CachedEmbedding(vector=list(vector), provider=provider)
        self._local[cache_key] = entry
        if self._client is not None:
            payload = json.dumps({"vector": entry.vector, "provider": provider})
            try:
                await self._client.set(self._key(cache_key), payload, ex=self._ttl or None)
            except Exception as exc:  # pragma: no cover - network failures
                logger.warning("embedding_cache_set_failed", key=cache_key, error=str(exc))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._local.clear()


@lru_cache(maxsize=2)
def _load_sentence_transformer(model_name: str) -> Any:
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(model_name)


class SentenceTransformerBackend:
    def __init__(self, *, model_name: str, normalize: bool = True) -> None:
        self._model_name = model_name
        self._normalize = normalize
        self.info = EmbeddingModelInfo(
            provider="sentence-transformers",
            model_name=model_name,
            vector_dimension=None,
        )

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        def _encode() -> list[list[float]]:
            model = _load_sentence_transformer(self._model_name)
            embeddings = model.encode(list(texts), normalize_embeddings=self._normalize)
            return [list(map(float, embedding)) for embedding in embeddings]

        vectors = await asyncio.to_thread(_encode)
        if vectors and self.info.vector_dimension is None:
            self.info = EmbeddingModelInfo(
                provider=self.info.provider,
                model_name=self._model_name,
                vector_dimension=len(vectors[0]),
            )
        return vectors

    async def close(self) -> None:  # pragma: no cover - compatibility hook
        return None


class OllamaEmbeddingBackend:
    def __init__(self, *, host: str, port: int, model_name: str, timeout: float = 30.0) -> None:
        base = host.rstrip("/")
        if ":" not in base.rsplit("/", maxsplit=1)[-1]:
            base = f"{base}:{port}"
        self._endpoint = f"{base}/api/embeddings"
        self._model_name = model_name
        self._client = httpx.AsyncClient(timeout=timeout)
        self.info = EmbeddingModelInfo(provider="ollama", model_name=model_name, vector_dimension=None)

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            response = await self._client.post(self._endpoint, json={"model": self._model_name, "prompt": text})
            response.raise_for_status()
            embedding = response.json().get("embedding")
            if not isinstance(embedding, list):
                raise RuntimeError("ollama_embedding_invalid_response")
            vectors.append([float(value) for value in embedding])
        if vectors and self.info.vector_dimension is None:
            self.info = EmbeddingModelInfo(
                provider=self.info.provider,
                model_name=self.info.model_name,
                vector_dimension=len(vectors[0]),
            )
        return vectors

    async def close(self) -> None:
        await self._client.aclose()


class DeterministicFallbackBackend:
    """Hash-derived vectors: identical text maps to identical vectors, nothing more.

    Similarity between two different texts carries no meaning, so consumers
    that rank by similarity should check for ``DETERMINISTIC_PROVIDER``.
    """

    def __init__(self, *, dimension: int = 384) -> None:
        self._dimension = max(1, dimension)
        self.info = EmbeddingModelInfo(
            provider=DETERMINISTIC_PROVIDER,
            model_name="sha256-fallback",
            vector_dimension=self._dimension,
        )

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._hash_to_vector(text) for text in texts]

    def _hash_to_vector(self, text: str) -> list[float]:
        blocks = (self._dimension * 4 // 32) + 1
        stream = b"".join(hashlib.sha256(f"{block}:{text}".encode("utf-8")).digest() for block in range(blocks))
        integers = [int.from_bytes(stream[i : i + 4], "big") for i in range(0, self._dimension * 4, 4)]
        # Centred on zero so unrelated texts land near orthogonal.
        half = 2**31
        return [(value - half) / half for value in integers]

    async def close(self) -> None:  # pragma: no cover - compatibility hook
        return None


class EmbeddingService:
    def __init__(
        self,
        config: EmbeddingServiceConfig,
        *,
        cache: EmbeddingCache,
        primary_backend: EmbeddingBackend | None = None,
        fallback_backends: Sequence[EmbeddingBackend] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.config = config
        self._cache = cache
        self._settings = settings
        self._primary = primary_backend or SentenceTransformerBackend(model_name=config.model_name)
        self._fallbacks = list(fallback_backends) if fallback_backends is not None else self._build_default_fallbacks()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        redis_client: Redis | None = None,
        primary_backend: EmbeddingBackend | None = None,
        fallback_backends: Sequence[EmbeddingBackend] | None = None,
    ) -> "EmbeddingService":
        embedding_settings: EmbeddingSettings = settings.embedding
        cache_client = redis_client
        if cache_client is None and embedding_settings.cache_enabled and embedding_settings.redis_cache_enabled:
            cache_client = Redis.from_url(str(settings.redis.url))

        config = EmbeddingServiceConfig(
            model_name=embedding_settings.default_model,
            fallback_model=embedding_settings.fallback_model,
            cache_namespace=embedding_settings.cache_namespace,
            cache_ttl_seconds=embedding_settings.cache_ttl_seconds,
            preferred_dimension=embedding_settings.preferred_dimension,
            cache_enabled=embedding_settings.cache_enabled,
        )
        cache = EmbeddingCache(
            cache_client,
            namespace=config.cache_namespace,
            ttl=config.cache_ttl_seconds,
            enabled=config.cache_enabled,
        )
        return cls(
            config=config,
            cache=cache,
            primary_backend=primary_backend,
            fallback_backends=fallback_backends,
            settings=settings,
        )

    async def embed_text(self, text: str) -> EmbeddingRecord:
        records = await self.embed_documents([text])
        return records[0]

    async def embed_documents(self, documents: Sequence[str]) -> list[EmbeddingRecord]:
        if not documents:
            return []

        results: list[EmbeddingRecord | None] = [None] * len(documents)
        misses: list[str] = []
        miss_indices: list[int] = []
        miss_keys: list[str] = []

        for index, doc in enumerate(documents):
            normalized = doc.strip()
            cache_key = self._make_cache_key(normalized)
            cached = await self._cache.get(cache_key)
            if cached is not None:
                results[index] = EmbeddingRecord(
                    vector=list(cached.vector),
                    metadata={"cached": True, "model_provider": cached.provider},
                    cache_key=cache_key,
                )
            else:
                misses.append(normalized)
                miss_indices.append(index)
                miss_keys.append(cache_key)

        if misses:
            vectors, info = await self._embed_with_backends(misses)
            for offset, vector in enumerate(vectors):
                key = miss_keys[offset]
                await self._cache.set(key, vector, provider=info.provider)
                metadata = {
                    "cached": False,
                    "model_name": info.model_name,
                    "model_provider": info.provider,
                    "vector_dimension": info.vector_dimension or len(vector),
                    "generated_at": datetime.now(timezone.utc).isoformat(),
                }
                results[miss_indices[offset]] = EmbeddingRecord(vector=list(vector), metadata=metadata, cache_key=key)

        final_records = [record for record in results if record is not None]
        if len(final_records) != len(documents):
            raise RuntimeError("embedding_result_unresolved")
        return final_records

    async def _embed_with_backends(self, texts: Sequence[str]) -> tuple[list[list[float]], EmbeddingModelInfo]:
        candidates: list[EmbeddingBackend] = [self._primary, *self._fallbacks]
        last_error: Exception | None = None
        for backend in candidates:
            try:
                vectors = await backend.embed(texts)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "embedding_backend_failed",
                    backend=backend.info.provider,
                    error=str(exc),
                )
                continue
            return vectors, backend.info
        raise RuntimeError("all_embedding_backends_failed") from last_error

    def _make_cache_key(self, text: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"{self.config.model_name or 'default'}:{digest}"

    def _build_default_fallbacks(self) -> list[EmbeddingBackend]:
        fallbacks: list[EmbeddingBackend] = []
        if self._settings is not None and self.config.fallback_model:
            fallbacks.append(
                OllamaEmbeddingBackend(
                    host=self._settings.ollama.host,
                    port=self._settings.ollama.port,
                    model_name=self.config.fallback_model,
                )
            )
        fallbacks.append(DeterministicFallbackBackend(dimension=self.config.preferred_dimension or 384))
        return fallbacks

    async def aclose(self) -> None:
        await self._cache.close()
        for backend in [self._primary, *self._fallbacks]:
            await backend.close()


__all__ = [
    "CachedEmbedding",
    "DETERMINISTIC_PROVIDER",
    "DeterministicFallbackBackend",
    "EmbeddingBackend",
    "EmbeddingCache",
    "EmbeddingModelInfo",
    "EmbeddingRecord",
    "EmbeddingService",
    "EmbeddingServiceConfig",
    "OllamaEmbeddingBackend",
    "SentenceTransformerBackend",
]
