from __future__ import annotations

import asyncio
import json
from typing import Any, Protocol

import asyncpg
from pydantic import BaseModel

from ..core.config import Settings
from ..core.logging import get_logger

logger = get_logger(name=__name__)


class OutputStore(Protocol):
    """One document per ``(request_id, agent_name)``; saving again replaces it."""

    async def save(self, output: BaseModel) -> None:
        ...

    async def get_by_request_id(self, request_id: str, agent_name: str) -> dict[str, Any] | None:
        ...

    async def list_recent(self, agent_name: str, *, limit: int = 20) -> list[dict[str, Any]]:
        ...


def _document(output: BaseModel) -> tuple[str, str, dict[str, Any]]:
    payload = output.model_dump(mode="json")
    request_id = payload.get("request_id")
    agent_name = payload.get("agent_name")
    if not request_id or not agent_name:
        raise ValueError("Output documents require request_id and agent_name")
    return str(request_id), str(agent_name), payload


class InMemoryOutputStore:
    def __init__(self) -> None:
        self._documents: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def save(self, output: BaseModel) -> None:
        request_id, agent_name, payload = _document(output)
        async with self._lock:
            # Re-inserting moves the key to the end so list_recent stays ordered by last write.
            self._documents.pop((request_id, agent_name), None)
            self._documents[(request_id, agent_name)] = payload

    async def get_by_request_id(self, request_id: str, agent_name: str) -> dict[str, Any] | None:
        document = self._documents.get((request_id, agent_name))
        return dict(document) if document is not None else None

    async def list_recent(self, agent_name: str, *, limit: int = 20) -> list[dict[str, Any]]:
        matching = [doc for (_, name), doc in self._documents.items() if name == agent_name]
        return [dict(doc) for doc in reversed(matching[-limit:])] if limit > 0 else []


class PostgresOutputStore:
    _CREATE_TABLE = """
        CREATE TABLE IF NOT EXISTS {table} (
            request_id TEXT NOT NULL,
            agent_name TEXT NOT NULL,
            payload JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (request_id, agent_name)
        )
    """

    _UPSERT = """
        INSERT INTO {table}(request_id, agent_name, payload)
        VALUES($1, $2, $3::jsonb)
        ON CONFLICT (request_id, agent_name)
        DO UPDATE SET
            payload = EXCLUDED.payload,
            updated_at = NOW()
    """

    _FETCH = """
        SELECT payload
        FROM {table}
        WHERE request_id = $1 AND agent_name = $2
    """

    _FETCH_RECENT = """
        SELECT payload
        FROM {table}
        WHERE agent_name = $1
        ORDER BY updated_at DESC
        LIMIT $2
    """

    def __init__(self, pool: Any, *, table_name: str = "agent_outputs") -> None:
        self._pool = pool
        self._table = table_name
        self._schema_ready = False

    @classmethod
    async def from_settings(cls, settings: Settings) -> "PostgresOutputStore":
        pool = await asyncpg.create_pool(
            dsn=str(settings.postgres.dsn),
            min_size=settings.postgres.pool_min_size,
            max_size=settings.postgres.pool_max_size,
        )
        return cls(pool, table_name=settings.postgres.table_name)

    def _sql(self, template: str) -> str:
        return template.format(table=self._table)

    async def _ensure_schema(self, connection: Any) -> None:
        if self._schema_ready:
            return
        await connection.execute(self._sql(self._CREATE_TABLE))
        self._schema_ready = True

    async def save(self, output: BaseModel) -> None:
        request_id, agent_name, payload = _document(output)
        async with self._pool.acquire() as connection:
            await self._ensure_schema(connection)
            await connection.execute(self._sql(self._UPSERT), request_id, agent_name, json.dumps(payload))

    async def get_by_request_id(self, request_id: str, agent_name: str) -> dict[str, Any] | None:
        async with self._pool.acquire() as connection:
            await self._ensure_schema(connection)
            row = await connection.fetchrow(self._sql(self._FETCH), request_id, agent_name)
        if row is None:
            return None
        return _decode_payload(row["payload"])

    async def list_recent(self, agent_name: str, *, limit: int = 20) -> list[dict[str, Any]]:
        async with self._pool.acquire() as connection:
            await self._ensure_schema(connection)
            rows = await connection.fetch(self._sql(self._FETCH_RECENT), agent_name, limit)
        return [_decode_payload(row["payload"]) for row in rows]

    async def close(self) -> None:
        await self._pool.close()


def _decode_payload(value: Any) -> dict[str, Any]:
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


async def save_best_effort(store: OutputStore | None, output: BaseModel) -> bool:
    """Persist an output; failures are logged and reported as ``False``."""
    if store is None:
        return False
    try:
        await store.save(output)
    except Exception as exc:
        logger.exception(
            "agent_output_save_failed",
            agent_name=getattr(output, "agent_name", None),
            request_id=getattr(output, "request_id", None),
            error=str(exc),
        )
        return False
    return True
