from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from typing import Callable

from ..core.config import ExecutionSettings
from ..core.logging import get_logger
from .engine import ExecutionRun

logger = get_logger(name=__name__)


class PausedRunRegistry:
    """Runs waiting for user feedback, keyed by request id.

    Entries older than ``ttl_seconds`` are dropped on access, and once more
    than ``max_runs`` are held the oldest pause is evicted first.
    """

    def __init__(
        self,
        *,
        max_runs: int = 100,
        ttl_seconds: float | None = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_runs = max(1, max_runs)
        self._ttl = ttl_seconds
        self._clock = clock
        self._storage: OrderedDict[str, tuple[float, ExecutionRun]] = OrderedDict()
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: ExecutionSettings) -> "PausedRunRegistry":
        return cls(max_runs=settings.max_paused_runs, ttl_seconds=settings.paused_run_ttl_seconds)

    def __len__(self) -> int:
        return len(self._storage)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._storage

    async def remember(self, run: ExecutionRun) -> None:
        """Keep ``run`` if it is waiting on the user, otherwise forget its request id."""
        request_id = run.output.request_id
        async with self._lock:
            if not run.requires_user_feedback:
                self._storage.pop(request_id, None)
                return
            self._storage.pop(request_id, None)
            self._storage[request_id] = (self._clock(), run)
            self._prune_locked()

    async def get(self, request_id: str) -> ExecutionRun | None:
        async with self._lock:
            self._prune_locked()
            entry = self._storage.get(request_id)
            return entry[1] if entry else None

    def _prune_locked(self) -> None:
        if self._ttl is not None:
            boundary = self._clock() - self._ttl
            expired = [request_id for request_id, (stored_at, _) in self._storage.items() if stored_at < boundary]
            for request_id in expired:
                del self._storage[request_id]
                logger.info("paused_run_evicted", request_id=request_id, reason="expired")
        while len(self._storage) > self._max_runs:
            request_id, _ = self._storage.popitem(last=False)
            logger.info("paused_run_evicted", request_id=request_id, reason="capacity")


__all__ = ["PausedRunRegistry"]
