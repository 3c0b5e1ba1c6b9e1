from __future__ import annotations

from collections.abc import Awaitable, Callable
import time
from typing import Any

ProgressCallback = Callable[[str, dict[str, Any]], Awaitable[None]]


class ProgressTracker:
    """Throttle progress writes for a long-running job.

    Every ``record_progress`` call is counted; the call is forwarded to ``on_update`` when the
    count reaches a multiple of ``milestone_interval`` or when ``time_interval_ms`` has passed
    since the previous emission. ``flush`` forwards the last call that was held back.
    """

    def __init__(
        self,
        on_update: ProgressCallback,
        *,
        milestone_interval: int = 10,
        time_interval_ms: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._on_update = on_update
        self.milestone_interval = max(1, milestone_interval)
        self.time_interval_ms = max(0, time_interval_ms)
        self._clock = clock
        self._count = 0
        self._last_emit = clock()
        self._pending: tuple[str, dict[str, Any]] | None = None

    @property
    def count(self) -> int:
        return self._count

    async def record_progress(self, message: str, stats: dict[str, Any] | None = None) -> bool:
        self._count += 1
        payload = dict(stats or {})
        elapsed_ms = (self._clock() - self._last_emit) * 1000.0
        if self._count % self.milestone_interval == 0 or elapsed_ms >= self.time_interval_ms:
            await self._emit(message, payload)
            return True
        self._pending = (message, payload)
        return False

    async def force_update(self, message: str, stats: dict[str, Any] | None = None) -> None:
        await self._emit(message, dict(stats or {}))

    async def flush(self) -> bool:
        if self._pending is None:
            return False
        message, stats = self._pending
        await self._emit(message, stats)
        return True

    def reset(self) -> None:
        self._count = 0
        self._last_emit = self._clock()
        self._pending = None

    async def _emit(self, message: str, stats: dict[str, Any]) -> None:
        self._pending = None
        self._last_emit = self._clock()
        await self._on_update(message, stats)
