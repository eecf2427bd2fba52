"""Background run registry.

``RunRegistry`` tracks the ``asyncio.Task`` driving each scan or integrated
job started in this process, together with its CancellationToken, so a
cancel request can reach a live driver directly and status calls can tell
whether a run still has a worker attached.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

from driveaudit.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)


@dataclass
class RunInfo:
    """Metadata for one background run."""

    key: str
    task: asyncio.Task
    token: CancellationToken
    started_at: float = field(default_factory=time.monotonic)


class RunRegistry:
    """Registry of background runs keyed by scan or job id."""

    def __init__(self) -> None:
        self._runs: dict[str, RunInfo] = {}

    def start(
        self,
        key: str,
        coro: Coroutine[Any, Any, Any],
        token: CancellationToken,
    ) -> asyncio.Task:
        """Schedule *coro* as the driver for *key*."""
        if self.is_attached(key):
            coro.close()
            raise RuntimeError(f"{key} already has a running driver")

        task = asyncio.create_task(coro, name=f"run-{key}")
        info = RunInfo(key=key, task=task, token=token)
        self._runs[key] = info

        def _done(t: asyncio.Task) -> None:
            if not t.cancelled() and t.exception() is not None:
                exc = t.exception()
                logger.error("%s: driver crashed (%s: %s)", key, type(exc).__name__, exc)
            if self._runs.get(key) is info:
                del self._runs[key]

        task.add_done_callback(_done)
        return task

    def is_attached(self, key: str) -> bool:
        info = self._runs.get(key)
        return info is not None and not info.task.done()

    def cancel(self, key: str, reason: str = "cancelled") -> bool:
        """Signal the live driver for *key*; False if none is attached."""
        info = self._runs.get(key)
        if info is None or info.task.done():
            return False
        info.token.cancel(reason)
        return True

    async def wait(self, key: str) -> Any:
        """Wait for the driver of *key* and return its result."""
        info = self._runs.get(key)
        if info is None:
            return None
        return await info.task

    async def stop_all(self, timeout: float = 10.0) -> None:
        """Cancel every run cooperatively, then force-cancel stragglers."""
        for info in self._runs.values():
            info.token.cancel("shutting down")

        running = [info.task for info in self._runs.values() if not info.task.done()]
        if running:
            _, pending = await asyncio.wait(running, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending, timeout=2.0)
                logger.warning(
                    "Force-cancelled %d runs after %.0fs timeout",
                    len(pending),
                    timeout,
                )

    def get_status(self) -> list[dict[str, Any]]:
        now = time.monotonic()
        return [
            {
                "key": info.key,
                "running": not info.task.done(),
                "uptime_seconds": round(now - info.started_at, 1),
                "cancel_requested": info.token.is_cancelled,
            }
            for info in self._runs.values()
        ]
