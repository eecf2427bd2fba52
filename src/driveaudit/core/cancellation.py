"""
Cooperative cancellation.

A CancellationToken is passed down every long-running call chain. Nothing
is ever interrupted preemptively: the scan driver and the integrated
orchestrator poll the token at safe points (between pages, between batches,
between users) and stop cleanly when it is set.

A token can additionally be linked to a persisted status via ``probe``, an
async callable that re-reads the owning document. This mirrors the job
status re-read performed by long-running tasks so that a cancel request
issued from another process is still observed.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

# Minimum seconds between two probe calls on the same token
DEFAULT_PROBE_INTERVAL = 2.0


class CancellationToken:
    """Flag polled at safe checkpoints, optionally backed by a persisted status."""

    def __init__(
        self,
        probe: Callable[[], Awaitable[bool]] | None = None,
        probe_interval: float = DEFAULT_PROBE_INTERVAL,
        parent: "CancellationToken | None" = None,
    ):
        self._event = asyncio.Event()
        self._probe = probe
        self._probe_interval = probe_interval
        self._last_probe: float | None = None
        self._parent = parent
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.debug(f"Cancellation requested: {reason}")

    @property
    def is_cancelled(self) -> bool:
        """Local flag only. Use ``check()`` at checkpoints to include the probe."""
        if self._parent is not None and self._parent.is_cancelled:
            return True
        return self._event.is_set()

    async def check(self) -> bool:
        """Return True if cancellation was requested locally or via the probe."""
        if self.is_cancelled:
            return True
        if self._parent is not None and await self._parent.check():
            self.cancel(self._parent.reason or "cancelled")
            return True
        if self._probe is None:
            return False

        now = time.monotonic()
        if self._last_probe is not None and now - self._last_probe < self._probe_interval:
            return False
        self._last_probe = now

        if await self._probe():
            self.cancel("cancel requested via stored status")
            return True
        return False

    def child(self, probe: Callable[[], Awaitable[bool]] | None = None) -> "CancellationToken":
        """Token cancelled whenever this one is, with its own optional probe."""
        return CancellationToken(probe=probe, probe_interval=self._probe_interval, parent=self)
