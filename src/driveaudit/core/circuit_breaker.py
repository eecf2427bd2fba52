"""
Circuit breaker for calls to the file-store and directory APIs.

After ``failure_threshold`` consecutive transport or 5xx failures the
breaker opens and rejects requests until ``recovery_timeout`` has passed.
It then lets probe requests through (half-open) and closes again after
``success_threshold`` successes.

Usage:
    from driveaudit.core.circuit_breaker import CircuitBreaker

    breaker = CircuitBreaker.get_or_create("drive_api")

    async with breaker:
        response = await client.get(url)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum

from driveaudit.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation, requests pass through
    OPEN = "open"  # Failures exceeded threshold, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker instance."""

    failure_threshold: int = 5
    success_threshold: int = 2
    recovery_timeout: float = 60.0
    # Client errors say nothing about the health of the service
    exclude_status_codes: tuple = (400, 401, 403, 404, 410)


@dataclass
class CircuitBreakerStats:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0


class CircuitBreaker:
    """
    Async-compatible circuit breaker shared by every client talking to one API.

    Safe for concurrent use via asyncio.Lock.
    """

    _registry: dict[str, "CircuitBreaker"] = {}

    def __init__(self, name: str, config: CircuitBreakerConfig | None = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._lock = asyncio.Lock()

        self.stats = CircuitBreakerStats()
        CircuitBreaker._registry[name] = self

    @classmethod
    def get_or_create(
        cls, name: str, config: CircuitBreakerConfig | None = None
    ) -> "CircuitBreaker":
        """Return the registered breaker for *name*, creating it on first use."""
        breaker = cls._registry.get(name)
        if breaker is None:
            breaker = cls(name, config)
        return breaker

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def time_until_recovery(self) -> float:
        """Seconds until circuit enters half-open state."""
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return 0.0
        elapsed = time.monotonic() - self._last_failure_time
        return max(0.0, self.config.recovery_timeout - elapsed)

    def _transition_to(self, new_state: CircuitState) -> None:
        if self._state == new_state:
            return
        old_state = self._state
        self._state = new_state
        self.stats.state_changes += 1
        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
        logger.info(
            f"Circuit breaker '{self.name}' state: {old_state.value} -> {new_state.value}"
        )

    async def allow_request(self) -> bool:
        async with self._lock:
            if (
                self._state == CircuitState.OPEN
                and self._last_failure_time is not None
                and time.monotonic() - self._last_failure_time >= self.config.recovery_timeout
            ):
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state == CircuitState.OPEN:
                self.stats.rejected_calls += 1
                return False
            return True

    async def record_success(self) -> None:
        async with self._lock:
            self.stats.total_calls += 1
            self.stats.successful_calls += 1
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    async def record_failure(self, exception: Exception | None = None) -> None:
        async with self._lock:
            self.stats.total_calls += 1
            self.stats.failed_calls += 1
            self._last_failure_time = time.monotonic()
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.config.failure_threshold:
                    self._transition_to(CircuitState.OPEN)

    async def record_status(self, status_code: int) -> None:
        """Record an HTTP outcome, ignoring excluded client-error codes."""
        if status_code >= 500:
            await self.record_failure()
        elif status_code < 400 or status_code in self.config.exclude_status_codes:
            await self.record_success()

    async def __aenter__(self) -> "CircuitBreaker":
        if not await self.allow_request():
            raise CircuitOpenError(self.name, self.time_until_recovery)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            await self.record_success()
        else:
            await self.record_failure(exc_val)
        return False

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "time_until_recovery": self.time_until_recovery,
            "stats": {
                "total_calls": self.stats.total_calls,
                "successful_calls": self.stats.successful_calls,
                "failed_calls": self.stats.failed_calls,
                "rejected_calls": self.stats.rejected_calls,
                "state_changes": self.stats.state_changes,
            },
        }

    @classmethod
    def reset_all(cls) -> None:
        """Drop every registered breaker (for testing)."""
        cls._registry.clear()
