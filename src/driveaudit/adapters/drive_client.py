"""
Google Drive / Directory REST client with rate limiting and connection pooling.

Features:
- Token bucket throttling shared by every client using the same quota
- Exponential backoff with jitter on 429, rate-limit 403 and 5xx responses
- Retry-After header support
- Automatic bearer token refresh on 401
- Circuit breaker for fault tolerance
- Bounded retries and per-request timeouts: no call can hang indefinitely
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from driveaudit.adapters.credentials import CredentialProvider
from driveaudit.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from driveaudit.exceptions import CircuitOpenError, DriveAPIError, RateLimitedError

logger = logging.getLogger(__name__)

DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
DIRECTORY_API_BASE = "https://admin.googleapis.com/admin/directory/v1"

# Default rate limiting (Drive allows ~20,000 requests / 100s per project)
DEFAULT_REQUESTS_PER_SECOND = 10
DEFAULT_BURST_SIZE = 20
DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_MAX_BACKOFF_SECONDS = 64.0

# 403 reasons that mean "slow down" rather than "forbidden"
RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})


@dataclass
class RateLimiterConfig:
    """Configuration for rate limiting and retries."""

    requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND
    burst_size: int = DEFAULT_BURST_SIZE
    max_retries: int = DEFAULT_MAX_RETRIES
    base_backoff_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS
    max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS


@dataclass
class TokenBucket:
    """
    Token bucket rate limiter with async support.

    Allows bursts up to capacity, then rate-limits to ``rate`` per second.
    """

    rate: float  # tokens per second
    capacity: int  # max tokens (burst size)
    tokens: float = field(default=0.0)
    last_update: float = field(default_factory=time.monotonic)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def __post_init__(self):
        self.tokens = float(self.capacity)

    async def acquire(self, tokens: int = 1) -> float:
        """
        Take tokens, returning how long the caller must wait before proceeding.

        The deficit is charged immediately so concurrent callers queue up
        behind each other instead of all waking at the same moment.
        """
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_update
            self.last_update = now

            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
            self.tokens -= tokens
            if self.tokens >= 0:
                return 0.0
            return -self.tokens / self.rate


# One bucket per quota, shared by every concurrently active scan
_shared_buckets: dict[str, TokenBucket] = {}


def get_shared_bucket(name: str, config: RateLimiterConfig) -> TokenBucket:
    """Return the process-wide bucket for quota *name*."""
    bucket = _shared_buckets.get(name)
    if bucket is None:
        bucket = TokenBucket(rate=config.requests_per_second, capacity=config.burst_size)
        _shared_buckets[name] = bucket
    return bucket


def reset_shared_buckets() -> None:
    """Forget all shared buckets (for testing)."""
    _shared_buckets.clear()


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    rng=random.random,
) -> float:
    """Exponential backoff with equal jitter: half fixed, half random."""
    ceiling = min(cap, base * (2 ** attempt))
    return ceiling / 2 + ceiling / 2 * rng()


def _error_reason(response: httpx.Response) -> tuple[str, str | None]:
    """Extract (message, first reason) from a Google API error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase, None
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return str(error or response.reason_phrase), None
    reasons = error.get("errors") or []
    reason = reasons[0].get("reason") if reasons and isinstance(reasons[0], dict) else None
    return error.get("message", response.reason_phrase), reason


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class DriveClient:
    """
    Google REST API client with rate limiting and connection pooling.

    Usage:
        client = DriveClient(credential)
        async with client:
            data = await client.get("/files", params={"pageSize": 100})
    """

    def __init__(
        self,
        credential: CredentialProvider,
        base_url: str = DRIVE_API_BASE,
        rate_config: Optional[RateLimiterConfig] = None,
        bucket: Optional[TokenBucket] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        pool_size: int = 20,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            credential: Source of bearer tokens for the acting identity
            base_url: API root that relative paths are joined to
            rate_config: Rate limiting and retry configuration
            bucket: Token bucket to draw from (shared per quota by default)
            breaker_config: Circuit breaker thresholds
            timeout: Request timeout in seconds
            connect_timeout: Connection timeout in seconds
            pool_size: HTTP connection pool size
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.credential = credential
        self.base_url = base_url.rstrip("/")
        self.rate_config = rate_config or RateLimiterConfig()
        self.pool_size = pool_size
        self._timeout = timeout
        self._connect_timeout = connect_timeout
        self._transport = transport

        self._rate_limiter = bucket or get_shared_bucket(self.base_url, self.rate_config)
        self._circuit_breaker = CircuitBreaker.get_or_create(
            f"google_api:{self.base_url}", breaker_config
        )

        self._client: Optional[httpx.AsyncClient] = None

        self.stats = {
            "requests": 0,
            "retries": 0,
            "throttled": 0,
            "errors": 0,
            "token_refreshes": 0,
            "circuit_open_rejections": 0,
        }

    async def __aenter__(self) -> "DriveClient":
        """Create connection pool on context enter."""
        self._client = httpx.AsyncClient(
            limits=httpx.Limits(
                max_connections=self.pool_size,
                max_keepalive_connections=self.pool_size // 2,
            ),
            timeout=httpx.Timeout(self._timeout, connect=self._connect_timeout),
            http2=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _backoff(self, attempt: int) -> float:
        return backoff_delay(
            attempt,
            self.rate_config.base_backoff_seconds,
            self.rate_config.max_backoff_seconds,
        )

    async def _request(
        self,
        method: str,
        path: str,
        **kwargs,
    ) -> httpx.Response:
        """
        Make a rate-limited request with circuit breaker protection.

        Handles:
        - Rate limiting via the shared token bucket
        - 429 / rate-limit 403 throttling with Retry-After
        - 5xx and transport errors with exponential backoff and jitter
        - One forced token refresh on 401

        Non-retryable responses (4xx) are returned to the caller unchanged.
        """
        if not self._client:
            raise RuntimeError("DriveClient must be used as async context manager")

        if not await self._circuit_breaker.allow_request():
            self.stats["circuit_open_rejections"] += 1
            raise CircuitOpenError(
                self._circuit_breaker.name,
                self._circuit_breaker.time_until_recovery,
            )

        url = path if path.startswith("http") else f"{self.base_url}{path}"
        max_retries = self.rate_config.max_retries
        extra_headers = kwargs.pop("headers", {})
        refreshed = False
        last_error: Optional[DriveAPIError] = None

        attempt = 0
        while attempt <= max_retries:
            wait_time = await self._rate_limiter.acquire()
            if wait_time > 0:
                await asyncio.sleep(wait_time)

            token = await self.credential.get_token(force_refresh=refreshed)
            headers = {**extra_headers, "Authorization": f"Bearer {token}"}

            try:
                self.stats["requests"] += 1
                response = await self._client.request(method, url, headers=headers, **kwargs)
            except httpx.TimeoutException as e:
                last_error = DriveAPIError(
                    f"Request timed out after {self._timeout}s",
                    endpoint=url,
                    context=f"{method} request to Google API",
                )
                last_error.__cause__ = e
                await self._circuit_breaker.record_failure(e)
            except httpx.TransportError as e:
                last_error = DriveAPIError(
                    f"Transport error during Google API request: {type(e).__name__}",
                    endpoint=url,
                    context=f"{method} request encountered network issue",
                )
                last_error.__cause__ = e
                await self._circuit_breaker.record_failure(e)
            else:
                status = response.status_code

                if status == 401 and not refreshed:
                    # Expired or revoked token: refresh once, then let the 401 surface
                    refreshed = True
                    self.stats["token_refreshes"] += 1
                    logger.debug(f"401 from {url}, refreshing token")
                    continue

                throttled = status == 429
                if status == 403:
                    _, reason = _error_reason(response)
                    throttled = reason in RATE_LIMIT_REASONS

                if throttled:
                    self.stats["throttled"] += 1
                    retry_after = _parse_retry_after(response)
                    last_error = RateLimitedError(
                        "Google API rate limit exceeded",
                        status_code=status,
                        retry_after=retry_after,
                        endpoint=url,
                        context=f"failed after {attempt + 1} attempts",
                    )
                    if attempt < max_retries:
                        delay = retry_after if retry_after is not None else self._backoff(attempt)
                        logger.warning(
                            f"Google API throttled, waiting {delay:.1f}s "
                            f"(attempt {attempt + 1}/{max_retries + 1})"
                        )
                        await asyncio.sleep(delay)
                        self.stats["retries"] += 1
                    attempt += 1
                    continue

                await self._circuit_breaker.record_status(status)
                if status >= 500:
                    last_error = DriveAPIError(
                        f"Google API server error {status}",
                        status_code=status,
                        endpoint=url,
                        context=f"failed after {attempt + 1} attempts",
                    )
                else:
                    return response

            if attempt < max_retries:
                backoff = self._backoff(attempt)
                logger.warning(f"{last_error.message} on {url}, retrying in {backoff:.1f}s")
                await asyncio.sleep(backoff)
                self.stats["retries"] += 1
            attempt += 1

        self.stats["errors"] += 1
        raise last_error

    async def _checked(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = await self._request(method, path, **kwargs)
        if response.status_code >= 400:
            self.stats["errors"] += 1
            message, reason = _error_reason(response)
            raise DriveAPIError(
                message,
                status_code=response.status_code,
                endpoint=str(response.request.url) if response.request else path,
                details={"reason": reason} if reason else {},
            )
        return response

    async def get(self, path: str, **kwargs) -> dict[str, Any]:
        """GET request returning JSON."""
        response = await self._checked("GET", path, **kwargs)
        return response.json()

    async def post(self, path: str, **kwargs) -> dict[str, Any]:
        """POST request returning JSON."""
        response = await self._checked("POST", path, **kwargs)
        return response.json() if response.content else {}

    async def patch(self, path: str, **kwargs) -> dict[str, Any]:
        """PATCH request returning JSON."""
        response = await self._checked("PATCH", path, **kwargs)
        return response.json() if response.content else {}

    async def delete(self, path: str, **kwargs) -> None:
        """DELETE request; Google APIs answer 204 with no body."""
        await self._checked("DELETE", path, **kwargs)
