"""
Token Bucket Rate Limiting

A burst-friendly token bucket per key, a manager for several named buckets,
and an async executor that admits calls through a bucket and retries with
exponential backoff when either the local bucket or the remote backend
throttles.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from pragent.models import RateLimitConfig, RetryConfig
from pragent.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RateLimitExceededError(Exception):
    """Local admission was denied and retries are exhausted."""

    def __init__(self, message: str, retry_after: Optional[float] = None, attempts: int = 0):
        super().__init__(message)
        self.retry_after = retry_after
        self.attempts = attempts


class RateLimiterNotFoundError(KeyError):
    """No limiter is registered under the requested name."""


class ThrottledError(Exception):
    """Raised by a wrapped call when the remote side throttles it."""


class ServiceError(Exception):
    """Typed error of a wrapped service; only ThrottledError subclasses count as throttling."""


@dataclass
class RateLimitState:
    """Mutable bucket state for one key."""

    tokens: float
    last_refill_at: float


@dataclass
class RateLimitResult:
    """Admission decision for one consume call."""

    allowed: bool
    tokens_remaining: int
    retry_after: Optional[float] = None


class TokenBucketRateLimiter:
    """
    Token bucket rate limiter keyed by an arbitrary string.

    A full bucket admits an instant burst of ``max_tokens`` calls; sustained
    throughput is bounded by ``refill_rate`` tokens per ``refill_interval``.
    """

    def __init__(self, config: RateLimitConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._clock = clock
        self._states: Dict[str, RateLimitState] = {}

    def consume(self, key: str, tokens: float = 1) -> RateLimitResult:
        """
        Take ``tokens`` from the bucket of ``key`` if available.

        A denied request leaves the bucket untouched and reports how long to
        wait until enough tokens will have been refilled.
        """
        state = self._get_or_create_state(key)
        self._refill(state)

        if state.tokens >= tokens:
            state.tokens -= tokens
            return RateLimitResult(allowed=True, tokens_remaining=math.floor(state.tokens))

        return RateLimitResult(
            allowed=False,
            tokens_remaining=math.floor(state.tokens),
            retry_after=self._retry_after(tokens - state.tokens),
        )

    def get_tokens(self, key: str) -> int:
        """Current token count for ``key`` without consuming."""
        state = self._get_or_create_state(key)
        self._refill(state)
        return math.floor(state.tokens)

    def reset(self, key: str) -> None:
        """Restore the bucket of ``key`` to full."""
        self._states.pop(key, None)

    def reset_all(self) -> None:
        """Restore every bucket to full."""
        self._states.clear()

    def _get_or_create_state(self, key: str) -> RateLimitState:
        state = self._states.get(key)
        if state is None:
            state = RateLimitState(tokens=self.config.max_tokens, last_refill_at=self._clock())
            self._states[key] = state
        return state

    def _refill(self, state: RateLimitState) -> None:
        now = self._clock()
        intervals = math.floor((now - state.last_refill_at) / self.config.refill_interval)
        if intervals <= 0:
            return

        state.tokens = min(
            self.config.max_tokens, state.tokens + intervals * self.config.refill_rate
        )
        # Advance by whole intervals only so partial progress is kept
        state.last_refill_at += intervals * self.config.refill_interval

    def _retry_after(self, tokens_needed: float) -> float:
        if self.config.refill_rate <= 0:
            return math.inf
        refills_needed = math.ceil(tokens_needed / self.config.refill_rate)
        return refills_needed * self.config.refill_interval


class RateLimiterManager:
    """Registry of named token buckets (e.g. per-minute and per-hour budgets)."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._limiters: Dict[str, TokenBucketRateLimiter] = {}

    def register(self, name: str, config: RateLimitConfig) -> TokenBucketRateLimiter:
        """Register (or replace) the limiter called ``name``."""
        limiter = TokenBucketRateLimiter(config, clock=self._clock)
        self._limiters[name] = limiter
        return limiter

    def get(self, name: str) -> Optional[TokenBucketRateLimiter]:
        """Get a limiter by name."""
        return self._limiters.get(name)

    def consume(self, name: str, key: str, tokens: float = 1) -> RateLimitResult:
        """Consume from the ``key`` bucket of limiter ``name``.

        Raises:
            RateLimiterNotFoundError: If no limiter is registered as ``name``
        """
        limiter = self._limiters.get(name)
        if limiter is None:
            raise RateLimiterNotFoundError(f"Rate limiter not found: {name}")
        return limiter.consume(key, tokens)

    def get_tokens(self, name: str, key: str) -> int:
        """Remaining tokens, 0 for an unknown limiter."""
        limiter = self._limiters.get(name)
        if limiter is None:
            return 0
        return limiter.get_tokens(key)

    def reset(self, name: str, key: Optional[str] = None) -> None:
        """Reset one key of a limiter, or the whole limiter when ``key`` is None."""
        limiter = self._limiters.get(name)
        if limiter is None:
            return
        if key is None:
            limiter.reset_all()
        else:
            limiter.reset(key)

    def reset_all(self) -> None:
        """Reset every registered limiter."""
        for limiter in self._limiters.values():
            limiter.reset_all()


def is_throttling_error(error: BaseException) -> bool:
    """Whether ``error`` signals throttling reported by the remote side."""
    if isinstance(error, ThrottledError):
        return True
    if isinstance(error, (RateLimitExceededError, ServiceError)):
        return False
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code == 429
    message = str(error).lower()
    return "429" in message or "rate limit" in message


class RateLimitedExecutor:
    """
    Run async calls under a shared token bucket with exponential backoff.

    Local denials wait ``max(retry_after, base_delay) * 2**attempt``; remote
    throttling waits ``base_delay * 2**attempt``; both are capped at
    ``max_delay``. Tokens spent on a call the backend throttled are not
    refunded. Other errors propagate on the first occurrence.
    """

    def __init__(
        self,
        limiter: TokenBucketRateLimiter,
        retry_config: RetryConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.limiter = limiter
        self.retry_config = retry_config
        self._sleep = sleep

    async def execute(self, key: str, fn: Callable[[], Awaitable[T]], tokens: float = 1) -> T:
        """
        Admit and run ``fn`` for ``key``, retrying on throttling.

        Args:
            key: Limiter bucket key (e.g. client fingerprint)
            fn: Zero-argument coroutine factory performing the call
            tokens: Tokens consumed per attempt

        Returns:
            The value returned by ``fn``

        Raises:
            RateLimitExceededError: If local admission is still denied after all retries
        """
        max_retries = self.retry_config.max_retries
        attempt = 0

        while attempt <= max_retries:
            admission = self.limiter.consume(key, tokens)

            if not admission.allowed:
                if attempt >= max_retries:
                    raise RateLimitExceededError(
                        f"Rate limit exceeded after {attempt + 1} attempts. "
                        f"Retry after {admission.retry_after:.1f}s",
                        retry_after=admission.retry_after,
                        attempts=attempt + 1,
                    )
                delay = self._backoff(
                    max(admission.retry_after or 0.0, self.retry_config.base_delay), attempt
                )
                logger.debug(
                    f"Local rate limit for {key}, retrying in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{max_retries})"
                )
                await self._sleep(delay)
                attempt += 1
                continue

            try:
                return await fn()
            except Exception as e:
                if not is_throttling_error(e) or attempt >= max_retries:
                    raise
                delay = self._backoff(self.retry_config.base_delay, attempt)
                logger.warning(f"Backend throttled request, retrying in {delay:.1f}s")
                await self._sleep(delay)
                attempt += 1

        # Every iteration returns, raises or retries within max_retries
        raise RateLimitExceededError(f"Rate limit exceeded after {max_retries} retries")

    def _backoff(self, base: float, attempt: int) -> float:
        return min(base * (2**attempt), self.retry_config.max_delay)

    def get_tokens(self, key: str) -> int:
        """Remaining tokens for ``key``."""
        return self.limiter.get_tokens(key)

    def reset(self, key: str) -> None:
        """Restore the bucket of ``key`` to full."""
        self.limiter.reset(key)
