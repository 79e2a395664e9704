"""Bounded retries and shared rate limiting for outbound model calls.

- RetryPolicy: attempt budget and exponential backoff schedule.
- ErrorClassifier: fatal vs transient vs rate-limited.
- RateLimiter: per-provider scheduling gate shared by every room, so
  concurrent rooms on one provider are throttled in aggregate.
- execute_with_retry(): the loop tying them together, cancellable through an
  asyncio.Event (the room's stop signal).
"""

import asyncio
import logging
import random
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from roombot.core.interfaces import FatalProviderError, ProviderError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """All retry attempts exhausted."""

    def __init__(self, last_error: BaseException, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"Failed after {attempts} attempts: {last_error}")


class RetryCancelledError(Exception):
    """Retry loop abandoned because the caller asked to stop."""

    pass


class ErrorKind(str, Enum):
    """How a failed call should be handled."""

    FATAL = "fatal"  # misconfiguration; never retried
    RATE_LIMITED = "rate_limited"  # retried with a longer backoff
    TRANSIENT = "transient"  # retried with the normal backoff


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1
    # Rate-limit responses back off harder
    rate_limit_multiplier: float = 4.0
    rate_limit_max_delay: float = 600.0

    def get_delay(self, attempt: int, rate_limited: bool = False) -> float:
        """Calculate delay after a failed attempt (0-indexed)."""
        if rate_limited:
            multiplier, ceiling = self.rate_limit_multiplier, self.rate_limit_max_delay
        else:
            multiplier, ceiling = self.backoff_multiplier, self.max_delay

        delay = min(self.initial_delay * (multiplier**attempt), ceiling)
        jitter = random.uniform(-self.jitter * delay, self.jitter * delay)
        return max(0.0, delay + jitter)


class ErrorClassifier:
    """Classify provider errors for retry decisions."""

    # All patterns are lowercase for case-insensitive matching
    FATAL_PATTERNS = [
        r"invalid api key",
        r"incorrect api key",
        r"missing (api )?(key|credential)",
        r"authentication failed",
        r"unauthori[sz]ed",
        r"\b40[134]\b",
        r"model not found",
        r"bad request",
    ]

    RATE_LIMIT_PATTERNS = [
        r"\b429\b",
        r"rate.?limit",
        r"too many requests",
        r"quota",
    ]

    TRANSIENT_PATTERNS = [
        r"timed? ?out",
        r"connection (refused|reset|closed|error)",
        r"network",
        r"temporary failure",
        r"overloaded",
        r"\b5\d\d\b",
        r"malformed",
        r"invalid json",
    ]

    def classify(self, error: BaseException) -> ErrorKind:
        text = str(error).lower()

        if isinstance(error, FatalProviderError):
            return ErrorKind.FATAL

        if isinstance(error, TransientProviderError):
            if any(re.search(p, text) for p in self.RATE_LIMIT_PATTERNS):
                return ErrorKind.RATE_LIMITED
            return ErrorKind.TRANSIENT

        # Untyped errors: fall back to message inspection
        if any(re.search(p, text) for p in self.FATAL_PATTERNS):
            return ErrorKind.FATAL
        if any(re.search(p, text) for p in self.RATE_LIMIT_PATTERNS):
            return ErrorKind.RATE_LIMITED
        if isinstance(error, (asyncio.TimeoutError, ConnectionError, OSError)):
            return ErrorKind.TRANSIENT
        if any(re.search(p, text) for p in self.TRANSIENT_PATTERNS):
            return ErrorKind.TRANSIENT

        # Unknown provider failures are retried; the attempt budget bounds them
        return ErrorKind.TRANSIENT


@dataclass
class _Gate:
    interval: float
    next_slot: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class RateLimiter:
    """Minimum spacing between calls, per provider identity.

    Callers reserve a slot under the provider's lock and sleep outside it,
    so a slow wait never blocks other rooms from reserving their own slot.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._gates: dict[str, _Gate] = {}

    def configure(self, key: str, requests_per_minute: float | None) -> None:
        if not requests_per_minute or requests_per_minute <= 0:
            self._gates.pop(key, None)
            return
        interval = 60.0 / requests_per_minute
        gate = self._gates.get(key)
        if gate is None:
            self._gates[key] = _Gate(interval=interval)
        else:
            gate.interval = interval

    def is_limited(self, key: str) -> bool:
        return key in self._gates

    async def reserve(self, key: str) -> float:
        """Claim the next slot and return how long to wait for it."""
        gate = self._gates.get(key)
        if gate is None:
            return 0.0
        async with gate.lock:
            now = self._clock()
            slot = max(now, gate.next_slot)
            gate.next_slot = slot + gate.interval
        return slot - now

    async def acquire(self, key: str, abort: asyncio.Event | None = None) -> None:
        wait = await self.reserve(key)
        if wait > 0:
            logger.debug(f"Rate limit for {key}: waiting {wait:.1f}s")
            await _wait_or_abort(wait, abort)


async def _wait_or_abort(delay: float, abort: asyncio.Event | None) -> None:
    """Sleep for delay; raise RetryCancelledError if abort fires first."""
    if abort is None:
        await asyncio.sleep(delay)
        return
    if abort.is_set():
        raise RetryCancelledError("Cancelled by user")
    try:
        await asyncio.wait_for(abort.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise RetryCancelledError("Cancelled by user")


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    classifier: ErrorClassifier | None = None,
    rate_limiter: RateLimiter | None = None,
    provider_key: str | None = None,
    abort: asyncio.Event | None = None,
) -> T:
    """Run operation with bounded retries.

    Raises:
        FatalProviderError (or the original error): fatal errors, after one call.
        RetryExhaustedError: max_attempts transient failures.
        RetryCancelledError: abort was set before or during a wait.
    """
    policy = policy or RetryPolicy()
    classifier = classifier or ErrorClassifier()
    last_error: BaseException | None = None

    for attempt in range(policy.max_attempts):
        if abort is not None and abort.is_set():
            raise RetryCancelledError("Cancelled by user")

        if rate_limiter is not None and provider_key is not None:
            await rate_limiter.acquire(provider_key, abort)

        try:
            return await operation()
        except (ProviderError, OSError, asyncio.TimeoutError) as e:
            kind = classifier.classify(e)
            if kind == ErrorKind.FATAL:
                logger.error(f"Fatal provider error (not retrying): {e}")
                raise
            last_error = e

        if attempt + 1 >= policy.max_attempts:
            break

        delay = policy.get_delay(attempt, rate_limited=kind == ErrorKind.RATE_LIMITED)
        logger.warning(
            f"Attempt {attempt + 1}/{policy.max_attempts} failed ({kind.value}): "
            f"{last_error}. Retrying in {delay:.1f}s"
        )
        await _wait_or_abort(delay, abort)

    assert last_error is not None
    raise RetryExhaustedError(last_error, policy.max_attempts)
