"""
Guarded external calls: timeout, bounded local retry and a circuit breaker.

Local retries cover sub-second blips inside one job execution and are
separate from the job-level backoff in ``retry.py``. Breaker state lives in
process memory only and resets on restart.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from orchestrator.config.logging import get_logger
from orchestrator.core.exceptions import CircuitOpenError, ExternalCallTimeoutError
from orchestrator.jobs.retry import is_retryable_error

logger = get_logger(__name__)

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerOptions:
    failure_threshold: int = 3
    cooldown_ms: int = 60_000


@dataclass(frozen=True)
class RetryPolicy:
    retries: int = 2
    base_delay_ms: int = 500
    max_delay_ms: int = 5000
    jitter_ms: int = 250

    def delay_ms(self, attempt: int) -> float:
        exp = min(self.max_delay_ms, self.base_delay_ms * 2 ** max(0, attempt - 1))
        jitter = random.uniform(0, self.jitter_ms) if self.jitter_ms else 0
        return exp + jitter


@dataclass
class BreakerEntry:
    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    opened_at: float | None = None


class BreakerRegistry:
    """
    Per-dependency breaker state keyed by a dependency string.

    A plain dict is enough: all access happens on the event loop thread and
    no method awaits while it reads and writes an entry.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, BreakerEntry] = {}

    def entry(self, key: str) -> BreakerEntry:
        return self._entries.setdefault(key, BreakerEntry())

    def state(self, key: str) -> BreakerState:
        return self.entry(key).state

    def acquire(self, key: str, options: BreakerOptions) -> bool:
        """
        Return True if a call may proceed.

        After the cooldown exactly one probe is let through; other callers
        are rejected until the probe reports back.
        """
        entry = self.entry(key)
        if entry.state == BreakerState.CLOSED:
            return True
        if entry.state == BreakerState.HALF_OPEN:
            return False

        elapsed_ms = (self._clock() - (entry.opened_at or 0.0)) * 1000
        if elapsed_ms < options.cooldown_ms:
            return False

        entry.state = BreakerState.HALF_OPEN
        logger.info("Circuit breaker probing", breaker_key=key)
        return True

    def record_success(self, key: str) -> None:
        entry = self.entry(key)
        if entry.state != BreakerState.CLOSED:
            logger.info("Circuit breaker closed", breaker_key=key)
        self._entries[key] = BreakerEntry()

    def record_failure(self, key: str, options: BreakerOptions) -> None:
        entry = self.entry(key)
        entry.failure_count += 1

        if entry.state == BreakerState.HALF_OPEN or (
            entry.failure_count >= options.failure_threshold
        ):
            entry.state = BreakerState.OPEN
            entry.opened_at = self._clock()
            logger.error(
                "Circuit breaker opened",
                breaker_key=key,
                failures=entry.failure_count,
                cooldown_ms=options.cooldown_ms,
            )

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)


# Process-wide breaker state
breaker_registry = BreakerRegistry()


async def with_timeout(
    call: Callable[[], Awaitable[T]], timeout_ms: int, label: str = "operation"
) -> T:
    """Await call(), raising ExternalCallTimeoutError after timeout_ms."""
    timer = asyncio.timeout(timeout_ms / 1000)
    try:
        async with timer:
            return await call()
    except TimeoutError:
        if not timer.expired():
            raise
        raise ExternalCallTimeoutError(
            f"{label} timed out after {timeout_ms}ms",
            details={"timeout_ms": timeout_ms},
        ) from None


async def with_retries(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[Any], bool] = is_retryable_error,
    label: str = "operation",
) -> T:
    """Run call() up to 1 + policy.retries times while failures are retryable."""
    attempt = 1
    while True:
        try:
            return await call()
        except Exception as e:
            if attempt > policy.retries or not is_retryable(e):
                raise
            delay_ms = policy.delay_ms(attempt)
            logger.warning(
                "External call failed, retrying",
                label=label,
                attempt=attempt,
                delay_ms=round(delay_ms),
                error=str(e),
            )
            await asyncio.sleep(delay_ms / 1000)
            attempt += 1


async def guarded_external_call(
    call: Callable[[], Awaitable[T]],
    *,
    breaker_key: str,
    label: str,
    timeout_ms: int,
    retry: RetryPolicy | None = None,
    breaker: BreakerOptions | None = None,
    is_retryable: Callable[[Any], bool] = is_retryable_error,
    registry: BreakerRegistry | None = None,
) -> T:
    """
    Run one outbound call under timeout, local retry and a circuit breaker.

    Raises CircuitOpenError without invoking call() while the breaker for
    breaker_key is open. A call that still fails after its local retries
    counts as a single breaker failure.
    """
    retry = retry or RetryPolicy()
    breaker = breaker or BreakerOptions()
    registry = registry or breaker_registry

    if not registry.acquire(breaker_key, breaker):
        raise CircuitOpenError(label, breaker_key)

    try:
        result = await with_retries(
            lambda: with_timeout(call, timeout_ms, label),
            retry,
            is_retryable,
            label,
        )
    except asyncio.CancelledError:
        # The job was cancelled, not the dependency; reopen for the next probe.
        if registry.state(breaker_key) == BreakerState.HALF_OPEN:
            registry.entry(breaker_key).state = BreakerState.OPEN
        raise
    except Exception:
        registry.record_failure(breaker_key, breaker)
        raise

    registry.record_success(breaker_key)
    return result
