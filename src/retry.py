"""
Shielded Pool - Retry Logic with Exponential Backoff

Retry utilities for the network suspension points of the pool lifecycle:
- Broadcasting deposits, withdrawals and transfers through the signer
- Polling the chain for confirmation receipts
- Chain reads (roots, commitments, pool metadata)

Features:
- Exponential backoff with jitter
- Retry conditions driven by the error's ``retryable`` flag
- Circuit breaker integration
- Bounded confirmation polling that reports "still pending" instead of failing

Usage:
    from retry import async_retry_call, poll_with_backoff, RetryConfig

    tx_hash = await async_retry_call(signer.broadcast_deposit, args=(...), config=cfg)
    receipt = await poll_with_backoff(check, base_delay=1.0, max_delay=15.0, max_wait=120.0)

Environment Variables:
    SHIELDED_RETRY_MAX_ATTEMPTS=3
    SHIELDED_RETRY_BASE_DELAY=1.0
    SHIELDED_RETRY_MAX_DELAY=30.0
    SHIELDED_RETRY_JITTER=0.1
"""

import asyncio
import logging
import os
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Type

from exceptions import PrivacyPoolError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation, requests allowed
    OPEN = "open"          # Failures exceeded threshold, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    # Retry limits
    max_retries: int = 3
    max_delay: float = 30.0

    # Backoff configuration
    base_delay: float = 1.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    # Exceptions retried even though they are not PrivacyPoolErrors
    retryable_exceptions: tuple = (
        ConnectionError,
        TimeoutError,
    )

    # Logging
    log_retries: bool = True
    log_level: int = logging.WARNING

    @classmethod
    def from_env(cls) -> "RetryConfig":
        """Create configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("SHIELDED_RETRY_MAX_ATTEMPTS", "3")),
            base_delay=float(os.getenv("SHIELDED_RETRY_BASE_DELAY", "1.0")),
            max_delay=float(os.getenv("SHIELDED_RETRY_MAX_DELAY", "30.0")),
            jitter=float(os.getenv("SHIELDED_RETRY_JITTER", "0.1")),
        )


@dataclass
class RetryStats:
    """Statistics from retry operations."""

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    retries: int = 0
    total_delay: float = 0.0
    last_error: str | None = None

    def record_attempt(self, success: bool, delay: float = 0.0, error: str | None = None):
        """Record an attempt."""
        self.attempts += 1

        if success:
            self.successes += 1
        else:
            self.failures += 1
            self.last_error = error

        if delay > 0:
            self.retries += 1
            self.total_delay += delay


class CircuitBreaker:
    """
    Circuit breaker for a single remote endpoint.

    Blocks requests for ``recovery_timeout`` seconds after
    ``failure_threshold`` consecutive failures. Instances are owned by
    the client that talks to the endpoint.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
                    logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN")

            return self._state

    def is_allowed(self) -> bool:
        """Check if requests are allowed."""
        return self.state != CircuitState.OPEN

    def record_success(self):
        """Record a successful request."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                logger.info(f"Circuit {self.name}: HALF_OPEN -> CLOSED (recovered)")
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self):
        """Record a failed request."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(f"Circuit {self.name}: HALF_OPEN -> OPEN (still failing)")

            elif self._state == CircuitState.CLOSED:
                if self._failure_count >= self.failure_threshold:
                    self._state = CircuitState.OPEN
                    logger.warning(
                        f"Circuit {self.name}: CLOSED -> OPEN "
                        f"(failures: {self._failure_count})"
                    )

    def reset(self):
        """Reset the circuit breaker."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = 0.0


def calculate_delay(
    attempt: int,
    base_delay: float,
    exponential_base: float,
    max_delay: float,
    jitter: float
) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Initial delay in seconds
        exponential_base: Multiplier for exponential growth
        max_delay: Maximum delay cap
        jitter: Random jitter factor (0.0 to 1.0)

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)

    if jitter > 0:
        delay += delay * jitter * (2 * random.random() - 1)

    return max(0, delay)


def is_retryable_exception(
    exception: Exception,
    retryable_types: tuple[Type[Exception], ...]
) -> bool:
    """Check if an exception should trigger a retry."""
    if isinstance(exception, PrivacyPoolError):
        return exception.retryable

    return isinstance(exception, retryable_types)


def _check_circuit(circuit: CircuitBreaker | None):
    if circuit and not circuit.is_allowed():
        raise ConnectionError(f"Circuit breaker {circuit.name} is open")


async def async_retry_call(
    func: Callable[..., Awaitable[Any]],
    args: tuple = (),
    kwargs: dict | None = None,
    config: RetryConfig | None = None,
    circuit: CircuitBreaker | None = None,
    stats: RetryStats | None = None,
) -> Any:
    """
    Await a coroutine function with retry logic.

    Sleeps between attempts with ``asyncio.sleep`` so the event loop stays
    responsive and the call remains cancellable.

    Args:
        func: Coroutine function to call
        args: Positional arguments
        kwargs: Keyword arguments
        config: Retry configuration
        circuit: Optional circuit breaker guarding the call
        stats: Optional stats accumulator

    Returns:
        Result of the awaited call
    """
    config = config or RetryConfig()
    kwargs = kwargs or {}
    stats = stats if stats is not None else RetryStats()

    for attempt in range(config.max_retries + 1):
        _check_circuit(circuit)

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            delay = _handle_failure(e, attempt, config, circuit, stats)
            await asyncio.sleep(delay)
            continue

        stats.record_attempt(success=True)
        if circuit:
            circuit.record_success()
        return result

    raise RuntimeError("retry loop exited without result")  # pragma: no cover


def _handle_failure(
    error: Exception,
    attempt: int,
    config: RetryConfig,
    circuit: CircuitBreaker | None,
    stats: RetryStats,
) -> float:
    """Re-raise if the failure is final, otherwise return the delay before the next try."""
    error_str = str(error)

    if not is_retryable_exception(error, config.retryable_exceptions):
        stats.record_attempt(success=False, error=error_str)
        if config.log_retries:
            logger.log(config.log_level, f"Non-retryable error: {error}")
        raise error

    if circuit:
        circuit.record_failure()

    if attempt >= config.max_retries:
        stats.record_attempt(success=False, error=error_str)
        if config.log_retries:
            logger.log(
                config.log_level,
                f"Max retries ({config.max_retries}) exceeded: {error}"
            )
        raise error

    delay = calculate_delay(
        attempt,
        config.base_delay,
        config.exponential_base,
        config.max_delay,
        config.jitter
    )
    stats.record_attempt(success=False, delay=delay, error=error_str)

    if config.log_retries:
        logger.log(
            config.log_level,
            f"Retry {attempt + 1}/{config.max_retries} after {delay:.2f}s: {error}"
        )
    return delay


async def poll_with_backoff(
    check: Callable[[], Awaitable[Any]],
    base_delay: float = 1.0,
    max_delay: float = 15.0,
    max_wait: float = 120.0,
    exponential_base: float = 2.0,
) -> Any:
    """
    Poll ``check`` until it returns something other than None.

    Delays grow exponentially up to ``max_delay``. Once ``max_wait`` seconds
    have elapsed the poll gives up and returns None, which callers treat as
    "still pending" rather than as an error.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max_wait
    attempt = 0

    while True:
        result = await check()
        if result is not None:
            return result

        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.info(f"Polling gave up after {max_wait:.1f}s, still pending")
            return None

        delay = calculate_delay(attempt, base_delay, exponential_base, max_delay, 0.0)
        await asyncio.sleep(min(delay, remaining))
        attempt += 1
