"""
zkTLS Snapshot - Retry Logic with Exponential Backoff

Bounded retry utilities for the three places the pipeline touches the
outside world:
- Notary round-trips during attestation capture
- Durable storage reads and writes
- Verification key downloads

Features:
- Exponential backoff with jitter
- Explicit retryable / non-retryable error markers
- Circuit breaker so a dead notary is not hammered on every run

Usage:
    from retry import retry_call, RetryConfig

    config = RetryConfig(max_retries=3, base_delay=1.0)
    attestation = retry_call(backend.capture, args=(domain, url), config=config,
                             circuit_breaker_name="notary")
"""

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Base class for errors that should trigger a retry."""
    pass


class NonRetryableError(Exception):
    """Base class for errors that should NOT trigger a retry."""
    pass


class CircuitOpenError(ConnectionError):
    """Raised instead of calling a backend whose circuit breaker is open."""
    pass


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation, requests allowed
    OPEN = "open"          # Failures exceeded threshold, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    max_delay: float = 30.0

    base_delay: float = 1.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    retryable_exceptions: tuple = (
        RetryableError,
        ConnectionError,
        TimeoutError,
    )

    log_retries: bool = True
    log_level: int = logging.WARNING


class CircuitBreaker:
    """
    Circuit breaker pattern implementation.

    After ``failure_threshold`` consecutive failures the circuit opens and
    calls fail fast until ``recovery_timeout`` has elapsed.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
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
                if time.time() - self._last_failure_time >= self.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
                    logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN")
            return self._state

    def is_allowed(self) -> bool:
        """Check if requests are allowed."""
        return self.state != CircuitState.OPEN

    def record_success(self):
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit {self.name}: HALF_OPEN -> CLOSED (recovered)")
            self._state = CircuitState.CLOSED
            self._failure_count = 0

    def record_failure(self):
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.time()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(f"Circuit {self.name}: HALF_OPEN -> OPEN (still failing)")
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.warning(
                    f"Circuit {self.name}: CLOSED -> OPEN (failures: {self._failure_count})"
                )

    def reset(self):
        """Reset the circuit breaker."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = 0.0


_circuit_breakers: dict[str, CircuitBreaker] = {}
_circuit_breakers_lock = threading.Lock()


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Get or create a circuit breaker by name."""
    with _circuit_breakers_lock:
        if name not in _circuit_breakers:
            _circuit_breakers[name] = CircuitBreaker(name, **kwargs)
        return _circuit_breakers[name]


def reset_circuit_breakers() -> None:
    """Forget every circuit breaker (used between test cases)."""
    with _circuit_breakers_lock:
        _circuit_breakers.clear()


def calculate_delay(
    attempt: int,
    base_delay: float,
    exponential_base: float,
    max_delay: float,
    jitter: float,
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
    retryable_types: tuple[type[Exception], ...],
) -> bool:
    """Check if an exception should trigger a retry."""
    if isinstance(exception, NonRetryableError):
        return False
    if isinstance(exception, RetryableError):
        return True
    return isinstance(exception, retryable_types)


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict | None = None,
    config: RetryConfig | None = None,
    circuit_breaker_name: str | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Execute a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments
        kwargs: Keyword arguments
        config: Retry configuration
        circuit_breaker_name: Optional circuit breaker name
        on_retry: Optional callback (attempt, exception, delay) before each sleep
        sleep: Sleep function (replaceable in tests)

    Returns:
        Result of the function call

    Raises:
        The last exception once retries are exhausted, any non-retryable
        exception immediately, or CircuitOpenError when the breaker is open.
    """
    config = config or RetryConfig()
    kwargs = kwargs or {}

    circuit = get_circuit_breaker(circuit_breaker_name) if circuit_breaker_name else None

    for attempt in range(config.max_retries + 1):
        if circuit and not circuit.is_allowed():
            raise CircuitOpenError(f"Circuit breaker {circuit_breaker_name} is open")

        try:
            result = func(*args, **kwargs)
            if circuit:
                circuit.record_success()
            return result

        except Exception as e:
            if not is_retryable_exception(e, config.retryable_exceptions):
                raise

            if circuit:
                circuit.record_failure()

            if attempt >= config.max_retries:
                if config.log_retries:
                    logger.log(
                        config.log_level,
                        f"Max retries ({config.max_retries}) exceeded: {e}",
                    )
                raise

            delay = calculate_delay(
                attempt,
                config.base_delay,
                config.exponential_base,
                config.max_delay,
                config.jitter,
            )

            if config.log_retries:
                logger.log(
                    config.log_level,
                    f"Retry {attempt + 1}/{config.max_retries} after {delay:.2f}s: {e}",
                )
            if on_retry:
                on_retry(attempt + 1, e, delay)
            sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError("retry_call exited without result")
