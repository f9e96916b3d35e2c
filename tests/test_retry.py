"""
Tests for retry logic with exponential backoff.

Tests:
- RetryConfig configuration
- CircuitBreaker state management
- calculate_delay function
- retry_call function, including the circuit breaker and retry callbacks
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from errors import CaptureRejected, CaptureUnavailable, StorageIOFailure
from retry import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    NonRetryableError,
    RetryableError,
    RetryConfig,
    calculate_delay,
    get_circuit_breaker,
    is_retryable_exception,
    retry_call,
)


def no_sleep(_delay):
    pass


def always_fail():
    raise RetryableError("temporary")


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_defaults(self):
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.base_delay == 1.0


class TestCalculateDelay:
    """Tests for calculate_delay."""

    def test_exponential_growth(self):
        delays = [calculate_delay(i, 1.0, 2.0, 100.0, 0.0) for i in range(4)]
        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max(self):
        assert calculate_delay(10, 1.0, 2.0, 5.0, 0.0) == 5.0

    def test_jitter_bounds(self):
        """Jitter should stay within the configured fraction."""
        for _ in range(50):
            delay = calculate_delay(0, 1.0, 2.0, 10.0, 0.1)
            assert 0.9 <= delay <= 1.1


class TestIsRetryable:
    """Tests for exception classification."""

    def test_capture_unavailable_is_retryable(self):
        assert is_retryable_exception(CaptureUnavailable("down"), RetryConfig().retryable_exceptions)

    def test_storage_failure_is_retryable(self):
        assert is_retryable_exception(StorageIOFailure("io"), RetryConfig().retryable_exceptions)

    def test_capture_rejected_is_not_retryable(self):
        assert not is_retryable_exception(CaptureRejected("bad"), RetryConfig().retryable_exceptions)

    def test_value_error_is_not_retryable(self):
        assert not is_retryable_exception(ValueError("x"), RetryConfig().retryable_exceptions)


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("test", failure_threshold=2, recovery_timeout=60)
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert not breaker.is_allowed()

    def test_half_open_after_recovery_timeout(self):
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()
        assert breaker.state == CircuitState.HALF_OPEN

    def test_success_closes(self):
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_registry_returns_same_instance(self):
        assert get_circuit_breaker("shared") is get_circuit_breaker("shared")


class TestRetryCall:
    """Tests for retry_call."""

    def test_returns_on_first_success(self):
        assert retry_call(lambda: 42, sleep=no_sleep) == 42

    def test_retries_retryable_errors(self):
        """A retryable failure followed by success should return the result."""
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise RetryableError("temporary")
            return "ok"

        config = RetryConfig(max_retries=3, base_delay=0.0, jitter=0.0)
        assert retry_call(flaky, config=config, sleep=no_sleep) == "ok"
        assert len(attempts) == 3

    def test_non_retryable_raises_immediately(self):
        attempts = []

        def broken():
            attempts.append(1)
            raise NonRetryableError("permanent")

        with pytest.raises(NonRetryableError):
            retry_call(broken, config=RetryConfig(max_retries=3), sleep=no_sleep)
        assert len(attempts) == 1

    def test_exhaustion_raises_last_error(self):
        config = RetryConfig(max_retries=2, base_delay=0.0, jitter=0.0)
        attempts = []

        def down():
            attempts.append(1)
            raise CaptureUnavailable("notary down")

        with pytest.raises(CaptureUnavailable):
            retry_call(down, config=config, sleep=no_sleep)
        assert len(attempts) == 3

    def test_on_retry_callback(self):
        """on_retry should be called once per retry with the attempt number."""
        seen = []
        config = RetryConfig(max_retries=2, base_delay=0.0, jitter=0.0)

        with pytest.raises(RetryableError):
            retry_call(
                always_fail,
                config=config,
                on_retry=lambda attempt, error, delay: seen.append(attempt),
                sleep=no_sleep,
            )
        assert seen == [1, 2]

    def test_sleep_receives_backoff_delays(self):
        delays = []
        config = RetryConfig(max_retries=2, base_delay=1.0, exponential_base=2.0, jitter=0.0)

        with pytest.raises(RetryableError):
            retry_call(always_fail,
                       config=config, sleep=delays.append)
        assert delays == [1.0, 2.0]

    def test_open_circuit_fails_fast(self):
        """An open circuit should raise CircuitOpenError without calling the function."""
        breaker = get_circuit_breaker("notary-test", failure_threshold=1, recovery_timeout=60)
        breaker.record_failure()
        calls = []

        with pytest.raises(CircuitOpenError):
            retry_call(lambda: calls.append(1), circuit_breaker_name="notary-test", sleep=no_sleep)
        assert calls == []
