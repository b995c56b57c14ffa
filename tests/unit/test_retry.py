"""
Unit tests for retry utilities.

Tests for:
- RetryConfig validation
- RetryError exception
- calculate_backoff function
- is_retryable_exception function
- retry_async function
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from outboxrelay.exceptions import StorageError, TransientStorageError
from outboxrelay.retry import (
    TRANSIENT_EXCEPTIONS,
    RetryConfig,
    RetryError,
    calculate_backoff,
    is_retryable_exception,
    retry_async,
)

# RetryConfig Tests


class TestRetryConfigCreation:
    """Tests for RetryConfig creation and validation."""

    def test_default_values(self):
        """Test default configuration values."""
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.initial_delay == 0.5
        assert config.max_delay == 30.0
        assert config.exponential_base == 2.0
        assert config.jitter == 0.1

    def test_zero_retries_allowed(self):
        """Test max_retries=0 is valid (no retries)."""
        config = RetryConfig(max_retries=0)
        assert config.max_retries == 0

    def test_negative_max_retries_raises(self):
        """Test negative max_retries raises ValueError."""
        with pytest.raises(ValueError) as exc_info:
            RetryConfig(max_retries=-1)
        assert "max_retries must be >= 0" in str(exc_info.value)

    def test_zero_initial_delay_raises(self):
        """Test zero initial_delay raises ValueError."""
        with pytest.raises(ValueError) as exc_info:
            RetryConfig(initial_delay=0)
        assert "initial_delay must be positive" in str(exc_info.value)

    def test_max_delay_less_than_initial_raises(self):
        """Test max_delay < initial_delay raises ValueError."""
        with pytest.raises(ValueError) as exc_info:
            RetryConfig(initial_delay=10.0, max_delay=5.0)
        assert "max_delay" in str(exc_info.value) and "initial_delay" in str(exc_info.value)

    def test_exponential_base_too_low_raises(self):
        """Test exponential_base <= 1.0 raises ValueError."""
        with pytest.raises(ValueError) as exc_info:
            RetryConfig(exponential_base=1.0)
        assert "exponential_base must be > 1.0" in str(exc_info.value)

    def test_jitter_too_high_raises(self):
        """Test jitter > 1.0 raises ValueError."""
        with pytest.raises(ValueError) as exc_info:
            RetryConfig(jitter=1.1)
        assert "jitter must be between 0.0 and 1.0" in str(exc_info.value)


# RetryError Tests


class TestRetryError:
    def test_attributes(self):
        """Test RetryError keeps the attempt count and last error."""
        original = TransientStorageError("deadlock detected")
        error = RetryError("Failed after 3 attempts", attempts=3, last_error=original)

        assert str(error) == "Failed after 3 attempts"
        assert error.attempts == 3
        assert error.last_error is original


# calculate_backoff Tests


class TestCalculateBackoff:
    """Tests for calculate_backoff function."""

    def test_exponential_growth_without_jitter(self):
        """Test delays double with each attempt."""
        config = RetryConfig(initial_delay=1.0, max_delay=100.0, jitter=0.0)

        delays = [calculate_backoff(attempt, config) for attempt in range(4)]

        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        """Test delay never exceeds max_delay."""
        config = RetryConfig(initial_delay=1.0, max_delay=5.0, jitter=0.0)

        assert calculate_backoff(10, config) == 5.0

    def test_jitter_within_range(self):
        """Test jitter stays within the configured fraction."""
        config = RetryConfig(initial_delay=1.0, max_delay=10.0, jitter=0.5)

        for _ in range(100):
            delay = calculate_backoff(0, config)
            assert 0.5 <= delay <= 1.5


# is_retryable_exception Tests


class TestIsRetryableException:
    """Tests for the transient exception check."""

    @pytest.mark.parametrize(
        "error",
        [
            TransientStorageError("lock timeout"),
            ConnectionError("reset"),
            TimeoutError(),
            asyncio.TimeoutError(),
            OSError("network unreachable"),
        ],
    )
    def test_transient(self, error):
        assert is_retryable_exception(error)

    @pytest.mark.parametrize(
        "error",
        [StorageError('relation "outbox" does not exist'), ValueError("bad"), KeyError("x")],
    )
    def test_not_transient(self, error):
        assert not is_retryable_exception(error)

    def test_custom_exception_set(self):
        assert is_retryable_exception(ValueError("bad"), (ValueError,))
        assert TransientStorageError in TRANSIENT_EXCEPTIONS


# retry_async Tests


class TestRetryAsync:
    """Tests for retry_async function."""

    @pytest.fixture
    def fast(self) -> RetryConfig:
        return RetryConfig(max_retries=3, initial_delay=0.001, max_delay=0.01)

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, fast):
        """Test operation succeeding on first attempt."""
        operation = AsyncMock(return_value="ok")

        result = await retry_async(operation, fast, operation_name="claim")

        assert result == "ok"
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_success_after_transient_failures(self, fast):
        """Test operation succeeding after retries."""
        operation = AsyncMock(
            side_effect=[TransientStorageError("deadlock"), ConnectionError("reset"), "ok"]
        )

        result = await retry_async(operation, fast)

        assert result == "ok"
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_exhausted_raises_retry_error(self, fast):
        """Test RetryError after max_retries + 1 attempts."""
        operation = AsyncMock(side_effect=TransientStorageError("deadlock"))

        with pytest.raises(RetryError) as exc_info:
            await retry_async(operation, fast)

        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.last_error, TransientStorageError)
        assert operation.await_count == 4

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self, fast):
        """Test non-transient errors are not retried."""
        operation = AsyncMock(side_effect=StorageError("permission denied"))

        with pytest.raises(StorageError):
            await retry_async(operation, fast)

        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_zero_retries(self):
        operation = AsyncMock(side_effect=TimeoutError())

        with pytest.raises(RetryError) as exc_info:
            await retry_async(operation, RetryConfig(max_retries=0))

        assert exc_info.value.attempts == 1
