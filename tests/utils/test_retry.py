"""
Tests for retry with exponential backoff.
"""
import pytest
from workqueue.utils.retry import DEFAULT_RETRY_CONFIG, RetryConfig, retry_with_backoff


class FlakyOperation:
    """Fails a fixed number of times, then returns 'ok'."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"failure {self.calls}")
        return "ok"


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep():
    return RecordingSleep()


class TestRetryConfig:
    """Tests for the backoff schedule."""

    def test_default_schedule(self):
        """Defaults produce 1s, 2s, 4s, 8s between five attempts."""
        assert DEFAULT_RETRY_CONFIG.max_attempts == 5
        delays = [DEFAULT_RETRY_CONFIG.delay_for(n) for n in range(1, 5)]
        assert delays == [1.0, 2.0, 4.0, 8.0]

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"initial_delay": -1},
        {"factor": 0.5},
    ])
    def test_invalid_config_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    async def test_fails_twice_then_succeeds(self, sleep):
        """Two failures then success: three invocations, result returned."""
        operation = FlakyOperation(failures=2)
        config = RetryConfig(max_attempts=5, initial_delay=0.01, factor=2)

        result = await retry_with_backoff(operation, "test", config, sleep=sleep)

        assert result == "ok"
        assert operation.calls == 3
        assert sleep.delays == [0.01, 0.02]

    async def test_always_failing_raises_after_max_attempts(self, sleep):
        """An always-failing operation raises its own error after exactly max_attempts calls."""
        operation = FlakyOperation(failures=100)
        config = RetryConfig(max_attempts=3, initial_delay=0.01, factor=2)

        with pytest.raises(ConnectionError, match="failure 3"):
            await retry_with_backoff(operation, "test", config, sleep=sleep)

        assert operation.calls == 3
        assert len(sleep.delays) == 2

    async def test_error_text_with_braces_is_reraised_unchanged(self, sleep):
        async def operation():
            raise ConnectionError("upstream said {'code': 503}")

        with pytest.raises(ConnectionError) as excinfo:
            await retry_with_backoff(operation, "send {message}", RetryConfig(max_attempts=2), sleep=sleep)

        assert str(excinfo.value) == "upstream said {'code': 503}"
        assert len(sleep.delays) == 1

    async def test_single_attempt_never_retries(self, sleep):
        operation = FlakyOperation(failures=1)

        with pytest.raises(ConnectionError):
            await retry_with_backoff(operation, "test", RetryConfig(max_attempts=1), sleep=sleep)

        assert operation.calls == 1
        assert sleep.delays == []

    @pytest.mark.parametrize("max_attempts,factor", [(2, 1.5), (5, 2), (7, 3)])
    async def test_delays_strictly_increase_and_calls_match_attempts(self, sleep, max_attempts, factor):
        """With factor > 1 every wait is longer than the previous one."""
        operation = FlakyOperation(failures=100)
        config = RetryConfig(max_attempts=max_attempts, initial_delay=0.5, factor=factor)

        with pytest.raises(ConnectionError):
            await retry_with_backoff(operation, "test", config, sleep=sleep)

        assert operation.calls == max_attempts
        assert all(a < b for a, b in zip(sleep.delays, sleep.delays[1:]))

    async def test_observer_called_before_each_wait(self, sleep):
        operation = FlakyOperation(failures=2)
        seen = []

        await retry_with_backoff(
            operation,
            "test",
            RetryConfig(max_attempts=5, initial_delay=1, factor=2),
            on_retry=lambda attempt, delay, error: seen.append((attempt, delay, str(error))),
            sleep=sleep,
        )

        assert seen == [(1, 1.0, "failure 1"), (2, 2.0, "failure 2")]

    async def test_observer_errors_do_not_change_control_flow(self, sleep):
        operation = FlakyOperation(failures=1)

        def broken_observer(attempt, delay, error):
            raise RuntimeError("telemetry down")

        result = await retry_with_backoff(
            operation, "test", RetryConfig(initial_delay=0), on_retry=broken_observer, sleep=sleep
        )

        assert result == "ok"
        assert operation.calls == 2
