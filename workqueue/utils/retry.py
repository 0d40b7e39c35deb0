"""
Retry with Exponential Backoff
Wraps a fallible async operation with bounded, exponentially-delayed retries.
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

T = TypeVar("T")

RetryObserver = Callable[[int, float, BaseException], None]


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff configuration.

    Attributes:
        max_attempts: Total attempts including the first one (1 = no retry)
        initial_delay: Seconds to wait after the first failure
        factor: Multiplier applied to the delay after every failure
    """
    max_attempts: int = 5
    initial_delay: float = 1.0
    factor: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)."""
        return self.initial_delay * (self.factor ** (attempt - 1))


# 1s, 2s, 4s, 8s, 16s
DEFAULT_RETRY_CONFIG = RetryConfig()


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    context: str,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    on_retry: Optional[RetryObserver] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Execute `operation`, retrying failures with exponential backoff.

    The operation must be safe to repeat: there is no at-most-once guarantee.

    Args:
        operation: Zero-argument coroutine function to execute
        context: Human-readable label used in log lines (e.g., "processor")
        config: Attempt count and delay schedule
        on_retry: Observer called as (attempt, delay, error) before each wait.
            Exceptions raised by the observer are logged and ignored.
        sleep: Awaitable sleep function (injectable for tests)

    Returns:
        The first successful result

    Raises:
        Exception: The final failure, unchanged, once attempts are exhausted

    Example:
        >>> result = await retry_with_backoff(lambda: client.get(url), "crm")
    """
    attempt = 1

    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= config.max_attempts:
                logger.bind(context=context, attempts=attempt).error(
                    f"[{context}] Final failure after {attempt} attempts: {e}"
                )
                raise

            delay = config.delay_for(attempt)
            logger.bind(context=context, attempt=attempt, delay=delay).warning(
                f"[{context}] Attempt {attempt} failed. Retrying in {delay:.2f}s. Error: {e}"
            )

            if on_retry is not None:
                try:
                    on_retry(attempt, delay, e)
                except Exception as observer_error:
                    logger.warning(f"[{context}] Retry observer raised: {observer_error}")

            await sleep(delay)
            attempt += 1
