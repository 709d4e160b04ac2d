"""
Bounded retry with exponential backoff.

Only push-channel (re)subscription uses this. Fetches are never retried
automatically: a transient fetch failure is surfaced and the caller decides
whether to refresh.
"""
import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from market_pulse.observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 2
    base_delay: float = 0.5  # seconds
    max_delay: float = 5.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 0.1  # random jitter factor


# One initial attempt plus exactly one re-subscribe
RESUBSCRIBE_RETRY = RetryConfig(max_attempts=2, base_delay=0.25, max_delay=2.0)


def backoff_delay(config: RetryConfig, attempt: int) -> float:
    """Delay before the attempt following `attempt` (1-based)."""
    delay = min(
        config.base_delay * (config.exponential_base ** (attempt - 1)),
        config.max_delay
    )
    return delay + delay * config.jitter * random.random()


async def retry_with_backoff(
    func: Callable[..., Awaitable[Any]],
    *args,
    config: Optional[RetryConfig] = None,
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    **kwargs
) -> Any:
    """
    Execute an async function with exponential backoff retry.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        config: Retry configuration
        retryable_exceptions: Exceptions to retry on
        **kwargs: Keyword arguments for func

    Returns:
        Result of func

    Raises:
        Last exception if all attempts fail
    """
    config = config or RetryConfig()

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except retryable_exceptions as e:
            if attempt == config.max_attempts:
                logger.error(
                    f"All {config.max_attempts} attempts failed",
                    extra={"operation": getattr(func, "__name__", "call"), "error": str(e)}
                )
                raise

            delay = backoff_delay(config, attempt)
            logger.warning(
                f"Attempt {attempt} failed, retrying in {delay:.2f}s",
                extra={"attempt": attempt, "delay": round(delay, 3), "error": str(e)}
            )
            await asyncio.sleep(delay)
