"""
Retry utilities for the CDC change applier
"""

import time
import random
from typing import Callable, Any, Optional, Type, Tuple
from functools import wraps
from dataclasses import dataclass

from ..exceptions import SinkError


@dataclass
class RetryConfig:
    """Configuration for retry mechanism"""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[Exception], ...] = (SinkError,)

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given zero-based attempt"""
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )
        # Jitter keeps branches from retrying in lockstep
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


def call_with_retry(func: Callable, config: RetryConfig,
                    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
                    *args, **kwargs) -> Any:
    """
    Call func with exponential backoff on retryable exceptions

    Args:
        func: Callable to invoke
        config: Retry configuration
        on_retry: Called with (attempt, error, delay) before each sleep

    Returns:
        Result of the first successful call. The last error is re-raised
        once max_attempts is exhausted; non-retryable errors propagate at once.
    """
    if config.max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {config.max_attempts}")

    for attempt in range(config.max_attempts):
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == config.max_attempts - 1:
                raise

            delay = config.delay_for(attempt)
            if on_retry:
                on_retry(attempt + 1, e, delay)
            time.sleep(delay)


def retry(config: RetryConfig = None):
    """
    Decorator for retrying function calls with exponential backoff

    Args:
        config: Retry configuration. If None, uses default config.
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            return call_with_retry(func, config, None, *args, **kwargs)
        return wrapper
    return decorator


def retry_on_sink_error(max_attempts: int = 3):
    """
    Convenience decorator for retrying on transient warehouse errors
    """
    config = RetryConfig(
        max_attempts=max_attempts,
        retryable_exceptions=(SinkError,)
    )
    return retry(config)
