"""Retry strategy with exponential backoff for provider operations."""

import time
import random
from typing import Callable, TypeVar, Optional

from converge.utils.errors import ProviderTransientError
from converge.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryStrategy:
    """Implements bounded exponential backoff for transient provider errors."""

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            sleep: Function used to wait between attempts
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep or time.sleep

    @classmethod
    def from_settings(cls, settings, sleep: Optional[Callable[[float], None]] = None) -> "RetryStrategy":
        """Build a strategy from RetrySettings."""
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            exponential_base=settings.exponential_base,
            jitter=settings.jitter,
            sleep=sleep
        )

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if the error is transient and max retries not exceeded
        """
        if attempt >= self.max_retries:
            return False
        return isinstance(error, ProviderTransientError)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Jitter is at most 10% of the delay
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        description: str = "operation",
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            description: What is being attempted, for log messages
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function call

        Raises:
            The last exception if it is not retryable or retries are exhausted
        """
        attempt = 0
        while True:
            try:
                result = func(*args, **kwargs)
                if attempt > 0:
                    logger.info(f"{description} succeeded after {attempt} retries")
                return result
            except Exception as e:
                if not self.should_retry(e, attempt):
                    if isinstance(e, ProviderTransientError):
                        logger.error(
                            f"{description} failed: all {self.max_retries} retry attempts exhausted"
                        )
                    raise

                delay = self.get_delay(attempt)
                logger.warning(
                    f"{description}: attempt {attempt + 1}/{self.max_retries + 1} failed: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                self.sleep(delay)
                attempt += 1
