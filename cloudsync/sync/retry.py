"""Retry with exponential backoff for transient provider errors."""

import logging
import random
import time
from typing import Callable, Optional, TypeVar

from ..exceptions import RateLimitError, TransientError
from ..utils import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Retries a callable on TransientError, and on nothing else.

    AuthError and local filesystem errors propagate on the first attempt.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize retry policy.

        Args:
            max_retries: Maximum number of retries after the first attempt
            retry_delay: Initial delay between retries in seconds
            sleep: Function used to wait (replaceable in tests)
        """
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep

    def calculate_delay(self, attempt: int, error: Optional[Exception] = None) -> float:
        """Calculate delay before the next retry.

        Args:
            attempt: Current attempt number (0-based)
            error: The error that triggered the retry

        Returns:
            Delay in seconds
        """
        # Honour the provider's Retry-After header for rate limits
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return error.retry_after

        # Exponential backoff with +/- 25% jitter to avoid thundering herd
        base_delay = self.retry_delay * (2**attempt)
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    def call(self, func: Callable[[], T], description: str = "request") -> T:
        """Call func, retrying transient failures.

        Args:
            func: Callable without arguments
            description: What is being attempted, for log messages

        Returns:
            Whatever func returns

        Raises:
            TransientError: If all retries are exhausted
        """
        for attempt in range(self.max_retries + 1):
            try:
                return func()
            except TransientError as e:
                if attempt >= self.max_retries:
                    logger.debug(f"{description} failed after {attempt + 1} attempt(s)")
                    raise
                delay = self.calculate_delay(attempt, e)
                logger.debug(
                    f"{description} failed (attempt {attempt + 1}/"
                    f"{self.max_retries + 1}), retrying in {delay:.1f}s: {e}"
                )
                self.sleep(delay)

        # Unreachable: the last attempt either returns or raises
        raise TransientError(f"{description} failed after all retry attempts")
