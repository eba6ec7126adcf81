"""
Linear backoff retry handling for chat-completion requests.
"""

import asyncio
from typing import Awaitable, Callable, Any, Optional

from .models import FailureReason
from .logging import get_logger


logger = get_logger(__name__)


class RequestFailure(Exception):
    """A failed attempt against an endpoint, tagged with its category."""

    def __init__(self, reason: FailureReason, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or reason.value)
        self.reason = reason
        self.status_code = status_code


class RetriesExhausted(Exception):
    """Raised when every allowed attempt failed with a retryable error."""

    def __init__(self, last_exception: Exception, attempts: int):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_exception}")
        self.last_exception = last_exception
        self.attempts = attempts


class BackoffHandler:
    """
    Retries a failing call a bounded number of times.

    After failed attempt ``n`` (1-based) the handler sleeps
    ``n * base_delay`` seconds, capped at ``max_delay``, before trying again.
    ``max_attempts`` counts every attempt including the first.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """
        Initialize the backoff handler.

        Args:
            base_delay: Backoff step in seconds
            max_delay: Maximum delay in seconds
            max_attempts: Maximum number of attempts (at least 1)
            sleep: Coroutine function used to wait between attempts
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self._sleep = sleep

    def should_retry(self, exception: Exception) -> bool:
        """
        Determine if an exception should trigger a retry.

        Request failures, connection errors and timeouts are retryable;
        anything else is a bug and propagates immediately.
        """
        return isinstance(exception, (
            RequestFailure,
            ConnectionError,
            TimeoutError,
            asyncio.TimeoutError
        ))

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate the delay after a given failed attempt.

        Args:
            attempt: The attempt that just failed (1-based)

        Returns:
            Delay in seconds
        """
        return min(attempt * self.base_delay, self.max_delay)

    async def execute_with_backoff(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Execute a coroutine function with retry logic.

        Returns:
            The result of the first successful call

        Raises:
            RetriesExhausted: If every attempt failed with a retryable error
            Exception: Any non-retryable exception, unchanged
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                if not self.should_retry(e):
                    logger.error("Non-retryable error", error=str(e), error_type=type(e).__name__)
                    raise

                if attempt >= self.max_attempts:
                    logger.warning(
                        f"Attempt {attempt} failed with {type(e).__name__}: {e}. No attempts left",
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                        error_category=self.get_error_category(e).value
                    )
                    raise RetriesExhausted(e, attempt) from e

                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"Attempt {attempt} failed with {type(e).__name__}: {e}. "
                    f"Retrying in {delay:.2f} seconds...",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    backoff_seconds=delay,
                    error_category=self.get_error_category(e).value
                )
                await self._sleep(delay)
                continue

            if attempt > 1:
                logger.info(f"Request succeeded after {attempt - 1} retries", attempt=attempt)
            return result

        # Unreachable: the loop either returns or raises
        raise RuntimeError("Unexpected error: no attempt was made")

    def get_error_category(self, exception: Exception) -> FailureReason:
        """Categorize an exception into a failure reason."""
        if isinstance(exception, RequestFailure):
            return exception.reason
        if isinstance(exception, (TimeoutError, asyncio.TimeoutError)):
            return FailureReason.TIMEOUT
        return FailureReason.CONNECTION_ERROR
