"""Bounded retry for operations that run through a tunnel."""

import time
from collections.abc import Callable
from typing import TypeVar

from .config import RetrySettings
from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

CONNECTION_ERROR_KEYWORDS = (
    "connection",
    "lost connection",
    "gone away",
    "broken pipe",
    "reset by peer",
    "timeout",
    "timed out",
    "network",
    "unreachable",
)


def is_connection_error(error: BaseException | str) -> bool:
    """Classify a failure as a transient connectivity problem by its message."""
    message = str(error).lower()
    return any(keyword in message for keyword in CONNECTION_ERROR_KEYWORDS)


class RetryExecutor:
    """Runs an operation up to max_attempts times.

    Before each retry the optional ``on_retry`` hook runs (typically a tunnel
    reconnect), then the executor sleeps ``delay`` seconds, doubled per
    attempt when ``exponential`` is set.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delay: float = 2.0,
        exponential: bool = False,
        on_retry: Callable[[], object] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay = delay
        self.exponential = exponential
        self.on_retry = on_retry
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls, settings: RetrySettings, **kwargs: object
    ) -> "RetryExecutor":
        return cls(
            max_attempts=settings.max_attempts,
            delay=settings.delay,
            exponential=settings.exponential,
            **kwargs,  # type: ignore[arg-type]
        )

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        if self.exponential:
            return self.delay * 2 ** (attempt - 1)
        return self.delay

    def execute(
        self,
        operation: Callable[[], T],
        should_retry: Callable[[Exception], bool] | None = None,
        on_retry: Callable[[], object] | None = None,
    ) -> T:
        """Run the operation, retrying failures the predicate accepts.

        Args:
            operation: Callable to run
            should_retry: Predicate on the raised exception, retry everything if None
            on_retry: Recovery hook for this call, overrides the configured one

        Returns:
            The operation's result from the first successful attempt

        Raises:
            Exception: The last failure when attempts run out or the predicate
                rejects it
        """
        hook = on_retry if on_retry is not None else self.on_retry

        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation()
            except Exception as e:
                if should_retry is not None and not should_retry(e):
                    logger.debug("Failure is not retryable", error=str(e))
                    raise

                if attempt >= self.max_attempts:
                    logger.error(
                        "Operation failed after all attempts",
                        attempts=self.max_attempts,
                        error=str(e),
                    )
                    raise

                logger.warning(
                    "Operation failed, retrying",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(e),
                )
                if hook is not None:
                    hook()
                self._sleep(self.backoff(attempt))

        # max_attempts >= 1 means the loop always returns or raises
        raise RuntimeError("All retry attempts failed")

    def execute_with_reconnect(
        self, operation: Callable[[], T], reconnect: Callable[[], object]
    ) -> T:
        """Retry only connection failures, reconnecting before each retry."""
        return self.execute(
            operation, should_retry=is_connection_error, on_retry=reconnect
        )
