# src/dbconnector/engine/retry.py
"""Backoff for indexing calls.

Upserts and deletes are pushed through RetryManager.execute_with_retry().
A TransientIndexingError (timeout, throttling, 5xx) is retried with
exponential backoff plus jitter; anything else propagates on the first
failure. When the attempts run out, MaxRetriesExceeded carries the last
error so the traversal can record the row and move on.

The sleep function is injectable. The application passes the stop event's
``wait`` so a shutdown cuts a backoff short.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from dbconnector.contracts import TransientIndexingError

if TYPE_CHECKING:
    from dbconnector.core.config import RetrySettings

T = TypeVar("T")


class MaxRetriesExceeded(Exception):
    """Every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def is_transient(error: BaseException) -> bool:
    return isinstance(error, TransientIndexingError)


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters.

    ``max_attempts`` counts the first call: 3 means one call and two retries.
    Delays grow from ``initial_delay`` by ``exponential_base`` per attempt,
    capped at ``max_delay``, plus up to ``jitter`` random seconds.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    @classmethod
    def from_settings(cls, settings: "RetrySettings") -> "RetryConfig":
        """Build from the ``indexing.retry`` section."""
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
            exponential_base=settings.exponential_base,
        )


class RetryManager:
    """Runs callables under a RetryConfig.

    Example:
        manager = RetryManager(RetryConfig(max_attempts=5))
        manager.execute_with_retry(lambda: index.delete(doc_id))
    """

    def __init__(self, config: RetryConfig, *, sleep: Callable[[float], object] = time.sleep) -> None:
        self._config = config
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def _retrying(
        self,
        is_retryable: Callable[[BaseException], bool],
        on_retry: Callable[[int, BaseException], None] | None,
    ) -> Retrying:
        def before_sleep(state: RetryCallState) -> None:
            # Only reached when another attempt follows
            if on_retry is None or state.outcome is None:
                return
            error = state.outcome.exception()
            if error is not None:
                on_retry(state.attempt_number, error)

        return Retrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=wait_exponential_jitter(
                multiplier=self._config.initial_delay,
                max=self._config.max_delay,
                exp_base=self._config.exponential_base,
                jitter=self._config.jitter,
            ),
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep,
            sleep=self._sleep,
        )

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        *,
        is_retryable: Callable[[BaseException], bool] = is_transient,
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """Call operation until it succeeds or the attempts run out.

        Args:
            operation: Zero-argument callable
            is_retryable: Decides which exceptions earn another attempt
            on_retry: Called with (attempt number, error) before each backoff

        Raises:
            MaxRetriesExceeded: If the last allowed attempt failed retryably
            Exception: The first non-retryable error, unchanged
        """
        try:
            return self._retrying(is_retryable, on_retry)(operation)
        except RetryError as e:
            last = e.last_attempt
            error = last.exception()
            assert error is not None, "RetryError is only raised for a failed attempt"
            raise MaxRetriesExceeded(last.attempt_number, error) from error
