"""Retry wrapper for remote calls.

Credential-expiry errors trigger a (coalesced) credential refresh before the
next attempt; transient errors are retried as-is. Both back off
exponentially: base_delay * 2 ** attempt. Anything else propagates on the
first failure.
"""
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config.logging import get_logger
from publishing.credentials import RefreshCoalescer
from publishing.errors import ErrorKind, classify_error

logger = get_logger(__name__)

T = TypeVar("T")


class RetryableCallExecutor:
    """Run async operations with refresh-and-retry semantics."""

    def __init__(
        self,
        coalescer: Optional[RefreshCoalescer] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        self.coalescer = coalescer
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def _is_retryable(self, exc: BaseException) -> bool:
        kind = classify_error(exc)
        if kind is ErrorKind.CREDENTIAL_EXPIRED:
            return self.coalescer is not None
        return kind is ErrorKind.TRANSIENT

    def _before_sleep(self, description: str) -> Callable[[RetryCallState], None]:
        def log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            logger.warning(
                "Retrying remote call",
                operation=description,
                attempt=retry_state.attempt_number,
                wait_seconds=retry_state.next_action.sleep if retry_state.next_action else 0,
                kind=classify_error(exc).value,
                error=str(exc),
            )
        return log_retry

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "remote call",
    ) -> T:
        """Run operation, retrying per the error classification.

        Raises the last error once max_attempts is exhausted.
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception(self._is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            before_sleep=self._before_sleep(description),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                try:
                    return await operation()
                except Exception as e:
                    last_attempt = attempt.retry_state.attempt_number >= self.max_attempts
                    if (
                        classify_error(e) is ErrorKind.CREDENTIAL_EXPIRED
                        and self.coalescer is not None
                        and not last_attempt
                    ):
                        logger.warning(
                            "Credential rejected, refreshing",
                            operation=description,
                            attempt=attempt.retry_state.attempt_number,
                        )
                        await self.coalescer.refresh()
                    raise

        # AsyncRetrying either returns from inside the loop or re-raises
        raise RuntimeError("retry loop exited without a result")
