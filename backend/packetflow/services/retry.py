import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from packetflow.services.cancellation import CancellationToken, cancellable_sleep, maybe_await
from packetflow.services.errors import DocumentAPIError, ProcessingCancelled, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, DocumentAPIError, float], Any]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter. `max_attempts` counts the first call."""

    max_attempts: int = 4
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.25
    rate_limit_base_delay: float = 5.0
    rate_limit_max_delay: float = 60.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(**settings.get_retry_config())

    def compute_delay(self, attempt: int, error: Optional[DocumentAPIError] = None) -> float:
        """Delay before retry number `attempt + 1` (attempt is zero-based)."""
        if isinstance(error, TransientError) and error.rate_limited:
            if error.retry_after is not None:
                return min(error.retry_after, self.rate_limit_max_delay)
            delay = self.rate_limit_base_delay * (self.multiplier ** attempt)
            cap = self.rate_limit_max_delay
        else:
            delay = self.base_delay * (self.multiplier ** attempt)
            cap = self.max_delay

        delay = min(delay, cap)
        if self.jitter and delay > 0:
            delay += random.uniform(0, delay * self.jitter)
        return min(delay, cap)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    token: Optional[CancellationToken] = None,
    on_retry: Optional[RetryCallback] = None,
    description: str = "request",
) -> T:
    """
    Run `operation` until it succeeds, fails permanently, or attempts run out.

    Only errors flagged retryable (TransientError and subclasses) are retried.
    Backoff sleeps abort immediately when `token` is cancelled.
    """
    attempt = 0
    while True:
        if token is not None:
            token.raise_if_cancelled()
        try:
            return await operation()
        except ProcessingCancelled:
            raise
        except DocumentAPIError as e:
            if not e.retryable:
                logger.warning(f"{description} failed with non-retryable error: {e}")
                raise
            if attempt + 1 >= policy.max_attempts:
                logger.error(f"{description} failed after {attempt + 1} attempts: {e}")
                raise

            delay = policy.compute_delay(attempt, e)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{policy.max_attempts}): {e}. "
                f"Retrying in {delay:.1f}s"
            )
            if on_retry is not None:
                await maybe_await(on_retry(attempt + 1, e, delay))
            if delay > 0:
                await cancellable_sleep(delay, token)
            else:
                await asyncio.sleep(0)
            attempt += 1
