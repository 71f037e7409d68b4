"""
epochsettle/protocol/retry.py

Retry helper for ledger writes and the range shift applied on commit
collisions.

advance_range() is pure so the collision path can be tested without a
ledger. retry_async() owns the loop: it calls the operation, classifies
the failure, lets the caller decide whether that failure is retryable,
and sleeps per the RetryPolicy between attempts.
"""

import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import trio

from ..blockchain.batches import EpochRange
from ..config import RetryPolicy
from ..errors import SettlementError, classify_error

logger = logging.getLogger("epochsettle.protocol.retry")

T = TypeVar("T")

__all__ = ["RetryPolicy", "RetryExhausted", "advance_range", "retry_async"]


class RetryExhausted(SettlementError):
    """All attempts failed with a retryable error."""

    def __init__(self, attempts: int, last_error: SettlementError):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}", cause=last_error)
        self.attempts = attempts
        self.last_error = last_error


def advance_range(epoch_range: EpochRange, shift_blocks: int) -> EpochRange:
    """Shift both ends of a range forward by shift_blocks."""
    if shift_blocks < 1:
        raise ValueError(f"shift_blocks must be >= 1, got {shift_blocks}")
    return EpochRange(epoch_range.from_block + shift_blocks, epoch_range.to_block + shift_blocks)


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[SettlementError], ...],
    on_retry: Optional[Callable[[int, SettlementError], None]] = None,
) -> T:
    """
    Run operation(attempt) until it succeeds or attempts run out.

    Args:
        operation: Async callable receiving the 0-based attempt number
        policy: Attempt bound and backoff
        retry_on: Classified error types that trigger another attempt;
            anything else is raised immediately
        on_retry: Called with (attempt, error) before the next attempt

    Raises:
        RetryExhausted: every attempt failed with a retryable error
        SettlementError: first non-retryable failure, classified
    """
    last_error: Optional[SettlementError] = None
    for attempt in range(policy.max_attempts):
        try:
            return await operation(attempt)
        except Exception as e:
            error = classify_error(e)
            if not isinstance(error, retry_on):
                if error is e:
                    raise
                raise error from e
            last_error = error
            logger.warning(
                f"Attempt {attempt + 1}/{policy.max_attempts} failed: "
                f"{type(error).__name__}: {error}"
            )
            if attempt + 1 >= policy.max_attempts:
                break
            if on_retry:
                on_retry(attempt, error)
            delay = policy.delay_for(attempt)
            if delay > 0:
                await trio.sleep(delay)

    raise RetryExhausted(policy.max_attempts, last_error)
