"""Bounded exponential backoff for retryable network failures.

Only errors whose class sets ``retryable = True`` (``NetworkError`` and its
subclasses) are retried.  Everything else propagates on the first attempt.

Several calls can draw on one :class:`RetryBudget` so that an operation
made of multiple network steps (registry login, then two pushes) stays
under a single retry ceiling.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from keelhaul.core.cancellation import CancellationToken
from keelhaul.core.errors import KeelhaulError
from keelhaul.models.config import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryBudget:
    """Retries shared by every call made for one operation.

    Each call gets its first attempt; ``policy.max_attempts - 1`` retries
    are available in total.  ``attempts`` counts every attempt made.
    """

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy
        self.attempts = 0
        self.retries = 0

    @property
    def max_retries(self) -> int:
        return self.policy.max_attempts - 1

    @property
    def exhausted(self) -> bool:
        return self.retries >= self.max_retries


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    description: str = "operation",
    cancel_token: CancellationToken | None = None,
    sleep: Callable[[float], None] | None = None,
    budget: RetryBudget | None = None,
) -> tuple[T, int]:
    """Call *func* until it succeeds or the retry ceiling is reached.

    Returns ``(result, retries)`` where *retries* is the number of failed
    attempts of this call before the successful one.  Raises the last
    retryable error once the budget is spent; without an explicit
    *budget* that is after ``policy.max_attempts`` attempts.
    """
    if budget is None:
        budget = RetryBudget(policy)
    retries = 0
    while True:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        budget.attempts += 1
        try:
            return func(), retries
        except KeelhaulError as exc:
            if not exc.retryable or budget.exhausted:
                if exc.retryable:
                    logger.error(
                        "%s failed after %d attempts: %s",
                        description, retries + 1, exc,
                    )
                raise
            retries += 1
            budget.retries += 1
            delay = policy.delay_for(budget.retries)
            logger.warning(
                "%s attempt %d failed (%s); retry %d/%d in %.1fs",
                description, retries, exc, budget.retries, budget.max_retries, delay,
            )
            _pause(delay, cancel_token, sleep)


def _pause(
    delay: float,
    cancel_token: CancellationToken | None,
    sleep: Callable[[float], None] | None,
) -> None:
    if sleep is not None:
        sleep(delay)
    elif cancel_token is not None:
        cancel_token.wait(delay)
    else:
        time.sleep(delay)
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()
