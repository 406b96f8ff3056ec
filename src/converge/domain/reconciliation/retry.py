"""Exponential backoff for transient provider errors, built on tenacity."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from logging import getLogger
from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from converge.domain.errors import TransientProviderError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

log = getLogger(__name__)


class wait_retry_after(wait_base):  # noqa: N801
    """Wait at least the ``retry_after`` a provider asked for, up to ``ceiling``."""

    def __init__(self, backoff: wait_base, ceiling: float) -> None:
        self.backoff = backoff
        self.ceiling = ceiling

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self.backoff(retry_state)
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None and outcome.failed else None
        if isinstance(error, TransientProviderError) and error.retry_after is not None:
            delay = max(delay, min(error.retry_after, self.ceiling))
        return delay


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """How often and how patiently a transient failure is retried.

    The n-th retry waits ``backoff_factor * 2 ** (n - 1)`` seconds plus up to
    ``jitter`` seconds, never more than ``max_backoff``.
    """

    max_attempts: int = 4
    backoff_factor: float = 0.5
    max_backoff: float = 30.0
    jitter: float = 0.25

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def wait_strategy(self) -> wait_base:
        backoff = wait_exponential_jitter(
            initial=self.backoff_factor, max=self.max_backoff, jitter=self.jitter
        )
        return wait_retry_after(backoff, ceiling=self.max_backoff)


def _log_retry(description: str, policy: RetryPolicy) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        log.warning(
            "Transient error on %s (attempt %s/%s), retrying in %.2fs: %s",
            description,
            retry_state.attempt_number,
            policy.max_attempts,
            retry_state.upcoming_sleep,
            outcome.exception() if outcome is not None else None,
        )

    return before_sleep


async def call_with_retry[T](
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    description: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> tuple[T, int]:
    """Run ``operation`` until it succeeds; return its result and the attempt count.

    Only :class:`TransientProviderError` is retried. The error raised after the
    last attempt carries the number of attempts in ``attempts``.
    """

    attempts = 0

    async def attempt() -> T:
        nonlocal attempts
        attempts += 1
        return await operation()

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(TransientProviderError),
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait_strategy(),
        sleep=sleep,
        before_sleep=_log_retry(description, policy),
        reraise=True,
    )
    try:
        result = await retrying(attempt)
    except TransientProviderError as exc:
        exc.attempts = attempts
        raise
    return result, attempts
