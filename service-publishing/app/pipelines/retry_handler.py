"""Retry policies for reconciler side effects.

Two presets, one per kind of side effect:

- ``CONTROL_PLANE_POLICY``: a small budget, so a failing apply surfaces
  quickly and the record can move to ``error`` instead of holding the key
- ``STORE_POLICY``: a larger budget, since by the time a record is persisted
  its policy objects are already live

A policy retries only the exception types it names; anything else
propagates from the first attempt.
"""

import asyncio
import inspect
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Iterator, Optional, Tuple, Type

import structlog

from libs.publishing_store.base import PublishingStoreConnectionError

from ..adapters.control_plane import TransientControlPlaneError

logger = structlog.get_logger("publishing.retry")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """How many times, and how patiently, one kind of call is retried.

    Parameters
    - name: Label used in logs
    - retry_on: Exception types worth another attempt
    - max_attempts: Total attempts, the first one included
    - base_delay: Wait before the second attempt; doubles after each failure
    - max_delay: Cap for a single wait
    - jitter: Fraction of each wait randomized in either direction
    """
    name: str
    retry_on: Tuple[Type[BaseException], ...]
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    jitter: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not self.retry_on:
            raise ValueError("retry_on must name at least one exception type")

    def delays(self) -> Iterator[float]:
        """Waits between consecutive attempts; ``max_attempts - 1`` of them."""
        for attempt in range(self.max_attempts - 1):
            delay = min(self.base_delay * 2 ** attempt, self.max_delay)
            if self.jitter:
                delay += random.uniform(-delay * self.jitter, delay * self.jitter)
            yield max(delay, 0.0)

    def with_attempts(self, max_attempts: Optional[int]) -> "RetryPolicy":
        return self if max_attempts is None else replace(self, max_attempts=max_attempts)

    def immediate(self) -> "RetryPolicy":
        """Same budget and exception types, no waiting between attempts."""
        return replace(self, base_delay=0.0, max_delay=0.0, jitter=0.0)


CONTROL_PLANE_POLICY = RetryPolicy(
    name="control-plane",
    retry_on=(TransientControlPlaneError,),
    max_attempts=3,
    base_delay=0.5,
    max_delay=5.0,
)

STORE_POLICY = RetryPolicy(
    name="store",
    retry_on=(PublishingStoreConnectionError,),
    max_attempts=6,
    base_delay=0.2,
    max_delay=10.0,
)


class RetryHandler:
    """Runs calls under a ``RetryPolicy``.

    Parameters
    - policy: Budget, backoff and retryable exception types
    - sleep: Awaitable used to wait between attempts
    """

    def __init__(self, policy: RetryPolicy, sleep: Sleep = asyncio.sleep):
        self.policy = policy
        self._sleep = sleep

    async def execute_with_retry(
        self,
        func: Callable,
        *args,
        operation_name: str = "unknown",
        **kwargs
    ) -> Any:
        """Call ``func`` until it succeeds or the policy's budget is spent.

        Awaitable results are awaited. The last retryable error is re-raised
        once no attempts are left.
        """
        delays = self.policy.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                result = func(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
            except self.policy.retry_on as e:
                delay = next(delays, None)
                if delay is None:
                    logger.error(
                        "Operation failed after all retries",
                        policy=self.policy.name,
                        operation=operation_name,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise
                logger.warning(
                    "Operation failed, retrying",
                    policy=self.policy.name,
                    operation=operation_name,
                    attempt=attempt,
                    delay_seconds=round(delay, 3),
                    error=str(e),
                )
                await self._sleep(delay)
                continue

            if attempt > 1:
                logger.info(
                    "Operation succeeded after retry",
                    policy=self.policy.name,
                    operation=operation_name,
                    attempt=attempt,
                )
            return result


def create_control_plane_retry_handler(max_attempts: Optional[int] = None) -> RetryHandler:
    """Retry handler for control-plane apply, delete and get calls."""
    return RetryHandler(CONTROL_PLANE_POLICY.with_attempts(max_attempts))


def create_store_retry_handler(max_attempts: Optional[int] = None) -> RetryHandler:
    """Retry handler for publishing store reads and writes."""
    return RetryHandler(STORE_POLICY.with_attempts(max_attempts))
