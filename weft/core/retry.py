# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Retry strategies for runnables and graph nodes.

The execution core never retries on its own. Retrying is opted into per unit
(``Runnable.with_retry``) or per node (``StateGraph.add_node(..., retry=...)``)
and is driven by one of the strategies below.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypeVar

from weft.core.errors import RunCancelledError

if TYPE_CHECKING:
    from weft.runnables.config import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryContext:
    """Context passed to retry strategies for decision-making.

    Tracks the current state of a retriable operation including
    attempt count, elapsed time, and exception history.
    """

    attempt: int = 0
    max_attempts: int = 3
    start_time: float = field(default_factory=time.monotonic)
    last_exception: Optional[BaseException] = None
    exceptions: list[BaseException] = field(default_factory=list)
    total_delay: float = 0.0
    label: str = "operation"

    @property
    def elapsed(self) -> float:
        """Time elapsed since first attempt."""
        return time.monotonic() - self.start_time

    @property
    def attempts_remaining(self) -> int:
        """Number of attempts remaining."""
        return max(0, self.max_attempts - self.attempt)

    def record_exception(self, exc: BaseException) -> None:
        """Record an exception from a failed attempt."""
        self.last_exception = exc
        self.exceptions.append(exc)

    def record_delay(self, delay: float) -> None:
        """Record delay time."""
        self.total_delay += delay


class BaseRetryStrategy(ABC):
    """Abstract base class for retry strategies.

    Implementations define when and how long to wait between retries.
    """

    max_attempts: int = 1

    @abstractmethod
    def should_retry(self, context: RetryContext) -> bool:
        """Determine if another retry attempt should be made.

        Args:
            context: Current retry context with attempt info

        Returns:
            True if should retry, False to abort
        """

    @abstractmethod
    def get_delay(self, context: RetryContext) -> float:
        """Calculate delay before next retry attempt.

        Args:
            context: Current retry context

        Returns:
            Delay in seconds before next attempt
        """

    def on_retry(self, context: RetryContext) -> None:  # noqa: B027
        """Hook called before each retry attempt."""

    def on_failure(self, context: RetryContext) -> None:  # noqa: B027
        """Hook called when all retries exhausted."""


class ExponentialBackoffStrategy(BaseRetryStrategy):
    """Exponential backoff with optional jitter.

    Delay formula: min(max_delay, base_delay * (multiplier ^ (attempt - 1))) * (1 +/- jitter)
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.3,
        max_delay: float = 20.0,
        multiplier: float = 2.0,
        jitter: float = 0.0,
        retryable_exceptions: Optional[tuple[type[BaseException], ...]] = None,
        non_retryable_exceptions: Optional[tuple[type[BaseException], ...]] = None,
        retry_on: Optional[Callable[[BaseException], bool]] = None,
    ):
        """Initialize exponential backoff strategy.

        Args:
            max_attempts: Maximum number of attempts (including initial)
            base_delay: Initial delay in seconds
            max_delay: Maximum delay cap in seconds
            multiplier: Exponential multiplier (default 2.0 = doubling)
            jitter: Random jitter factor (0.2 = +/-20% randomness)
            retryable_exceptions: Only retry these exception types (None = all)
            non_retryable_exceptions: Never retry these exception types
            retry_on: Predicate deciding whether a given exception is transient
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.non_retryable_exceptions = non_retryable_exceptions or ()
        self.retry_on = retry_on

    def should_retry(self, context: RetryContext) -> bool:
        """Check if retry should occur based on attempts and exception type."""
        if context.attempt >= self.max_attempts:
            return False

        exc = context.last_exception
        if exc is not None:
            if isinstance(exc, self.non_retryable_exceptions):
                return False
            if self.retryable_exceptions is not None and not isinstance(
                exc, self.retryable_exceptions
            ):
                return False
            if self.retry_on is not None and not self.retry_on(exc):
                return False

        return True

    def get_delay(self, context: RetryContext) -> float:
        """Calculate exponential delay with jitter."""
        delay = self.base_delay * (self.multiplier ** max(0, context.attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_amount = delay * self.jitter
            delay += random.uniform(-jitter_amount, jitter_amount)

        return max(0.0, delay)

    def on_retry(self, context: RetryContext) -> None:
        """Log retry attempt."""
        logger.debug(
            f"Retrying {context.label}: attempt {context.attempt + 1}/{self.max_attempts} "
            f"after {type(context.last_exception).__name__}: {context.last_exception}"
        )


class LinearBackoffStrategy(BaseRetryStrategy):
    """Linear backoff - delay increases linearly with each attempt.

    Delay formula: base_delay + (increment * (attempt - 1))
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        increment: float = 0.5,
        max_delay: float = 10.0,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.increment = increment
        self.max_delay = max_delay

    def should_retry(self, context: RetryContext) -> bool:
        """Check if more attempts remain."""
        return context.attempt < self.max_attempts

    def get_delay(self, context: RetryContext) -> float:
        """Calculate linear delay."""
        delay = self.base_delay + (self.increment * max(0, context.attempt - 1))
        return min(delay, self.max_delay)


class FixedDelayStrategy(BaseRetryStrategy):
    """Fixed delay between retries - no backoff."""

    def __init__(self, max_attempts: int = 3, delay: float = 0.0):
        self.max_attempts = max_attempts
        self.delay = delay

    def should_retry(self, context: RetryContext) -> bool:
        """Check if more attempts remain."""
        return context.attempt < self.max_attempts

    def get_delay(self, context: RetryContext) -> float:
        """Return fixed delay."""
        return self.delay


class NoRetryStrategy(BaseRetryStrategy):
    """No retry - fail immediately on first error."""

    def should_retry(self, context: RetryContext) -> bool:
        return False

    def get_delay(self, context: RetryContext) -> float:
        return 0.0


async def retry_async(
    func: Callable[[], Awaitable[T]],
    strategy: Optional[BaseRetryStrategy] = None,
    *,
    label: str = "operation",
    cancellation: Optional["CancellationToken"] = None,
) -> T:
    """Run ``func`` until it succeeds or the strategy gives up.

    Cancellation is checked before every attempt and is never retried.

    Args:
        func: Zero-argument coroutine function to call
        strategy: Retry strategy (default: ExponentialBackoffStrategy)
        label: Name used in log messages
        cancellation: Optional token checked before each attempt

    Returns:
        The first successful result

    Raises:
        The last exception raised by ``func`` once retries are exhausted.
    """
    strategy = strategy or ExponentialBackoffStrategy()
    context = RetryContext(max_attempts=strategy.max_attempts, label=label)

    while True:
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        context.attempt += 1
        try:
            return await func()
        except (RunCancelledError, asyncio.CancelledError):
            raise
        except Exception as e:
            context.record_exception(e)
            if not strategy.should_retry(context):
                strategy.on_failure(context)
                if context.attempt > 1:
                    logger.warning(f"{label} failed after {context.attempt} attempts: {e}")
                raise

            strategy.on_retry(context)
            delay = strategy.get_delay(context)
            context.record_delay(delay)
            if delay > 0:
                await asyncio.sleep(delay)


__all__ = [
    "RetryContext",
    "BaseRetryStrategy",
    "ExponentialBackoffStrategy",
    "LinearBackoffStrategy",
    "FixedDelayStrategy",
    "NoRetryStrategy",
    "retry_async",
]
