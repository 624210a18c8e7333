"""Retry strategies for outbound sends.

Sends through the messaging gateway may fail transiently while a chat
session reconnects. Policies:
- None (fail immediately)
- Fixed delay
- Exponential backoff (2s, 4s, 8s... with optional jitter)

Only errors listed in ``retryable_errors`` are retried; anything else
propagates on the first failure.

Usage:
    strategy = RetryStrategy.exponential(max_attempts=3, base_delay=2.0,
                                         retryable_errors=(SessionNotReadyError,))
    await execute_with_retry(gateway.send_text, strategy, session_id, to, text)
"""

import asyncio
import inspect
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    NONE = "none"


@dataclass
class RetryStrategy:
    """How many times to try a call and how long to wait in between."""
    policy: RetryPolicy
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 60.0
    jitter: bool = False
    jitter_range: float = 0.25
    retryable_errors: tuple[type[BaseException], ...] = field(default_factory=tuple)

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """Single attempt."""
        return cls(policy=RetryPolicy.NONE, max_attempts=1)

    @classmethod
    def fixed(cls, max_attempts: int = 3, delay: float = 2.0, retryable_errors=()) -> 'RetryStrategy':
        return cls(
            policy=RetryPolicy.FIXED,
            max_attempts=max_attempts,
            base_delay=delay,
            retryable_errors=tuple(retryable_errors),
        )

    @classmethod
    def exponential(
        cls,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 60.0,
        jitter: bool = False,
        retryable_errors=(),
    ) -> 'RetryStrategy':
        """Exponential backoff: delay = base_delay * 2 ** (retry - 1)."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
            retryable_errors=tuple(retryable_errors),
        )

    def compute_delay(self, retry: int) -> float:
        """Delay before the given retry (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        if self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (retry - 1))
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

        return round(delay, 3)

    def should_retry(self, attempts_made: int, error: Optional[BaseException] = None) -> bool:
        """Whether another attempt is allowed after ``attempts_made`` failures."""
        if self.policy == RetryPolicy.NONE:
            return False
        if attempts_made >= self.max_attempts:
            return False
        if error is None:
            return True
        return isinstance(error, self.retryable_errors)

    def delays(self) -> list[float]:
        """Pre-computed delays for every retry this strategy allows."""
        if self.policy == RetryPolicy.NONE:
            return []
        return [self.compute_delay(i) for i in range(1, self.max_attempts)]


async def execute_with_retry(
    func: Callable,
    strategy: RetryStrategy,
    *args,
    on_retry: Optional[Callable] = None,
    **kwargs,
):
    """Execute an async callable with the given retry strategy.

    Args:
        func: Async callable to execute.
        strategy: RetryStrategy instance.
        on_retry: Optional callback(attempt, error, delay) called before each retry.

    Returns:
        The result of func(*args, **kwargs).

    Raises:
        The last exception once the strategy gives up.
    """
    attempt = 0

    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            attempt += 1

            if not strategy.should_retry(attempt, e):
                raise

            delay = strategy.compute_delay(attempt)

            if on_retry:
                try:
                    if inspect.iscoroutinefunction(on_retry):
                        await on_retry(attempt, e, delay)
                    else:
                        on_retry(attempt, e, delay)
                except Exception as callback_error:
                    logger.warning("Retry callback failed", error=str(callback_error))

            if delay > 0:
                await asyncio.sleep(delay)
