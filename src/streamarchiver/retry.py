"""
Retry with exponential backoff and jitter for fetch and publish operations.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .errors import ErrorClass, classify_error


@dataclass
class RetryOutcome:
    """Result of a retried operation: either a value or the terminal error."""
    value: Any = None
    error: Optional[Exception] = None
    error_class: Optional[ErrorClass] = None
    attempts: int = 0
    
    @property
    def ok(self) -> bool:
        return self.error is None


class RetryPolicy:
    """
    Runs an operation up to `max_attempts` times.
    
    Delay before attempt n (n > 1) is 2^(n-1) * base + uniform(0, base).
    Only errors classified as retryable are retried; auth, fatal and storage
    errors end the attempt immediately. Cancellation is never swallowed.
    """
    
    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(0.0, float(base_delay))
        self._sleep = sleep
        self._rng = rng or random.Random()
    
    def delay_for(self, attempt: int) -> float:
        """Backoff before `attempt` (1-indexed); zero for the first attempt."""
        if attempt <= 1:
            return 0.0
        jitter = self._rng.uniform(0, self.base_delay) if self.base_delay else 0.0
        return (2 ** (attempt - 1)) * self.base_delay + jitter
    
    async def attempt(
        self,
        op: Callable[[], Awaitable[Any]],
        on_retry: Optional[Callable[[int, float, Exception], None]] = None
    ) -> RetryOutcome:
        """
        Run `op` with retries.
        
        Args:
            op: Zero-argument coroutine function, called once per attempt.
            on_retry: Called as on_retry(next_attempt, delay, last_error)
                before each backoff sleep.
        
        Returns:
            RetryOutcome with the value, or the terminal error and how many
            attempts were used.
        """
        last_error: Optional[Exception] = None
        
        for n in range(1, self.max_attempts + 1):
            if n > 1:
                delay = self.delay_for(n)
                if on_retry:
                    on_retry(n, delay, last_error)
                await self._sleep(delay)
            
            try:
                value = await op()
                return RetryOutcome(value=value, attempts=n)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                error_class = classify_error(e)
                if error_class != ErrorClass.RETRYABLE:
                    return RetryOutcome(error=e, error_class=error_class, attempts=n)
        
        return RetryOutcome(
            error=last_error,
            error_class=ErrorClass.RETRYABLE,
            attempts=self.max_attempts,
        )
