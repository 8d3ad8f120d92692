"""
Concurrency limiter: a fixed pool of fetch slots.
"""

import asyncio
import itertools
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Set

from .logger import get_logger


@dataclass(frozen=True)
class SlotToken:
    """Proof of one acquired slot. Release it exactly once."""
    id: int


class ConcurrencyLimiter:
    """
    Counting semaphore with tokens.
    
    acquire() blocks until a slot frees up; if the waiting task is cancelled
    nothing is held. release() is safe to call from any cleanup path: a
    token that was already released is ignored.
    """
    
    def __init__(self, capacity: int = 1):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self._held: Set[int] = set()
        self._ids = itertools.count(1)
        self._logger = get_logger('slots')
    
    @property
    def capacity(self) -> int:
        return self._capacity
    
    @property
    def active(self) -> int:
        return len(self._held)
    
    @property
    def available(self) -> int:
        return self._capacity - len(self._held)
    
    async def acquire(self) -> SlotToken:
        await self._semaphore.acquire()
        token = SlotToken(next(self._ids))
        self._held.add(token.id)
        return token
    
    def release(self, token: SlotToken) -> None:
        if token.id not in self._held:
            self._logger.warning(f"Release of slot {token.id} that is not held, ignoring")
            return
        self._held.discard(token.id)
        self._semaphore.release()
    
    @asynccontextmanager
    async def slot(self) -> AsyncIterator[SlotToken]:
        token = await self.acquire()
        try:
            yield token
        finally:
            self.release(token)
