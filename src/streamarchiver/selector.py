"""
Job selector: which recording to fetch next.
"""

from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from .models import Recording, utc_now
from .store import RecordingStore


class JobSelector:
    """
    Picks the highest-priority eligible recording of one channel, earliest
    start first among equal priorities.
    
    A recording whose last error is younger than `retry_cooldown` is skipped
    until the cooldown has passed. Placeholders and completed recordings are
    never selected. Pure read; claiming happens in the orchestrator.
    """
    
    def __init__(
        self,
        store: RecordingStore,
        channel: str,
        retry_cooldown: float = 600,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.channel = channel
        self.retry_cooldown = timedelta(seconds=retry_cooldown)
        self._clock = clock
    
    async def select_next(self, exclude: Iterable[str] = ()) -> Optional[Recording]:
        return await self.store.select_next(
            self.channel,
            self.retry_cooldown,
            exclude=exclude,
            now=self._clock(),
        )
