"""
Exponential moving averages of operation durations, for observability only.
"""

from typing import Dict, Optional

from .store import StateStore


class EMATracker:
    """Per-channel duration averages (`fetch`, `publish`, `total`)."""
    
    KINDS = StateStore.EMA_KINDS
    
    def __init__(self, state_store: StateStore, channel: str, alpha: float = 0.2):
        if not 0 < alpha <= 1:
            raise ValueError(f"alpha must be in (0, 1], got {alpha}")
        self.state_store = state_store
        self.channel = channel
        self.alpha = alpha
    
    async def observe(self, kind: str, seconds: float) -> float:
        """Fold one duration into the average; the first sample seeds it."""
        if kind not in self.KINDS:
            raise ValueError(f"unknown EMA kind: {kind}")
        previous = await self.state_store.get_ema(self.channel, kind)
        if previous is None:
            value = float(seconds)
        else:
            value = self.alpha * float(seconds) + (1 - self.alpha) * previous
        await self.state_store.put_ema(self.channel, kind, value)
        return value
    
    async def snapshot(self) -> Dict[str, Optional[float]]:
        return {
            kind: await self.state_store.get_ema(self.channel, kind)
            for kind in self.KINDS
        }
