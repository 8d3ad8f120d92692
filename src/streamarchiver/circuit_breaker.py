"""
Circuit breaker for the processing pipeline.

One breaker per channel. It stops new fetches after a run of consecutive
failures, waits out a fixed cooldown, then lets exactly one probe job through
to decide whether to close again. State is written to the state store after
every transition so a restart in the middle of an outage stays open.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable

from .logger import get_channel_logger
from .models import BreakerState, CircuitBreakerState, utc_now
from .store import StateStore


class CircuitBreaker:
    """
    closed -> open after `failure_threshold` consecutive failures;
    open -> half-open once `open_until` has passed;
    half-open -> closed on probe success, back to open on probe failure.
    """
    
    def __init__(
        self,
        state_store: StateStore,
        channel: str,
        failure_threshold: int = 5,
        open_cooldown: float = 300,
        clock: Callable[[], datetime] = utc_now
    ):
        self.state_store = state_store
        self.channel = channel
        self.failure_threshold = max(1, int(failure_threshold))
        self.open_cooldown = timedelta(seconds=open_cooldown)
        self._clock = clock
        
        self._state = CircuitBreakerState()
        self._probe_out = False  # Half-open probe permit handed out
        self._lock = asyncio.Lock()
        self._logger = get_channel_logger(channel, 'circuit')
    
    @property
    def state(self) -> BreakerState:
        return self._state.state
    
    @property
    def failures(self) -> int:
        return self._state.failures
    
    def snapshot(self) -> CircuitBreakerState:
        """Copy of the current state, safe to hand to observers."""
        return CircuitBreakerState(
            state=self._state.state,
            failures=self._state.failures,
            open_until=self._state.open_until,
        )
    
    async def load(self) -> None:
        """Restore persisted state (call once on startup)."""
        async with self._lock:
            self._state = await self.state_store.get_breaker_state(self.channel)
            self._probe_out = False
            if self._state.state != BreakerState.CLOSED:
                self._logger.warning(
                    f"⚡ Circuit restored as {self._state.state.value} "
                    f"({self._state.failures} failures)"
                )
    
    async def _save(self) -> None:
        await self.state_store.put_breaker_state(self.channel, self._state)
    
    async def allow(self) -> bool:
        """
        May this tick attempt work at all?
        
        In half-open state this hands out the single probe permit; the
        caller must return it with cancel_probe() if it ends up not running
        a job.
        """
        async with self._lock:
            if self._state.state == BreakerState.CLOSED:
                return True
            
            if self._state.state == BreakerState.OPEN:
                if self._clock() < self._state.open_until:
                    return False
                self._state = CircuitBreakerState(
                    state=BreakerState.HALF_OPEN,
                    failures=self._state.failures,
                )
                self._probe_out = False
                await self._save()
                self._logger.info("🔌 Circuit half-open, allowing one probe")
            
            if self._probe_out:
                return False
            self._probe_out = True
            return True
    
    def cancel_probe(self) -> None:
        """Return an unused half-open probe permit."""
        if self._state.state == BreakerState.HALF_OPEN:
            self._probe_out = False
    
    async def record_success(self, probe: bool = False) -> None:
        """
        Book a successful outcome.
        
        Only the probe decides a half-open breaker. Results of jobs that
        were already running when the breaker tripped do not change an open
        or half-open state.
        """
        async with self._lock:
            state = self._state.state
            if state == BreakerState.CLOSED:
                if self._state.failures:
                    self._state = CircuitBreakerState(state=BreakerState.CLOSED, failures=0)
                    await self._save()
                return
            
            if state == BreakerState.OPEN or not probe:
                self._logger.debug(f"Late success ignored while {state.value}")
                return
            
            self._probe_out = False
            self._state = CircuitBreakerState(state=BreakerState.CLOSED, failures=0)
            await self._save()
            self._logger.info("✅ Circuit closed")
    
    async def record_failure(self, probe: bool = False) -> None:
        async with self._lock:
            failures = self._state.failures + 1
            state = self._state.state
            
            if state == BreakerState.HALF_OPEN and probe:
                self._open(failures)
                self._probe_out = False
                self._logger.warning(
                    f"⚡ Probe failed, circuit open again until {self._state.open_until:%H:%M:%S} UTC"
                )
            elif state == BreakerState.CLOSED and failures >= self.failure_threshold:
                self._open(failures)
                self._logger.warning(
                    f"⚡ Circuit opened after {failures} consecutive failures, "
                    f"cooling down until {self._state.open_until:%H:%M:%S} UTC"
                )
            else:
                # Closed below threshold, or a late result while open or half-open
                self._state = CircuitBreakerState(
                    state=state,
                    failures=failures,
                    open_until=self._state.open_until,
                )
            
            await self._save()
    
    def _open(self, failures: int) -> None:
        self._state = CircuitBreakerState(
            state=BreakerState.OPEN,
            failures=failures,
            open_until=self._clock() + self.open_cooldown,
        )
