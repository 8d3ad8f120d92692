"""
Processing orchestrator for one channel.

Each tick: breaker check, selection, slot acquisition, then a background job
per recording that fetches (with retries and a bandwidth cap), optionally
publishes, and books the outcome. Jobs run concurrently up to the limiter's
capacity; a job's slot is released on every exit path.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Set

from .circuit_breaker import CircuitBreaker
from .concurrency import ConcurrencyLimiter, SlotToken
from .errors import ArchiverError, ErrorClass, StorageError, describe_error
from .logger import get_channel_logger
from .models import BreakerState, CircuitBreakerState, FetchState, PublishMetadata, Recording, utc_now
from .retry import RetryOutcome, RetryPolicy
from .selector import JobSelector
from .stats import EMATracker
from .store import RecordingProgress, RecordingStore, StateStore


class FetchExecutor(Protocol):
    async def fetch(self, recording: Recording, bandwidth_cap: str, on_progress) -> str:
        """Download the recording; returns the local path."""


class PublishExecutor(Protocol):
    async def publish(self, local_path: str, metadata: PublishMetadata) -> str:
        """Republish a downloaded file; returns the public URL."""


@dataclass
class OrchestratorStatus:
    """Snapshot for status/admin surfaces."""
    channel: str
    breaker: CircuitBreakerState
    active_slots: int
    capacity: int
    pending_by_priority: Dict[int, int] = field(default_factory=dict)
    averages: Dict[str, Optional[float]] = field(default_factory=dict)
    in_flight: List[str] = field(default_factory=list)


class ProgressWriter:
    """
    Persists fetch progress, at most one write per `min_interval` seconds.

    Updates that reach the total are always written; a throttled update is
    kept and written by flush().
    """

    def __init__(
        self,
        store: RecordingStore,
        channel: str,
        recording_id: str,
        min_interval: float = 1.0,
        monotonic: Callable[[], float] = time.monotonic
    ):
        self.store = store
        self.channel = channel
        self.recording_id = recording_id
        self.min_interval = min_interval
        self._monotonic = monotonic
        self._last_write: Optional[float] = None
        self._pending: Optional[tuple] = None
        self.writes = 0

    async def __call__(self, bytes_downloaded: int, bytes_total: int) -> None:
        now = self._monotonic()
        final = bool(bytes_total) and bytes_downloaded >= bytes_total
        if (
            not final
            and self._last_write is not None
            and now - self._last_write < self.min_interval
        ):
            self._pending = (bytes_downloaded, bytes_total)
            return
        await self._write(bytes_downloaded, bytes_total, now)

    async def flush(self) -> None:
        if self._pending is not None:
            await self._write(*self._pending, self._monotonic())

    async def _write(self, bytes_downloaded: int, bytes_total: int, now: float) -> None:
        self._pending = None
        self._last_write = now
        self.writes += 1
        await self.store.update_progress(self.channel, self.recording_id, bytes_downloaded, bytes_total)


class ProcessingOrchestrator:
    """
    Runs one channel's fetch/publish pipeline.

    Collaborators are injected: the fetch executor is required, the publish
    executor is optional (no publishing when None). The limiter may be
    shared between channels to enforce one process-wide download limit.
    """

    def __init__(
        self,
        channel: str,
        store: RecordingStore,
        state_store: StateStore,
        fetcher: FetchExecutor,
        publisher: Optional[PublishExecutor] = None,
        limiter: Optional[ConcurrencyLimiter] = None,
        breaker: Optional[CircuitBreaker] = None,
        fetch_retry: Optional[RetryPolicy] = None,
        publish_retry: Optional[RetryPolicy] = None,
        tick_interval: float = 60,
        retry_cooldown: float = 600,
        bandwidth_cap: str = "",
        progress_interval: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic
    ):
        self.channel = channel
        self.store = store
        self.state_store = state_store
        self.fetcher = fetcher
        self.publisher = publisher
        self.limiter = limiter or ConcurrencyLimiter(1)
        self.breaker = breaker or CircuitBreaker(state_store, channel, clock=clock)
        self.selector = JobSelector(store, channel, retry_cooldown=retry_cooldown, clock=clock)
        self.stats = EMATracker(state_store, channel)
        self.fetch_retry = fetch_retry or RetryPolicy()
        self.publish_retry = publish_retry or RetryPolicy()
        self.tick_interval = tick_interval
        self.bandwidth_cap = bandwidth_cap
        self.progress_interval = progress_interval
        self._clock = clock
        self._monotonic = monotonic

        self._jobs: Dict[str, asyncio.Task] = {}
        self._user_cancelled: Set[str] = set()
        self._probe_id: Optional[str] = None
        self._closing = False
        self._logger = get_channel_logger(channel, 'orchestrator')

    @classmethod
    def from_config(
        cls,
        channel: str,
        config,
        store: RecordingStore,
        state_store: StateStore,
        fetcher: FetchExecutor,
        publisher: Optional[PublishExecutor] = None,
        limiter: Optional[ConcurrencyLimiter] = None
    ) -> 'ProcessingOrchestrator':
        """Build from a loaded Config."""
        processing = config.processing
        return cls(
            channel=channel,
            store=store,
            state_store=state_store,
            fetcher=fetcher,
            publisher=publisher,
            limiter=limiter or ConcurrencyLimiter(processing.max_concurrent_downloads),
            breaker=CircuitBreaker(
                state_store,
                channel,
                failure_threshold=config.circuit.failure_threshold,
                open_cooldown=config.circuit.open_cooldown,
            ),
            fetch_retry=RetryPolicy(
                max_attempts=processing.download_max_attempts,
                base_delay=processing.download_backoff_base,
            ),
            publish_retry=RetryPolicy(
                max_attempts=config.publish.max_attempts,
                base_delay=config.publish.backoff_base,
            ),
            tick_interval=processing.tick_interval,
            retry_cooldown=processing.retry_cooldown,
            bandwidth_cap=processing.bandwidth_limit,
        )

    @property
    def in_flight(self) -> List[str]:
        return list(self._jobs.keys())

    async def start(self) -> None:
        """Restore persisted breaker state."""
        await self.breaker.load()

    async def tick(self) -> int:
        """
        Launch as many jobs as the breaker, the queue and the slots allow.

        Blocks while all slots are busy and more work is waiting. Returns
        the number of jobs launched.
        """
        launched = 0

        while not self._closing:
            if not await self.breaker.allow():
                if launched == 0:
                    self._logger.debug("Circuit open, skipping tick")
                break
            # A permit handed out while half-open is the probe
            probe = self.breaker.state == BreakerState.HALF_OPEN

            try:
                recording = await self.selector.select_next(exclude=self._jobs.keys())
            except BaseException:
                self._return_permit(probe)
                raise
            if recording is None:
                self._return_permit(probe)
                break

            try:
                token = await self.limiter.acquire()
            except asyncio.CancelledError:
                self._return_permit(probe)
                raise

            # Slot wait may have been long; make sure the job is still wanted
            try:
                current = await self.store.get(self.channel, recording.id)
            except BaseException:
                self.limiter.release(token)
                self._return_permit(probe)
                raise
            if (
                self._closing
                or current is None
                or current.fetch_state == FetchState.COMPLETED
                or current.id in self._jobs
            ):
                self.limiter.release(token)
                self._return_permit(probe)
                continue

            self._launch(current, token, probe)
            launched += 1

        return launched

    def _return_permit(self, probe: bool) -> None:
        if probe:
            self.breaker.cancel_probe()

    def _launch(self, recording: Recording, token: SlotToken, probe: bool = False) -> None:
        if probe:
            self._probe_id = recording.id
            self._logger.info(f"🔌 {recording.id} is the half-open probe")
        task = asyncio.create_task(
            self._run_job(recording, token),
            name=f"job:{self.channel}:{recording.id}",
        )
        self._jobs[recording.id] = task
        task.add_done_callback(lambda t, rid=recording.id: self._jobs.pop(rid, None))

    def _take_probe(self, recording_id: str) -> bool:
        """True once for the job holding the probe permit; clears the claim."""
        if self._probe_id != recording_id:
            return False
        self._probe_id = None
        return True

    async def _run_job(self, recording: Recording, token: SlotToken) -> None:
        logger = self._logger.for_recording(recording.id)
        try:
            await self._process(recording, logger)
        except asyncio.CancelledError:
            await self._handle_cancel(recording, logger)
            raise
        except StorageError as e:
            logger.critical(f"💾 Storage failure: {e}")
        except Exception as e:
            # Job errors are booked on the row and never escape the loop
            logger.exception(f"Unexpected job error: {e}")
            await self._book_unexpected(recording, e, logger)
        finally:
            # A probe that ended without an outcome gives its permit back
            if self._take_probe(recording.id):
                self.breaker.cancel_probe()
            self._user_cancelled.discard(recording.id)
            self.limiter.release(token)

    async def _process(self, recording: Recording, logger) -> None:
        started = self._monotonic()
        await self.store.mark_downloading(self.channel, recording.id)
        logger.info(f"⬇️ Fetching '{recording.title}' (priority {recording.priority})")

        progress = ProgressWriter(
            self.store,
            self.channel,
            recording.id,
            min_interval=self.progress_interval,
            monotonic=self._monotonic,
        )

        def on_retry(attempt: int, delay: float, error: Exception) -> None:
            logger.warning(
                f"Fetch attempt {attempt - 1} failed: {describe_error(error, 200)}; "
                f"retrying in {delay:.1f}s"
            )

        outcome = await self.fetch_retry.attempt(
            lambda: self.fetcher.fetch(recording, self.bandwidth_cap, progress),
            on_retry=on_retry,
        )
        fetch_seconds = self._monotonic() - started

        if not outcome.ok:
            await self._fetch_failed(recording, outcome, logger)
            return

        local_path = outcome.value
        await progress.flush()
        await self.store.mark_fetched(self.channel, recording.id, local_path)
        await self.breaker.record_success(probe=self._take_probe(recording.id))
        await self.stats.observe('fetch', fetch_seconds)
        logger.info(f"✅ Fetched in {fetch_seconds:.1f}s after {outcome.attempts} attempt(s)")

        await self._publish(recording, local_path, logger)
        await self.stats.observe('total', self._monotonic() - started)

    async def _fetch_failed(self, recording: Recording, outcome: RetryOutcome, logger) -> None:
        message = describe_error(outcome.error)
        if outcome.error_class == ErrorClass.STORAGE:
            logger.critical(f"💾 Fetch failed with storage error: {message}")
        else:
            logger.error(
                f"❌ Fetch failed ({outcome.error_class.value}) after "
                f"{outcome.attempts} attempt(s): {message}"
            )
        await self.store.record_fetch_failure(
            self.channel, recording.id, message, outcome.attempts, now=self._clock()
        )
        await self.breaker.record_failure(probe=self._take_probe(recording.id))

    async def _publish(self, recording: Recording, local_path: str, logger) -> None:
        if self.publisher is None:
            return

        # Flags may have changed while the fetch was running
        current = await self.store.get(self.channel, recording.id)
        if current is None:
            return
        if current.skip_publish:
            logger.info("Publish skipped for this recording")
            return
        if current.publish_url:
            logger.debug(f"Already published: {current.publish_url}")
            return

        metadata = PublishMetadata.from_recording(current)
        started = self._monotonic()

        def on_retry(attempt: int, delay: float, error: Exception) -> None:
            logger.warning(
                f"Publish attempt {attempt - 1} failed: {describe_error(error, 200)}; "
                f"retrying in {delay:.1f}s"
            )

        outcome = await self.publish_retry.attempt(
            lambda: self.publisher.publish(local_path, metadata),
            on_retry=on_retry,
        )

        if outcome.ok:
            await self.store.record_publish_success(self.channel, recording.id, outcome.value)
            await self.stats.observe('publish', self._monotonic() - started)
            logger.info(f"📤 Published: {outcome.value}")
            return

        # Fetch result stays; only the publish error is recorded
        message = describe_error(outcome.error)
        logger.error(f"❌ Publish failed after {outcome.attempts} attempt(s): {message}")
        await self.store.record_publish_failure(self.channel, recording.id, message, now=self._clock())
        await self.breaker.record_failure(probe=self._take_probe(recording.id))

    async def _handle_cancel(self, recording: Recording, logger) -> None:
        user_cancel = recording.id in self._user_cancelled
        try:
            await self.store.reset_to_pending(
                self.channel,
                recording.id,
                error="cancelled" if user_cancel else None,
            )
        except StorageError as e:
            logger.critical(f"💾 Could not reset cancelled job: {e}")
        logger.info("⏹️ Job cancelled" if user_cancel else "⏹️ Job interrupted by shutdown")

    async def _book_unexpected(self, recording: Recording, error: Exception, logger) -> None:
        try:
            await self.store.record_fetch_failure(
                self.channel, recording.id, describe_error(error), 1, now=self._clock()
            )
            await self.breaker.record_failure(probe=self._take_probe(recording.id))
        except ArchiverError as e:
            logger.critical(f"💾 Could not record job failure: {e}")

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick immediately, then every `tick_interval` seconds until stopped."""
        await self.start()
        self._logger.info(
            f"Processing loop started (every {self.tick_interval}s, "
            f"{self.limiter.capacity} slot(s))"
        )

        while not stop_event.is_set():
            tick = asyncio.create_task(self.tick())
            stopper = asyncio.create_task(stop_event.wait())
            try:
                await asyncio.wait({tick, stopper}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                tick.cancel()
                raise
            finally:
                stopper.cancel()

            if not tick.done():
                # Stopped while waiting for a slot
                tick.cancel()
                await asyncio.gather(tick, return_exceptions=True)
                break

            error = tick.exception()
            if isinstance(error, ArchiverError):
                self._logger.error(f"Tick failed: {error}")
            elif error is not None:
                self._logger.error(f"Unexpected tick error: {error}", exc_info=error)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass

        self._logger.info("Processing loop stopped")

    async def drain(self) -> None:
        """Wait for all in-flight jobs to finish."""
        while self._jobs:
            await asyncio.gather(*list(self._jobs.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight jobs and wait for their cleanup."""
        self._closing = True
        jobs = list(self._jobs.values())
        for task in jobs:
            task.cancel()
        if jobs:
            self._logger.info(f"Cancelling {len(jobs)} in-flight job(s)")
            await asyncio.gather(*jobs, return_exceptions=True)

    def cancel(self, recording_id: str) -> bool:
        """Cancel one in-flight job; it goes back to pending with error 'cancelled'."""
        task = self._jobs.get(recording_id)
        if task is None or task.done():
            return False
        self._user_cancelled.add(recording_id)
        task.cancel()
        return True

    async def status(self) -> OrchestratorStatus:
        return OrchestratorStatus(
            channel=self.channel,
            breaker=self.breaker.snapshot(),
            active_slots=self.limiter.active,
            capacity=self.limiter.capacity,
            pending_by_priority=await self.store.pending_counts_by_priority(self.channel),
            averages=await self.stats.snapshot(),
            in_flight=self.in_flight,
        )

    async def progress(self, recording_id: str) -> Optional[RecordingProgress]:
        return await self.store.progress(self.channel, recording_id)

    async def set_priority(self, recording_id: str, priority: int) -> bool:
        updated = await self.store.set_priority(self.channel, recording_id, priority)
        if updated:
            self._logger.info(f"Priority of {recording_id} set to {priority}")
        return updated

    async def set_skip_publish(self, recording_id: str, skip: bool) -> bool:
        return await self.store.set_skip_publish(self.channel, recording_id, skip)

    async def reprocess(self, recording_id: str) -> bool:
        """Reset a recording to pending, clearing errors and the publish URL."""
        if recording_id in self._jobs:
            self._logger.warning(f"Reprocess of {recording_id} refused: job in flight")
            return False
        updated = await self.store.reprocess(self.channel, recording_id)
        if updated:
            self._logger.info(f"🔁 {recording_id} queued for reprocessing")
        return updated
