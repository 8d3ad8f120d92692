"""
Live-to-archive reconciliation.

After a stream ends, its chat lives under a placeholder recording
(`live-<unix start>`). The reconciler polls the catalog until the archived
recording shows up, then moves the chat onto it in one transaction: chat
timestamps are shifted by the difference between the two start times, the
messages are re-keyed to the real id and the placeholder row is deleted.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Protocol

import aiohttp
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import ArchiverError, StorageError
from .logger import get_channel_logger
from .models import ChatMessage, Recording, utc_now
from .store import CatalogEntry, Database


class CatalogSource(Protocol):
    async def list_recordings(self, channel: str) -> List[CatalogEntry]:
        """Latest page of the channel's archived recordings."""


@dataclass(frozen=True)
class ReconcileRequest:
    """Everything a reconciliation needs, fixed when the stream goes offline."""
    channel: str
    placeholder_id: str
    start: datetime
    offline_at: datetime


class MergeStatus(Enum):
    MERGED = "merged"
    ALREADY_RECONCILED = "already_reconciled"


@dataclass
class MergeResult:
    status: MergeStatus
    real_id: Optional[str] = None
    delta_seconds: float = 0.0
    shifted: int = 0
    rekeyed: int = 0


class ReconcileStatus(Enum):
    MERGED = "merged"
    ALREADY_RECONCILED = "already_reconciled"
    EXPIRED = "expired"


@dataclass
class ReconcileOutcome:
    status: ReconcileStatus
    attempts: int = 0
    merge: Optional[MergeResult] = None


class _PlaceholderGone(Exception):
    """Placeholder vanished inside the merge transaction."""


def choose_candidate(
    candidates: Iterable[CatalogEntry],
    start: datetime,
    tolerance: timedelta
) -> Optional[CatalogEntry]:
    """
    Pick the archived recording that matches a placeholder started at `start`.

    Only candidates within +/- tolerance (inclusive) qualify. Among those,
    the latest one starting at or after `start` wins; if there is none, the
    latest one starting before `start`.
    """
    within = [c for c in candidates if abs(c.start - start) <= tolerance]
    at_or_after = [c for c in within if c.start >= start]
    if at_or_after:
        return max(at_or_after, key=lambda c: c.start)
    before = [c for c in within if c.start < start]
    if before:
        return max(before, key=lambda c: c.start)
    return None


class Reconciler:
    """
    Matches ended live sessions to archived recordings.

    Each reconcile() call is an independent, bounded task: it waits
    `initial_delay`, then polls every `poll_interval` until `window` has
    passed since the stream went offline. Expiry leaves the placeholder and
    its chat untouched for manual recovery.
    """

    def __init__(
        self,
        db: Database,
        catalog: CatalogSource,
        initial_delay: float = 60,
        window: float = 900,
        poll_interval: float = 30,
        match_tolerance: float = 600,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.db = db
        self.catalog = catalog
        self.initial_delay = initial_delay
        self.window = timedelta(seconds=window)
        self.poll_interval = poll_interval
        self.match_tolerance = timedelta(seconds=match_tolerance)
        self._clock = clock
        self._sleep = sleep

    async def merge(self, request: ReconcileRequest, candidate: CatalogEntry) -> MergeResult:
        """
        Move the placeholder's chat onto `candidate` atomically.

        Safe to repeat: if the placeholder no longer exists nothing is
        changed and ALREADY_RECONCILED is returned.

        Raises:
            StorageError if the transaction failed and was rolled back.
        """
        channel = request.channel
        delta = (candidate.start - request.start).total_seconds()

        try:
            async with self.db.transaction() as session:
                placeholder = await session.get(Recording, (channel, request.placeholder_id))
                if placeholder is None:
                    return MergeResult(MergeStatus.ALREADY_RECONCILED, real_id=candidate.id)

                real = await session.get(Recording, (channel, candidate.id))
                if real is None:
                    session.add(Recording(
                        channel=channel,
                        id=candidate.id,
                        title=candidate.title,
                        start=candidate.start,
                        duration_seconds=candidate.duration_seconds,
                    ))
                else:
                    real.title = candidate.title
                    real.start = candidate.start
                    real.duration_seconds = candidate.duration_seconds
                await session.flush()

                on_placeholder = (
                    (ChatMessage.channel == channel)
                    & (ChatMessage.recording_id == request.placeholder_id)
                )
                shifted = await session.execute(
                    update(ChatMessage)
                    .where(on_placeholder)
                    .values(rel_timestamp=ChatMessage.rel_timestamp - delta)
                    .execution_options(synchronize_session=False)
                )
                rekeyed = await session.execute(
                    update(ChatMessage)
                    .where(on_placeholder)
                    .values(recording_id=candidate.id)
                    .execution_options(synchronize_session=False)
                )
                deleted = await session.execute(
                    delete(Recording)
                    .where(Recording.channel == channel, Recording.id == request.placeholder_id)
                    .execution_options(synchronize_session=False)
                )
                if deleted.rowcount != 1:
                    # Someone else finished first; roll everything back
                    raise _PlaceholderGone()

                result = MergeResult(
                    MergeStatus.MERGED,
                    real_id=candidate.id,
                    delta_seconds=delta,
                    shifted=shifted.rowcount,
                    rekeyed=rekeyed.rowcount,
                )
        except _PlaceholderGone:
            return MergeResult(MergeStatus.ALREADY_RECONCILED, real_id=candidate.id)
        except IntegrityError:
            # Concurrent merge of the same placeholder won the race
            return MergeResult(MergeStatus.ALREADY_RECONCILED, real_id=candidate.id)
        except SQLAlchemyError as e:
            raise StorageError(f"reconcile merge failed: {e}") from e

        return result

    async def reconcile(self, request: ReconcileRequest) -> ReconcileOutcome:
        logger = get_channel_logger(request.channel, 'reconcile').for_recording(request.placeholder_id)
        deadline = request.offline_at + self.window
        logger.info(
            f"🔗 Reconciliation scheduled (start {request.start:%Y-%m-%d %H:%M:%S} UTC, "
            f"window {self.window.total_seconds():.0f}s)"
        )

        await self._sleep(self.initial_delay)
        attempts = 0

        while True:
            if self._clock() > deadline:
                logger.warning(
                    f"Reconciliation window expired after {attempts} attempt(s); "
                    f"placeholder left unresolved"
                )
                return ReconcileOutcome(ReconcileStatus.EXPIRED, attempts=attempts)

            attempts += 1
            try:
                candidates = await self.catalog.list_recordings(request.channel)
            except (ArchiverError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Catalog lookup failed: {e}")
            else:
                candidate = choose_candidate(candidates, request.start, self.match_tolerance)
                if candidate is None:
                    logger.debug(f"No matching recording yet ({len(candidates)} listed)")
                else:
                    try:
                        result = await self.merge(request, candidate)
                    except StorageError as e:
                        logger.warning(f"Merge failed, will retry: {e}")
                    else:
                        if result.status == MergeStatus.MERGED:
                            logger.info(
                                f"✅ Reconciled to {result.real_id}: {result.rekeyed} message(s) "
                                f"moved, shifted by {result.delta_seconds:+.0f}s"
                            )
                            return ReconcileOutcome(ReconcileStatus.MERGED, attempts, result)
                        logger.info("Placeholder already reconciled")
                        return ReconcileOutcome(ReconcileStatus.ALREADY_RECONCILED, attempts, result)

            await self._sleep(self.poll_interval)
