"""
Live poller: watches one channel's live status.

Going live creates the placeholder recording and starts chat capture bound
to it; going offline stops chat capture and hands the session to the
reconciler as an independent task.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Protocol, Set

import aiohttp

from .errors import ArchiverError, StorageError
from .logger import get_channel_logger
from .models import Recording, placeholder_id, utc_now
from .reconciler import ReconcileOutcome, ReconcileRequest
from .store import RecordingStore


class LiveStatusSource(Protocol):
    async def get_stream(self, channel: str):
        """Current stream (with `started_at` and `title`) or None when offline."""


class ChatRecorder(Protocol):
    async def start(self, attached_id: str, nominal_start: datetime) -> None:
        """Record chat into `attached_id` until cancelled."""


class LiveState(Enum):
    OFFLINE = "offline"
    LIVE = "live"


class LiveEvent(Enum):
    WENT_LIVE = "went_live"
    WENT_OFFLINE = "went_offline"


@dataclass
class LiveSession:
    """Per-channel live state, owned by the poller."""
    channel: str
    state: LiveState = LiveState.OFFLINE
    placeholder_id: Optional[str] = None
    start: Optional[datetime] = None
    chat_task: Optional[asyncio.Task] = None
    reconcile_tasks: Set[asyncio.Task] = field(default_factory=set)

    @property
    def is_live(self) -> bool:
        return self.state == LiveState.LIVE


class LivePoller:
    """
    Polls a channel's live status and drives the placeholder lifecycle.

    Features:
    - Placeholder `live-<unix start>` titled "LIVE: <title>"
    - Chat capture for the duration of the stream
    - Reconciliation spawned per stream end, never awaited by the poll loop
    - Re-attaches to an existing placeholder after a restart mid-stream
    """

    def __init__(
        self,
        channel: str,
        status_source: LiveStatusSource,
        store: RecordingStore,
        reconcile: Callable[[ReconcileRequest], Awaitable[ReconcileOutcome]],
        chat_recorder: Optional[ChatRecorder] = None,
        poll_interval: float = 30,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Args:
            channel: Twitch login.
            status_source: Live status provider (TwitchAPI).
            store: Recording storage.
            reconcile: Coroutine function run per ended stream, usually
                Reconciler.reconcile.
            chat_recorder: Optional chat recorder started while live.
            poll_interval: Seconds between status checks.
        """
        self.channel = channel
        self.status_source = status_source
        self.store = store
        self.reconcile = reconcile
        self.chat_recorder = chat_recorder
        self.poll_interval = poll_interval
        self._clock = clock

        self.session = LiveSession(channel)
        self._logger = get_channel_logger(channel, 'live')

    async def poll_once(self) -> Optional[LiveEvent]:
        """Check status once; returns the transition that happened, if any."""
        try:
            stream = await self.status_source.get_stream(self.channel)
        except (ArchiverError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            # Unknown status is not a transition
            self._logger.warning(f"Live status check failed: {e}")
            return None

        if stream is not None and not self.session.is_live:
            try:
                await self._went_live(stream)
            except StorageError as e:
                self._logger.critical(f"💾 Could not create placeholder: {e}")
                return None
            return LiveEvent.WENT_LIVE

        if stream is None and self.session.is_live:
            await self._went_offline()
            return LiveEvent.WENT_OFFLINE

        return None

    async def _went_live(self, stream) -> None:
        start = stream.started_at
        ph_id = placeholder_id(start)

        created = await self.store.create_placeholder(
            self.channel, ph_id, f"LIVE: {stream.title}", start
        )
        if created:
            self._logger.info(f"🔴 Stream started, placeholder {ph_id}")
        else:
            self._logger.info(f"🔴 Stream is live, re-attaching to placeholder {ph_id}")

        self.session.state = LiveState.LIVE
        self.session.placeholder_id = ph_id
        self.session.start = start

        if self.chat_recorder is not None:
            self.session.chat_task = asyncio.create_task(
                self.chat_recorder.start(ph_id, start),
                name=f"chat:{self.channel}:{ph_id}",
            )
            self.session.chat_task.add_done_callback(self._chat_done)

    async def _went_offline(self) -> None:
        await self._stop_chat()
        offline_at = self._clock()

        request = ReconcileRequest(
            channel=self.channel,
            placeholder_id=self.session.placeholder_id,
            start=self.session.start,
            offline_at=offline_at,
        )
        self._logger.info(f"⚫ Stream ended, reconciling {request.placeholder_id}")

        task = asyncio.create_task(
            self.reconcile(request),
            name=f"reconcile:{self.channel}:{request.placeholder_id}",
        )
        self.session.reconcile_tasks.add(task)
        task.add_done_callback(self._reconcile_done)

        self.session.state = LiveState.OFFLINE
        self.session.placeholder_id = None
        self.session.start = None

    async def _stop_chat(self) -> None:
        task = self.session.chat_task
        self.session.chat_task = None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _chat_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            self._logger.error(f"Chat recorder crashed: {task.exception()}")

    def _reconcile_done(self, task: asyncio.Task) -> None:
        self.session.reconcile_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.error(f"Reconciliation crashed: {task.exception()}")

    async def recover(self) -> List[Recording]:
        """
        Report placeholders left over from earlier runs.

        The placeholder of a stream that is still live was re-attached by
        the first poll; every other one is an unresolved session that needs
        manual attention.
        """
        stale = [
            r for r in await self.store.list_placeholders(self.channel)
            if r.id != self.session.placeholder_id
        ]
        for recording in stale:
            messages = len(await self.store.chat_messages(self.channel, recording.id))
            self._logger.warning(
                f"Unresolved placeholder {recording.id} from "
                f"{recording.start:%Y-%m-%d %H:%M} UTC ({messages} chat message(s))"
            )
        return stale

    async def run(self, stop_event: asyncio.Event) -> None:
        self._logger.info(f"Live polling started (every {self.poll_interval}s)")
        await self.poll_once()
        try:
            await self.recover()
        except StorageError as e:
            self._logger.critical(f"💾 Could not list placeholders: {e}")

        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                break
            except asyncio.TimeoutError:
                pass
            await self.poll_once()

        self._logger.info("Live polling stopped")

    async def shutdown(self) -> None:
        """Stop chat capture and cancel pending reconciliations."""
        await self._stop_chat()
        tasks = list(self.session.reconcile_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
