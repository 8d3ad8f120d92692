"""
Shared fixtures for Stream Archiver tests.

Every test gets its own SQLite database file under tmp_path, plus fake
collaborators (catalog, live status, fetch, publish, chat) and a clock that
only moves when told to.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import List, Optional

import pytest
import pytest_asyncio

from streamarchiver.errors import FetchError
from streamarchiver.store import CatalogEntry, Database, RecordingStore, StateStore


T0 = datetime(2024, 5, 1, 18, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manual clock; sleep() advances it instead of waiting."""

    def __init__(self, now: datetime = T0):
        self.now = now
        self.sleeps: List[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value


class FakeCatalog:
    """Catalog returning a fixed list; can fail a number of times first."""

    def __init__(self, entries: Optional[List[CatalogEntry]] = None, failures: int = 0):
        self.entries = list(entries or [])
        self.failures = failures
        self.calls = 0

    async def list_recordings(self, channel: str) -> List[CatalogEntry]:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise FetchError("catalog request failed: 503 Service Unavailable")
        return list(self.entries)


class FakeStatusSource:
    """Live status source; set `stream` or `error` between polls."""

    def __init__(self):
        self.stream = None
        self.error: Optional[Exception] = None
        self.calls = 0

    def go_live(self, started_at: datetime, title: str = "Just chatting") -> None:
        self.stream = SimpleNamespace(started_at=started_at, title=title)

    def go_offline(self) -> None:
        self.stream = None

    async def get_stream(self, channel: str):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.stream


class FakeFetcher:
    """
    Fetch executor with scripted results.

    `results` maps recording id -> list of exceptions or paths, consumed one
    per attempt; missing ids succeed immediately. With `blocking=True` each
    fetch waits until release(recording_id) is called.
    """

    def __init__(self, results=None, blocking: bool = False, progress=None):
        self.results = {k: list(v) for k, v in (results or {}).items()}
        self.blocking = blocking
        self.progress = progress or []
        self.calls: List[str] = []
        self.started: List[str] = []
        self.bandwidth_caps: List[str] = []
        self.active = 0
        self.max_active = 0
        self._gates = {}

    def release(self, recording_id: str) -> None:
        self._gates.setdefault(recording_id, asyncio.Event()).set()

    def release_all(self) -> None:
        for recording_id in self.started:
            self.release(recording_id)

    async def fetch(self, recording, bandwidth_cap, on_progress):
        self.calls.append(recording.id)
        self.bandwidth_caps.append(bandwidth_cap)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if recording.id not in self.started:
                self.started.append(recording.id)
            if self.blocking:
                await self._gates.setdefault(recording.id, asyncio.Event()).wait()
            for done, total in self.progress:
                await on_progress(done, total)
            script = self.results.get(recording.id)
            result = script.pop(0) if script else f"/data/{recording.id}.mp4"
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.active -= 1


class FakePublisher:
    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = []

    async def publish(self, local_path, metadata):
        self.calls.append((local_path, metadata))
        result = self.results.pop(0) if self.results else f"https://t.me/c/1/{len(self.calls)}"
        if isinstance(result, Exception):
            raise result
        return result


class FakeChatRecorder:
    """Records start() calls and blocks until cancelled."""

    def __init__(self):
        self.started = []
        self.cancelled = []

    async def start(self, attached_id, nominal_start):
        self.started.append((attached_id, nominal_start))
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled.append(attached_id)
            raise


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'archiver.db'}")
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def store(db):
    return RecordingStore(db)


@pytest.fixture
def state_store(db):
    return StateStore(db)


def entry(recording_id: str, start: datetime, title: str = "", duration: int = 3600) -> CatalogEntry:
    return CatalogEntry(id=recording_id, title=title or f"VOD {recording_id}", start=start, duration_seconds=duration)
