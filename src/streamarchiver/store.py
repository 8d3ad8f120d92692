"""
Storage for Stream Archiver.
SQLAlchemy async engine plus typed accessors for recordings, chat and
per-channel pipeline state (breaker, moving averages).
"""

import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from .errors import StorageError
from .logger import get_logger
from .models import (
    PLACEHOLDER_PREFIX,
    Base,
    ChatMessage,
    CircuitBreakerState,
    FetchState,
    KeyValue,
    Recording,
    utc_now,
)


class Database:
    """
    Owns the async engine and session factory.
    
    Features:
    - Works with any SQLAlchemy async URL (aiosqlite by default)
    - Transaction helper that commits or rolls back as a unit
    - Schema creation for fresh installs
    """
    
    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self._logger = get_logger('db')
        
        kwargs = {'echo': echo}
        if url.startswith('sqlite'):
            kwargs['connect_args'] = {'timeout': 30}
            if ':memory:' in url:
                # One shared connection, otherwise every checkout gets an empty database
                kwargs['poolclass'] = StaticPool
        
        self.engine = create_async_engine(url, **kwargs)
        self._sessions = async_sessionmaker(self.engine, expire_on_commit=False)
    
    async def create_all(self) -> None:
        """Create tables that don't exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._logger.info("Database schema ready")
    
    async def dispose(self) -> None:
        await self.engine.dispose()
    
    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Plain session; caller decides when to commit."""
        async with self._sessions() as session:
            yield session
    
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session inside one transaction: commit on success, rollback on any error."""
        async with self._sessions() as session:
            async with session.begin():
                yield session


@dataclass
class CatalogEntry:
    """One recording as reported by the catalog source."""
    id: str
    title: str
    start: datetime
    duration_seconds: int = 0


@dataclass
class RecordingProgress:
    """Live fetch/publish progress for a recording."""
    id: str
    fetch_state: FetchState
    bytes_downloaded: int
    bytes_total: int
    progress_updated_at: Optional[datetime]
    retry_count: int
    last_error: Optional[str]
    publish_url: Optional[str]
    
    @property
    def percent(self) -> Optional[float]:
        if not self.bytes_total:
            return None
        return min(100.0, self.bytes_downloaded * 100.0 / self.bytes_total)


class RecordingStore:
    """
    Recording and chat rows.
    
    Every mutating method runs in its own short transaction and wraps driver
    failures in StorageError so callers see one error type for storage.
    """
    
    def __init__(self, db: Database):
        self.db = db
        self._logger = get_logger('store')
    
    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.db.transaction() as session:
                yield session
        except SQLAlchemyError as e:
            raise StorageError(f"database error: {e}") from e
    
    async def get(self, channel: str, recording_id: str) -> Optional[Recording]:
        async with self._tx() as session:
            return await session.get(Recording, (channel, recording_id))
    
    async def add_discovered(self, channel: str, entries: Iterable[CatalogEntry]) -> int:
        """
        Insert catalog recordings that aren't stored yet.
        
        Existing rows are left alone (their fetch state and priority belong
        to the pipeline). Returns the number of inserted rows.
        """
        inserted = 0
        async with self._tx() as session:
            for entry in entries:
                if await session.get(Recording, (channel, entry.id)) is not None:
                    continue
                session.add(Recording(
                    channel=channel,
                    id=entry.id,
                    title=entry.title,
                    start=entry.start,
                    duration_seconds=entry.duration_seconds,
                ))
                inserted += 1
        return inserted
    
    async def create_placeholder(
        self,
        channel: str,
        recording_id: str,
        title: str,
        start: datetime
    ) -> bool:
        """Create a placeholder row; returns False if it already exists."""
        async with self._tx() as session:
            if await session.get(Recording, (channel, recording_id)) is not None:
                return False
            session.add(Recording(
                channel=channel,
                id=recording_id,
                title=title,
                start=start,
                duration_seconds=0,
            ))
        return True
    
    async def list_placeholders(self, channel: str) -> List[Recording]:
        async with self._tx() as session:
            result = await session.execute(
                select(Recording)
                .where(Recording.channel == channel, Recording.id.startswith(PLACEHOLDER_PREFIX))
                .order_by(Recording.start.asc())
            )
            return list(result.scalars())
    
    async def select_next(
        self,
        channel: str,
        retry_cooldown: timedelta,
        exclude: Iterable[str] = (),
        now: Optional[datetime] = None
    ) -> Optional[Recording]:
        """
        Highest-priority eligible recording, oldest first among equals.
        
        Eligible: real (non-placeholder) id, not completed, not in `exclude`,
        and either without an error or with the error older than the cooldown.
        """
        now = now or utc_now()
        cutoff = now - retry_cooldown
        stmt = (
            select(Recording)
            .where(
                Recording.channel == channel,
                ~Recording.id.startswith(PLACEHOLDER_PREFIX),
                Recording.fetch_state != FetchState.COMPLETED,
                or_(
                    Recording.last_error.is_(None),
                    Recording.last_error == '',
                    Recording.last_error_at.is_(None),
                    Recording.last_error_at <= cutoff,
                ),
            )
            .order_by(Recording.priority.desc(), Recording.start.asc())
            .limit(1)
        )
        excluded = list(exclude)
        if excluded:
            stmt = stmt.where(Recording.id.not_in(excluded))
        async with self._tx() as session:
            result = await session.execute(stmt)
            return result.scalars().first()
    
    async def _update(self, channel: str, recording_id: str, **values) -> int:
        async with self._tx() as session:
            result = await session.execute(
                update(Recording)
                .where(Recording.channel == channel, Recording.id == recording_id)
                .values(updated_at=utc_now(), **values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount
    
    async def mark_downloading(self, channel: str, recording_id: str) -> None:
        await self._update(
            channel, recording_id,
            fetch_state=FetchState.DOWNLOADING,
            progress_updated_at=utc_now(),
        )
    
    async def update_progress(
        self,
        channel: str,
        recording_id: str,
        bytes_downloaded: int,
        bytes_total: int
    ) -> None:
        """Persist byte progress, keeping bytes <= total once total is known."""
        bytes_downloaded = max(0, int(bytes_downloaded))
        bytes_total = max(0, int(bytes_total))
        if bytes_total:
            bytes_downloaded = min(bytes_downloaded, bytes_total)
        await self._update(
            channel, recording_id,
            bytes_downloaded=bytes_downloaded,
            bytes_total=bytes_total,
            progress_updated_at=utc_now(),
        )
    
    async def mark_fetched(self, channel: str, recording_id: str, local_path: str, size: int = 0) -> None:
        values = dict(
            fetch_state=FetchState.COMPLETED,
            local_path=local_path,
            last_error=None,
            last_error_at=None,
            progress_updated_at=utc_now(),
        )
        if size:
            values.update(bytes_downloaded=size, bytes_total=size)
        await self._update(channel, recording_id, **values)
    
    async def record_fetch_failure(
        self,
        channel: str,
        recording_id: str,
        error: str,
        attempts: int,
        now: Optional[datetime] = None
    ) -> None:
        async with self._tx() as session:
            await session.execute(
                update(Recording)
                .where(Recording.channel == channel, Recording.id == recording_id)
                .values(
                    fetch_state=FetchState.FAILED,
                    last_error=error,
                    last_error_at=now or utc_now(),
                    retry_count=Recording.retry_count + attempts,
                    updated_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
    
    async def record_publish_success(self, channel: str, recording_id: str, url: str) -> None:
        await self._update(channel, recording_id, publish_url=url, last_error=None, last_error_at=None)
    
    async def record_publish_failure(
        self,
        channel: str,
        recording_id: str,
        error: str,
        now: Optional[datetime] = None
    ) -> None:
        # Fetch result stays intact; only the error is recorded
        await self._update(
            channel, recording_id,
            last_error=f"publish: {error}",
            last_error_at=now or utc_now(),
        )
    
    async def reset_to_pending(self, channel: str, recording_id: str, error: Optional[str] = None) -> bool:
        """Return an interrupted job to the queue without counting an attempt."""
        return await self._update(
            channel, recording_id,
            fetch_state=FetchState.PENDING,
            last_error=error,
            last_error_at=utc_now() if error else None,
        ) > 0
    
    async def reprocess(self, channel: str, recording_id: str) -> bool:
        """Clear errors and publish result so the recording is picked up again."""
        return await self._update(
            channel, recording_id,
            fetch_state=FetchState.PENDING,
            last_error=None,
            last_error_at=None,
            retry_count=0,
            publish_url=None,
        ) > 0
    
    async def set_priority(self, channel: str, recording_id: str, priority: int) -> bool:
        return await self._update(channel, recording_id, priority=int(priority)) > 0
    
    async def set_skip_publish(self, channel: str, recording_id: str, skip: bool) -> bool:
        return await self._update(channel, recording_id, skip_publish=bool(skip)) > 0
    
    async def pending_counts_by_priority(self, channel: str) -> Dict[int, int]:
        """Not-yet-completed real recordings grouped by priority."""
        async with self._tx() as session:
            result = await session.execute(
                select(Recording.priority, func.count())
                .where(
                    Recording.channel == channel,
                    ~Recording.id.startswith(PLACEHOLDER_PREFIX),
                    Recording.fetch_state != FetchState.COMPLETED,
                )
                .group_by(Recording.priority)
            )
            return {priority: count for priority, count in result.all()}
    
    async def progress(self, channel: str, recording_id: str) -> Optional[RecordingProgress]:
        recording = await self.get(channel, recording_id)
        if recording is None:
            return None
        return RecordingProgress(
            id=recording.id,
            fetch_state=recording.fetch_state,
            bytes_downloaded=recording.bytes_downloaded,
            bytes_total=recording.bytes_total,
            progress_updated_at=recording.progress_updated_at,
            retry_count=recording.retry_count,
            last_error=recording.last_error,
            publish_url=recording.publish_url,
        )
    
    async def add_chat_message(
        self,
        channel: str,
        recording_id: str,
        author: str,
        text: str,
        abs_timestamp: datetime,
        rel_timestamp: float,
        badges: str = "",
        color: str = ""
    ) -> None:
        async with self._tx() as session:
            session.add(ChatMessage(
                channel=channel,
                recording_id=recording_id,
                author=author,
                text=text,
                abs_timestamp=abs_timestamp,
                rel_timestamp=rel_timestamp,
                badges=badges,
                color=color,
            ))
    
    async def chat_messages(
        self,
        channel: str,
        recording_id: str,
        start: Optional[float] = None,
        end: Optional[float] = None,
        limit: Optional[int] = None
    ) -> List[ChatMessage]:
        """Chat of a recording in replay order, optionally within [start, end] seconds."""
        stmt = (
            select(ChatMessage)
            .where(ChatMessage.channel == channel, ChatMessage.recording_id == recording_id)
            .order_by(ChatMessage.rel_timestamp.asc(), ChatMessage.id.asc())
        )
        if start is not None:
            stmt = stmt.where(ChatMessage.rel_timestamp >= start)
        if end is not None:
            stmt = stmt.where(ChatMessage.rel_timestamp <= end)
        if limit:
            stmt = stmt.limit(limit)
        async with self._tx() as session:
            result = await session.execute(stmt)
            return list(result.scalars())


class StateStore:
    """
    Typed per-channel pipeline state over the kv table.
    
    Callers never build key strings themselves.
    """
    
    EMA_KINDS = ('fetch', 'publish', 'total')
    
    def __init__(self, db: Database):
        self.db = db
    
    @staticmethod
    def _breaker_key(channel: str) -> str:
        return f"circuit:{channel}"
    
    @staticmethod
    def _ema_key(channel: str, kind: str) -> str:
        return f"ema:{channel}:{kind}"
    
    async def get_value(self, key: str) -> Optional[str]:
        try:
            async with self.db.session() as session:
                row = await session.get(KeyValue, key)
                return row.value if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"database error: {e}") from e
    
    async def put_value(self, key: str, value: str) -> None:
        try:
            async with self.db.transaction() as session:
                row = await session.get(KeyValue, key)
                if row is None:
                    session.add(KeyValue(key=key, value=value))
                else:
                    row.value = value
        except SQLAlchemyError as e:
            raise StorageError(f"database error: {e}") from e
    
    async def get_breaker_state(self, channel: str) -> CircuitBreakerState:
        raw = await self.get_value(self._breaker_key(channel))
        if not raw:
            return CircuitBreakerState()
        return CircuitBreakerState.from_dict(json.loads(raw))
    
    async def put_breaker_state(self, channel: str, state: CircuitBreakerState) -> None:
        await self.put_value(self._breaker_key(channel), json.dumps(state.to_dict()))
    
    async def get_ema(self, channel: str, kind: str) -> Optional[float]:
        raw = await self.get_value(self._ema_key(channel, kind))
        return float(raw) if raw else None
    
    async def put_ema(self, channel: str, kind: str, value: float) -> None:
        await self.put_value(self._ema_key(channel, kind), f"{value:.3f}")
