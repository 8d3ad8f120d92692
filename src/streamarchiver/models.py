"""
Database models for Stream Archiver.

Recording rows are keyed by (channel, id); `id` is either the platform's
video id or a placeholder `live-<unix start>` that exists only while a stream
is live and until reconciliation swaps it for the real id.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


PLACEHOLDER_PREFIX = "live-"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def placeholder_id(start: datetime) -> str:
    """Placeholder recording id for a live stream that started at `start`."""
    return f"{PLACEHOLDER_PREFIX}{int(start.timestamp())}"


def is_placeholder(recording_id: str) -> bool:
    return recording_id.startswith(PLACEHOLDER_PREFIX)


class UTCDateTime(sa.TypeDecorator):
    """Stores naive UTC, always hands back timezone-aware UTC datetimes."""
    
    impl = sa.DateTime
    cache_ok = True
    
    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    
    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class FetchState(str, Enum):
    """Download state of a recording."""
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


class Recording(Base):
    __tablename__ = "recordings"
    __table_args__ = (
        sa.Index("ix_recordings_selection", "channel", "fetch_state", "priority", "start"),
    )
    
    channel: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    title: Mapped[str] = mapped_column(sa.Text(), nullable=False, default="")
    start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    duration_seconds: Mapped[int] = mapped_column(sa.Integer(), nullable=False, default=0)
    priority: Mapped[int] = mapped_column(sa.Integer(), nullable=False, default=0)
    
    fetch_state: Mapped[FetchState] = mapped_column(
        sa.Enum(
            FetchState,
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=FetchState.PENDING,
    )
    bytes_downloaded: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, default=0)
    bytes_total: Mapped[int] = mapped_column(sa.BigInteger(), nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(sa.Text(), nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    local_path: Mapped[Optional[str]] = mapped_column(sa.Text(), nullable=True)
    
    publish_url: Mapped[Optional[str]] = mapped_column(sa.Text(), nullable=True)
    skip_publish: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, default=False)
    
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now
    )
    progress_updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    
    @property
    def is_placeholder(self) -> bool:
        return is_placeholder(self.id)
    
    def __repr__(self) -> str:
        return (
            f"Recording(channel={self.channel!r}, id={self.id!r}, "
            f"priority={self.priority}, state={self.fetch_state.value})"
        )


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (
        sa.ForeignKeyConstraint(
            ["channel", "recording_id"],
            ["recordings.channel", "recordings.id"],
            name="fk_chat_messages_recording",
        ),
        sa.Index("ix_chat_recording_rel", "channel", "recording_id", "rel_timestamp"),
    )
    
    id: Mapped[int] = mapped_column(sa.Integer(), primary_key=True, autoincrement=True)
    channel: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    recording_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    author: Mapped[str] = mapped_column(sa.String(255), nullable=False, default="")
    text: Mapped[str] = mapped_column(sa.Text(), nullable=False, default="")
    abs_timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    # Seconds relative to the start of whatever recording `recording_id` points at
    rel_timestamp: Mapped[float] = mapped_column(sa.Float(), nullable=False)
    badges: Mapped[str] = mapped_column(sa.Text(), nullable=False, default="")
    color: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)


class KeyValue(Base):
    __tablename__ = "kv"
    
    key: Mapped[str] = mapped_column(sa.String(128), primary_key=True)
    value: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now
    )


class BreakerState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    HALF_OPEN = "half-open"
    OPEN = "open"


@dataclass
class CircuitBreakerState:
    """Persisted breaker record for one channel."""
    state: BreakerState = BreakerState.CLOSED
    failures: int = 0
    open_until: Optional[datetime] = None  # Only meaningful while OPEN
    
    def __post_init__(self):
        if self.state != BreakerState.OPEN:
            self.open_until = None
    
    def to_dict(self) -> dict:
        return {
            'state': self.state.value,
            'failures': self.failures,
            'open_until': self.open_until.isoformat() if self.open_until else None,
        }
    
    @classmethod
    def from_dict(cls, data: dict) -> 'CircuitBreakerState':
        open_until = data.get('open_until')
        return cls(
            state=BreakerState(data.get('state', 'closed')),
            failures=int(data.get('failures', 0) or 0),
            open_until=datetime.fromisoformat(open_until) if open_until else None,
        )


@dataclass
class PublishMetadata:
    """What a publisher needs to know about a recording."""
    channel: str
    recording_id: str
    title: str
    start: Optional[datetime] = None
    duration_seconds: int = 0
    
    @classmethod
    def from_recording(cls, recording: Recording) -> 'PublishMetadata':
        return cls(
            channel=recording.channel,
            recording_id=recording.id,
            title=recording.title,
            start=recording.start,
            duration_seconds=recording.duration_seconds,
        )
